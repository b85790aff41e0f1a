"""
Skills — short authoring guides the agent can pull in with the load_skill tool.
"""

from __future__ import annotations

from activities.skeleton import get_template
from models.schemas import Variant

SKILLS: dict[str, str] = {
    "react-app": """# React app skill

- Entry point src/main.tsx is fixed; App.tsx must `export default` a component.
- Keep components in src/components/, hooks in src/hooks/.
- Tailwind is loaded from CDN in index.html; use utility classes, no PostCSS config.
- TypeScript is strict. Do not leave implicit `any`. Unused locals are allowed.
- Persist client-side state in localStorage when it helps the experience.
- Verify with `npm install` then `npm run build` before you finish.
""",
    "design": """# Design skill

- Pick one display font and one body font from Google Fonts and list their
  stylesheet URLs in the final JSON "fonts" array; do not edit index.html.
- Commit to a clear palette (3-5 colours) and use it consistently.
- Mobile first: the layout must work at 375px wide.
- Give interactive elements visible hover and focus states.
""",
    "threejs": """# three.js skill

- Use @react-three/fiber's <Canvas> and @react-three/drei helpers
  (OrbitControls, Environment, Text).
- Keep geometry procedural; do not depend on external model files.
- Drive animation with useFrame; keep per-frame allocations out of the loop.
- Fill the viewport: the canvas container needs an explicit height.
""",
    "convex": """# Convex skill

- Schema lives in convex/schema.ts; keep `...authTables` in it.
- Queries/mutations go in convex/<name>.ts using `query`/`mutation` from
  ./_generated/server and `v` validators from convex/values.
- In React use `useQuery(api.<file>.<fn>)` and `useMutation(...)` from
  convex/react. Import `api` from "../convex/_generated/api".
- Use `useAuthActions()` from @convex-dev/auth/react for sign in/out with the
  "password" provider, and `getAuthUserId(ctx)` on the server.
- convex/auth.ts, convex/auth.config.ts and convex/http.ts are fixed.
""",
}


def available_skills(variant: Variant | str) -> tuple[str, ...]:
    return get_template(variant).skills


def load_skill(name: str, variant: Variant | str) -> str:
    """Return a skill's text, or an error string the agent can act on."""
    allowed = available_skills(variant)
    if name not in allowed or name not in SKILLS:
        return f"Unknown skill '{name}'. Available: {', '.join(allowed)}"
    return SKILLS[name]
