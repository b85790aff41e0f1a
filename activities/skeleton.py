"""
Activity: Template Skeleton — the fixed infrastructure file set per variant.

Every variant is a Vite + React + TypeScript app. The skeleton owns the build
configuration and entry points; the agent owns everything it writes under the
variant's creative roots.

Named slots filled later by the merger:
  {{APP_TITLE}}    — <title> in index.html
  {{FONT_LINKS}}   — <link> tags for web fonts
  {{BACKEND_URL}}  — realtime backend endpoint (realtime-backend only)
  package.json     — extra dependencies are injected into "dependencies"
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from models.schemas import Artifact, Variant

log = logging.getLogger(__name__)

SLOT_TITLE = "APP_TITLE"
SLOT_FONT_LINKS = "FONT_LINKS"
SLOT_BACKEND_URL = "BACKEND_URL"
MANIFEST_PATH = "package.json"

# Slot values used while the agent builds inside its working area
DEFAULT_SLOTS = {
    SLOT_TITLE: "App",
    SLOT_FONT_LINKS: "",
    SLOT_BACKEND_URL: "https://placeholder.convex.cloud",
}


@dataclass(frozen=True)
class VariantTemplate:
    variant: Variant
    files: tuple[tuple[str, str], ...]
    protected: frozenset[str]
    max_turns: int
    skills: tuple[str, ...]
    creative_roots: tuple[str, ...]
    prompt_notes: str = ""


# ── Shared files ──────────────────────────────────────────────────────

_TSCONFIG = """{
  "compilerOptions": {
    "target": "ES2020",
    "useDefineForClassFields": true,
    "lib": ["ES2020", "DOM", "DOM.Iterable"],
    "module": "ESNext",
    "skipLibCheck": true,
    "moduleResolution": "bundler",
    "allowImportingTsExtensions": true,
    "resolveJsonModule": true,
    "isolatedModules": true,
    "noEmit": true,
    "jsx": "react-jsx",
    "strict": true,
    "noUnusedLocals": false,
    "noUnusedParameters": false,
    "noFallthroughCasesInSwitch": true
  },
  "include": ["src"]
}
"""

_VITE_CONFIG = """import { defineConfig } from 'vite';
import react from '@vitejs/plugin-react';

export default defineConfig({
  plugins: [react()],
});
"""

_INDEX_HTML = """<!doctype html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>{{APP_TITLE}}</title>
    {{FONT_LINKS}}
    <script src="https://cdn.tailwindcss.com"></script>
  </head>
  <body>
    <div id="root"></div>
    <script type="module" src="/src/main.tsx"></script>
  </body>
</html>
"""

_VITE_ENV = """/// <reference types="vite/client" />
"""

_MAIN_TSX = """import React from 'react';
import ReactDOM from 'react-dom/client';
import App from './App';
import './index.css';

ReactDOM.createRoot(document.getElementById('root')!).render(
  <React.StrictMode>
    <App />
  </React.StrictMode>,
);
"""

_INDEX_CSS = """html, body, #root {
  margin: 0;
  min-height: 100%;
}
"""

_APP_TSX = """export default function App() {
  return <main className="p-8">Hello</main>;
}
"""

_GITIGNORE = """node_modules
dist
.env.local
"""

_BASE_DEPENDENCIES = {
    "react": "^18.3.1",
    "react-dom": "^18.3.1",
}

_BASE_DEV_DEPENDENCIES = {
    "@types/react": "^18.3.3",
    "@types/react-dom": "^18.3.0",
    "@vitejs/plugin-react": "^4.3.1",
    "typescript": "^5.5.3",
    "vite": "^5.4.0",
}


def _package_json(dependencies: dict[str, str]) -> str:
    manifest = {
        "name": "app",
        "private": True,
        "version": "0.0.0",
        "type": "module",
        "scripts": {
            "dev": "vite",
            "build": "tsc && vite build",
            "preview": "vite preview",
        },
        "dependencies": dict(sorted({**_BASE_DEPENDENCIES, **dependencies}.items())),
        "devDependencies": _BASE_DEV_DEPENDENCIES,
    }
    return json.dumps(manifest, indent=2) + "\n"


_BASE_FILES = (
    ("index.html", _INDEX_HTML),
    ("tsconfig.json", _TSCONFIG),
    ("vite.config.ts", _VITE_CONFIG),
    ("src/vite-env.d.ts", _VITE_ENV),
    ("src/main.tsx", _MAIN_TSX),
    ("src/index.css", _INDEX_CSS),
    ("src/App.tsx", _APP_TSX),
    (".gitignore", _GITIGNORE),
)

_BASE_PROTECTED = frozenset({
    MANIFEST_PATH,
    "index.html",
    "tsconfig.json",
    "vite.config.ts",
    "src/vite-env.d.ts",
    "src/main.tsx",
})


# ── Realtime backend files ────────────────────────────────────────────

_BACKEND_MAIN_TSX = """import React from 'react';
import ReactDOM from 'react-dom/client';
import { ConvexAuthProvider } from '@convex-dev/auth/react';
import { ConvexReactClient } from 'convex/react';
import App from './App';
import './index.css';

const convex = new ConvexReactClient(import.meta.env.VITE_CONVEX_URL as string);

ReactDOM.createRoot(document.getElementById('root')!).render(
  <React.StrictMode>
    <ConvexAuthProvider client={convex}>
      <App />
    </ConvexAuthProvider>
  </React.StrictMode>,
);
"""

_BACKEND_ENV = """VITE_CONVEX_URL={{BACKEND_URL}}
"""

_CONVEX_AUTH_CONFIG = """export default {
  providers: [
    {
      domain: process.env.CONVEX_SITE_URL,
      applicationID: 'convex',
    },
  ],
};
"""

_CONVEX_AUTH = """import { Password } from '@convex-dev/auth/providers/Password';
import { convexAuth } from '@convex-dev/auth/server';

export const { auth, signIn, signOut, store, isAuthenticated } = convexAuth({
  providers: [Password],
});
"""

_CONVEX_HTTP = """import { httpRouter } from 'convex/server';
import { auth } from './auth';

const http = httpRouter();

auth.addHttpRoutes(http);

export default http;
"""

_CONVEX_SCHEMA = """import { defineSchema } from 'convex/server';
import { authTables } from '@convex-dev/auth/server';

export default defineSchema({
  ...authTables,
});
"""

_CONVEX_TSCONFIG = """{
  "compilerOptions": {
    "allowJs": true,
    "strict": true,
    "moduleResolution": "Bundler",
    "jsx": "react-jsx",
    "skipLibCheck": true,
    "allowSyntheticDefaultImports": true,
    "target": "ESNext",
    "lib": ["ES2021", "dom"],
    "forceConsistentCasingInFileNames": true,
    "module": "ESNext",
    "isolatedModules": true,
    "noEmit": true
  },
  "include": ["./**/*"],
  "exclude": ["./_generated"]
}
"""


# ── Variant table ─────────────────────────────────────────────────────

def _replace(files: tuple[tuple[str, str], ...], **overrides: str) -> tuple[tuple[str, str], ...]:
    by_path = {path: content for path, content in files}
    for path, content in overrides.items():
        by_path[path] = content
    return tuple(by_path.items())


_TEMPLATES: dict[Variant, VariantTemplate] = {
    Variant.STATIC: VariantTemplate(
        variant=Variant.STATIC,
        files=((MANIFEST_PATH, _package_json({})),) + _BASE_FILES,
        protected=_BASE_PROTECTED,
        max_turns=40,
        skills=("react-app", "design"),
        creative_roots=("src", "public"),
        prompt_notes="Client-side only. No backend, no external paid APIs.",
    ),
    Variant.STATIC_3D: VariantTemplate(
        variant=Variant.STATIC_3D,
        files=((MANIFEST_PATH, _package_json({
            "three": "^0.168.0",
            "@react-three/fiber": "^8.17.6",
            "@react-three/drei": "^9.112.0",
            "@types/three": "^0.168.0",
        })),) + _BASE_FILES,
        protected=_BASE_PROTECTED,
        max_turns=50,
        skills=("react-app", "design", "threejs"),
        creative_roots=("src", "public"),
        prompt_notes="Render the experience with three.js via @react-three/fiber.",
    ),
    Variant.REALTIME_BACKEND: VariantTemplate(
        variant=Variant.REALTIME_BACKEND,
        files=((MANIFEST_PATH, _package_json({
            "convex": "^1.16.0",
            "@convex-dev/auth": "^0.0.71",
        })),) + _replace(_BASE_FILES, **{"src/main.tsx": _BACKEND_MAIN_TSX}) + (
            (".env.production", _BACKEND_ENV),
            ("convex/auth.config.ts", _CONVEX_AUTH_CONFIG),
            ("convex/auth.ts", _CONVEX_AUTH),
            ("convex/http.ts", _CONVEX_HTTP),
            ("convex/schema.ts", _CONVEX_SCHEMA),
            ("convex/tsconfig.json", _CONVEX_TSCONFIG),
        ),
        protected=_BASE_PROTECTED | {
            ".env.production",
            "convex/auth.config.ts",
            "convex/auth.ts",
            "convex/http.ts",
            "convex/tsconfig.json",
        },
        max_turns=60,
        skills=("react-app", "design", "convex"),
        creative_roots=("src", "public", "convex"),
        prompt_notes=(
            "Use Convex for data and realtime sync. Put queries and mutations in "
            "convex/*.ts and extend convex/schema.ts. Auth (password sign-in) is "
            "already wired up."
        ),
    ),
}


def get_template(variant: Variant | str) -> VariantTemplate:
    """Look up a variant's template. Unknown variants raise ValueError."""
    return _TEMPLATES[Variant.parse(variant)]


def resolve_skeleton(variant: Variant | str) -> tuple[list[Artifact], frozenset[str]]:
    """Return the ordered skeleton files and the protected path set for a variant."""
    template = get_template(variant)
    files = [Artifact(path, content) for path, content in template.files]
    log.info("Resolved %s skeleton: %d files, %d protected",
             template.variant.value, len(files), len(template.protected))
    return files, template.protected
