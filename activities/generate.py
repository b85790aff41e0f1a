"""
Activity: Generate App — runs the bounded agentic loop that writes the
creative files of an app and verifies they build.

Each attempt is a small state machine:

    Running → Success | Failed(kind) | Aborted(Timeout)

Bounds:
  - turn budget per variant          → Failed(IncompleteOutput)
  - consecutive transport errors     → Failed(ProviderError)
  - consecutive refusal turns        → Failed(ContentRefused)
  - hard wall-clock deadline         → Aborted(Timeout), even mid-turn

The agent installs and builds inside its own working area. On a reported
success the engine enumerates the creative subtree itself rather than
trusting what the agent says it wrote.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shlex
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

import config
from activities.merge import fill_slots
from activities.skeleton import DEFAULT_SLOTS, VariantTemplate, get_template, resolve_skeleton
from activities.skills import available_skills, load_skill
from models.errors import GenerationFailed, TurnTransportError
from models.schemas import (
    AppMetadata,
    Artifact,
    AttemptOutcome,
    BuildRequest,
    FailureKind,
    GenerationAttempt,
    GenerationResult,
    ToolCall,
    TurnResult,
    Variant,
)
from utils.llm import AgentContext, image_parts
from utils.process import run_process
from utils.workspace import (
    WorkspacePathError,
    create_working_area,
    relative_key,
    remove_working_area,
    resolve_inside,
    scan_creative_files,
    write_artifacts,
)

log = logging.getLogger(__name__)


class GenerationProvider(Protocol):
    async def run_agentic_turn(self, context: AgentContext) -> TurnResult: ...


# ── Options ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GenerationOptions:
    """Validated knobs for one generation attempt."""
    variant: Variant
    max_turns: int
    deadline_seconds: float = config.GENERATION_DEADLINE_SEC
    max_consecutive_errors: int = config.MAX_CONSECUTIVE_ERRORS
    max_consecutive_refusals: int = config.MAX_CONSECUTIVE_REFUSALS
    max_build_failures: int = config.MAX_BUILD_FAILURES
    model: str = config.OPENAI_MODEL

    def __post_init__(self):
        object.__setattr__(self, "variant", Variant.parse(self.variant))
        for name in ("max_turns", "max_consecutive_errors", "max_consecutive_refusals", "max_build_failures"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be > 0")
        if not self.model:
            raise ValueError("model must be set")

    @classmethod
    def for_variant(cls, variant: Variant | str, **overrides) -> "GenerationOptions":
        template = get_template(variant)
        overrides.setdefault("max_turns", template.max_turns)
        return cls(variant=template.variant, **overrides)


# ── Turn classification (pure) ────────────────────────────────────────

REFUSAL_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\bI(?:'m| am) (?:sorry, but I )?(?:not able|unable) to (?:help|create|build|assist|make)",
        r"\bI (?:can(?:no|')t|won't|will not) (?:help|create|build|assist|make|do that|comply)",
        r"\bI must (?:decline|refuse)",
        r"\b(?:unethical|harmful|inappropriate|illegal) (?:content|request|app|application)",
        r"\bagainst (?:my|the) (?:guidelines|policies|principles|ethics)",
        r"\bnot (?:comfortable|something I can) (?:help|creat|build)",
    )
]

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def is_refusal(turn: TurnResult) -> bool:
    """A refusal issues no tool calls and reads as an explicit denial."""
    if turn.tool_calls:
        return False
    return any(p.search(turn.text or "") for p in REFUSAL_PATTERNS)


def _json_objects(text: str):
    """Yield candidate top-level JSON object strings, fenced blocks first."""
    for match in _FENCED_JSON_RE.finditer(text):
        yield match.group(1)
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    yield text[start:i + 1]
                    break
        start = text.find("{", start + 1)


def parse_completion(text: str) -> AppMetadata | None:
    """Extract the agent's completion metadata, or None if the turn has none."""
    for candidate in _json_objects(text or ""):
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if not isinstance(data, dict) or "name" not in data:
            continue
        try:
            return AppMetadata.model_validate(data)
        except ValidationError:
            continue
    return None


# ── Tools ─────────────────────────────────────────────────────────────

TOOL_SPECS = [
    {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": "Create or overwrite a text file in the project.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Relative path, e.g. src/App.tsx"},
                    "content": {"type": "string"},
                },
                "required": ["path", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": "Read a text file from the project.",
            "parameters": {
                "type": "object",
                "properties": {"path": {"type": "string"}},
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "run_build_command",
            "description": "Run an npm/npx command in the project root, e.g. 'npm install' or 'npm run build'.",
            "parameters": {
                "type": "object",
                "properties": {"command": {"type": "string"}},
                "required": ["command"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "load_skill",
            "description": "Load an authoring guide by name.",
            "parameters": {
                "type": "object",
                "properties": {"name": {"type": "string"}},
                "required": ["name"],
            },
        },
    },
]

ALLOWED_TOOLS = frozenset(spec["function"]["name"] for spec in TOOL_SPECS)
ALLOWED_COMMANDS = frozenset({"npm", "npx"})


def _is_build(argv: list[str]) -> bool:
    """Commands that compile the app and count toward the failed-build cap."""
    if argv[:3] == ["npm", "run", "build"]:
        return True
    args = [a for a in argv[1:] if not a.startswith("-")]
    return argv[0] == "npx" and bool(args) and (args[0] == "tsc" or args[:2] == ["vite", "build"])


class ToolExecutor:
    """Executes the allow-listed tools inside one working area."""

    def __init__(self, root: Path, template: VariantTemplate, attempt: GenerationAttempt,
                 options: GenerationOptions):
        self.root = root
        self.template = template
        self.attempt = attempt
        self.options = options

    async def execute(self, call: ToolCall) -> str:
        if call.name not in ALLOWED_TOOLS:
            return f"Error: unknown tool '{call.name}'. Allowed: {', '.join(sorted(ALLOWED_TOOLS))}"
        args = call.arguments
        try:
            if call.name == "write_file":
                return self._write_file(str(args.get("path", "")), str(args.get("content", "")))
            if call.name == "read_file":
                return self._read_file(str(args.get("path", "")))
            if call.name == "run_build_command":
                return await self._run_command(str(args.get("command", "")))
            return load_skill(str(args.get("name", "")), self.template.variant)
        except WorkspacePathError as e:
            return f"Error: {e}"

    def _write_file(self, path: str, content: str) -> str:
        target = resolve_inside(self.root, path)
        key = relative_key(self.root, target)
        if key in self.template.protected:
            return f"Error: {key} is part of the fixed template and cannot be changed."
        if len(content) > config.MAX_FILE_SIZE:
            return f"Error: file too large ({len(content)} chars, max {config.MAX_FILE_SIZE})."
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        log.debug("Agent wrote %s (%d chars)", key, len(content))
        return f"Wrote {key} ({len(content)} chars)"

    def _read_file(self, path: str) -> str:
        target = resolve_inside(self.root, path)
        if not target.is_file():
            return f"Error: {path} does not exist."
        content = target.read_text(errors="replace")
        if len(content) > config.MAX_FILE_SIZE:
            content = content[:config.MAX_FILE_SIZE] + "\n... [TRUNCATED]"
        return content

    async def _run_command(self, command: str) -> str:
        try:
            argv = shlex.split(command)
        except ValueError as e:
            return f"Error: could not parse command: {e}"
        if not argv or argv[0] not in ALLOWED_COMMANDS:
            return "Error: only npm and npx commands are allowed."
        if _is_build(argv) and self.attempt.build_failures >= self.options.max_build_failures:
            return (f"Error: build already failed {self.attempt.build_failures} times; "
                    "no further build runs are allowed in this attempt.")

        returncode, output = await run_process(argv, self.root, timeout=config.BUILD_COMMAND_TIMEOUT_SEC)
        if _is_build(argv) and returncode != 0:
            self.attempt.build_failures += 1
        log.info("Agent ran '%s' → exit %d", " ".join(argv[:3]), returncode)
        tail = output[-config.TOOL_OUTPUT_CHARS:]
        return f"exit code {returncode}\n{tail}"


# ── Prompts ───────────────────────────────────────────────────────────

def build_system_prompt(template: VariantTemplate) -> str:
    protected = "\n".join(f"  - {p}" for p in sorted(template.protected))
    roots = ", ".join(f"{r}/" for r in template.creative_roots)
    return (
        "You are an expert front-end engineer building a small, polished web app "
        "inside an existing Vite + React + TypeScript project.\n\n"
        f"{template.prompt_notes}\n\n"
        "Tools: write_file, read_file, run_build_command (npm/npx only), load_skill.\n"
        f"Available skills: {', '.join(available_skills(template.variant))}.\n\n"
        f"Write your files under {roots}. These template files are fixed and "
        f"read-only:\n{protected}\n\n"
        "If you need an extra npm package, install it with "
        "`npm install <name>@<version>` and list it in the final JSON.\n\n"
        "Before finishing, run `npm install` and `npm run build`. Fix errors and "
        f"rebuild; you have at most {config.MAX_BUILD_FAILURES} failed builds.\n\n"
        "When the build passes, reply WITHOUT tool calls with a single JSON object:\n"
        '{"name": "short-kebab-case-name", "description": "one sentence", '
        '"title": "Page title", "fonts": ["https://fonts.googleapis.com/css2?family=..."], '
        '"dependencies": {"package": "^1.0.0"}, "ticker": null}'
    )


def build_user_prompt(request: BuildRequest) -> str | list[dict]:
    text = f"Build this app: {request.idea}"
    images = list(request.media)
    if request.parent_context:
        if request.parent_context.text:
            text += f"\n\nContext from the message being replied to:\n{request.parent_context.text}"
        images += list(request.parent_context.images)
    if not images:
        return text
    text += "\n\nReference images are attached."
    return [{"type": "text", "text": text}, *image_parts(images)]


CONTINUE_NUDGE = (
    "Continue. When the build passes, reply with only the final JSON object "
    "and no tool calls."
)
REFUSAL_NUDGE = (
    "This request passed content review. Build a safe, family-friendly "
    "interpretation of it."
)


# ── Engine ────────────────────────────────────────────────────────────

class GenerationEngine:
    """Runs one bounded generation attempt per call to run()."""

    def __init__(self, provider: GenerationProvider, options: GenerationOptions):
        self.provider = provider
        self.options = options
        self.attempt: GenerationAttempt | None = None

    async def run(self, request: BuildRequest) -> GenerationResult:
        template = get_template(self.options.variant)
        attempt = GenerationAttempt(
            variant=template.variant,
            deadline=time.monotonic() + self.options.deadline_seconds,
        )
        self.attempt = attempt

        root = create_working_area()
        skeleton, _ = resolve_skeleton(template.variant)
        rendered = [Artifact(a.path, fill_slots(a.content, DEFAULT_SLOTS)) for a in skeleton]
        write_artifacts(root, rendered)

        context = AgentContext(
            model=self.options.model,
            system=build_system_prompt(template),
            tools=TOOL_SPECS,
        )
        context.add_user(build_user_prompt(request))
        tools = ToolExecutor(root, template, attempt, self.options)
        skeleton_map = {a.path: a.content for a in rendered}

        log.info("Generation attempt started: variant=%s max_turns=%d deadline=%.0fs",
                 template.variant.value, self.options.max_turns, self.options.deadline_seconds)
        try:
            result = await asyncio.wait_for(
                self._loop(attempt, context, tools, root, template, skeleton_map),
                timeout=self.options.deadline_seconds,
            )
        except asyncio.TimeoutError:
            attempt.outcome = AttemptOutcome.ABORTED
            attempt.failure = FailureKind.TIMEOUT
            remove_working_area(root)
            log.error("Generation aborted: deadline of %.0fs reached after %d turns",
                      self.options.deadline_seconds, attempt.turns)
            raise GenerationFailed(FailureKind.TIMEOUT) from None
        except BaseException:
            remove_working_area(root)
            raise

        log.info("Generation succeeded in %d turns: %s (%d creative files)",
                 attempt.turns, result.metadata.name, len(result.artifacts))
        return result

    async def _loop(self, attempt: GenerationAttempt, context: AgentContext, tools: ToolExecutor,
                    root: Path, template: VariantTemplate, skeleton_map: dict[str, str]) -> GenerationResult:
        opts = self.options
        while True:
            if attempt.turns >= opts.max_turns:
                self._fail(attempt, FailureKind.INCOMPLETE_OUTPUT, f"turn budget of {opts.max_turns} exhausted")
            attempt.turns += 1

            try:
                turn = await self.provider.run_agentic_turn(context)
            except TurnTransportError as e:
                attempt.consecutive_errors += 1
                attempt.consecutive_refusals = 0
                log.warning("Turn %d transport error (%d consecutive): %s",
                            attempt.turns, attempt.consecutive_errors, e)
                if attempt.consecutive_errors >= opts.max_consecutive_errors:
                    self._fail(attempt, FailureKind.PROVIDER_ERROR,
                               f"{attempt.consecutive_errors} consecutive provider errors")
                continue
            attempt.consecutive_errors = 0
            context.add_assistant(turn)

            if is_refusal(turn):
                attempt.consecutive_refusals += 1
                log.warning("Turn %d refused (%d consecutive)", attempt.turns, attempt.consecutive_refusals)
                if attempt.consecutive_refusals >= opts.max_consecutive_refusals:
                    self._fail(attempt, FailureKind.CONTENT_REFUSED,
                               f"{attempt.consecutive_refusals} consecutive refusals")
                context.add_user(REFUSAL_NUDGE)
                continue
            attempt.consecutive_refusals = 0

            if turn.tool_calls:
                for call in turn.tool_calls:
                    context.add_tool_result(call.id, await tools.execute(call))
                continue

            metadata = parse_completion(turn.text)
            if metadata is None:
                context.add_user(CONTINUE_NUDGE)
                continue

            loop = asyncio.get_running_loop()
            artifacts = await loop.run_in_executor(
                None, scan_creative_files, root, template.creative_roots, skeleton_map,
            )
            if not artifacts:
                self._fail(attempt, FailureKind.INCOMPLETE_OUTPUT, "reported success with no creative files")

            attempt.outcome = AttemptOutcome.SUCCESS
            return GenerationResult(
                metadata=metadata,
                artifacts=artifacts,
                working_area=str(root),
                variant=template.variant,
            )

    @staticmethod
    def _fail(attempt: GenerationAttempt, kind: FailureKind, detail: str):
        attempt.outcome = AttemptOutcome.FAILED
        attempt.failure = kind
        log.error("Generation failed (%s): %s", kind.value, detail)
        raise GenerationFailed(kind, detail)
