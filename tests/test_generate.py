"""Tests for the Generation Engine state machine and its pure turn decisions."""

import asyncio
from pathlib import Path

import pytest

from activities import generate
from activities.generate import (
    GenerationEngine,
    GenerationOptions,
    ToolExecutor,
    is_refusal,
    parse_completion,
)
from activities.skeleton import get_template
from models.errors import GenerationFailed
from models.schemas import (
    AttemptOutcome,
    BuildRequest,
    FailureKind,
    GenerationAttempt,
    ToolCall,
    TurnResult,
    Variant,
)
from fakes import (
    APP_TSX,
    ScriptedProvider,
    SlowProvider,
    completion,
    refusal,
    successful_turns,
    transport_error,
    write_call,
)


def make_request(variant=Variant.STATIC) -> BuildRequest:
    return BuildRequest(idea="a pomodoro timer", channel="test", message_id="1", requested_variant=variant)


def make_engine(turns, variant=Variant.STATIC, **overrides) -> tuple[GenerationEngine, ScriptedProvider]:
    provider = ScriptedProvider(turns)
    return GenerationEngine(provider, GenerationOptions.for_variant(variant, **overrides)), provider


class TestIsRefusal:

    @pytest.mark.parametrize("text", [
        "I'm sorry, but I can't help with that request.",
        "I cannot create content like this.",
        "I must decline to build this.",
        "This would be harmful content, so I won't do that.",
        "That goes against my guidelines.",
    ])
    def test_denials_are_refusals(self, text):
        assert is_refusal(TurnResult(text=text))

    def test_ordinary_text_is_not_a_refusal(self):
        assert not is_refusal(TurnResult(text="Here is the timer, the build passes."))

    def test_turn_with_tool_calls_is_never_a_refusal(self):
        turn = TurnResult(text="I can't build that as asked, adjusting.",
                          tool_calls=[write_call("src/App.tsx", APP_TSX)])
        assert not is_refusal(turn)


class TestParseCompletion:

    def test_fenced_json(self):
        meta = parse_completion(completion("focus-timer").text)
        assert meta.name == "focus-timer"
        assert meta.title == "Pomodoro"

    def test_bare_json_with_braces_in_strings(self):
        text = 'Done! {"name": "brace-app", "description": "uses {curly} text"} Enjoy.'
        meta = parse_completion(text)
        assert meta.name == "brace-app"
        assert meta.description == "uses {curly} text"

    def test_dependencies_and_fonts(self):
        text = ('{"name": "x", "fonts": ["https://fonts.googleapis.com/css2?family=Inter"], '
                '"dependencies": {"zustand": "^4.5.0"}, "ticker": "XYZ"}')
        meta = parse_completion(text)
        assert meta.dependencies == {"zustand": "^4.5.0"}
        assert meta.fonts == ["https://fonts.googleapis.com/css2?family=Inter"]
        assert meta.ticker == "XYZ"

    @pytest.mark.parametrize("text", [
        "",
        "Still working on it.",
        '{"description": "no name key"}',
        '{"name": ""}',
        "{not json}",
    ])
    def test_no_metadata(self, text):
        assert parse_completion(text) is None


class TestGenerationOptions:

    def test_for_variant_uses_template_turn_budget(self):
        opts = GenerationOptions.for_variant("static-3d")
        assert opts.variant is Variant.STATIC_3D
        assert opts.max_turns == get_template(Variant.STATIC_3D).max_turns

    def test_unknown_variant_is_rejected(self):
        with pytest.raises(ValueError):
            GenerationOptions.for_variant("flash-game")

    @pytest.mark.parametrize("field", ["max_turns", "max_consecutive_errors",
                                       "max_consecutive_refusals", "max_build_failures"])
    def test_counts_must_be_positive(self, field):
        with pytest.raises(ValueError):
            GenerationOptions.for_variant(Variant.STATIC, **{field: 0})

    def test_deadline_must_be_positive(self):
        with pytest.raises(ValueError):
            GenerationOptions.for_variant(Variant.STATIC, deadline_seconds=0)


class TestEngineSuccess:

    async def test_returns_only_creative_files(self, leftover_areas):
        engine, provider = make_engine(successful_turns(extra_files={"src/components/Clock.tsx": "export {};\n"}))
        result = await engine.run(make_request())

        assert set(result.artifacts) == {"src/App.tsx", "src/components/Clock.tsx"}
        assert result.artifacts["src/App.tsx"].content == APP_TSX
        assert result.metadata.name == "pomodoro-timer"
        assert result.variant is Variant.STATIC
        assert engine.attempt.outcome is AttemptOutcome.SUCCESS
        assert engine.attempt.turns == 2
        # Working area survives success; the pipeline removes it later
        assert Path(result.working_area).is_dir()
        assert leftover_areas() == [Path(result.working_area)]

    async def test_working_area_is_seeded_with_skeleton(self):
        engine, _ = make_engine(successful_turns())
        result = await engine.run(make_request())
        area = Path(result.working_area)
        assert (area / "package.json").is_file()
        assert "{{APP_TITLE}}" not in (area / "index.html").read_text()

    async def test_success_without_creative_files_is_incomplete(self, leftover_areas):
        engine, _ = make_engine([completion()])
        with pytest.raises(GenerationFailed) as exc_info:
            await engine.run(make_request())
        assert exc_info.value.failure is FailureKind.INCOMPLETE_OUTPUT
        assert leftover_areas() == []

    async def test_prose_without_metadata_gets_nudged(self):
        engine, provider = make_engine([TurnResult(text="Working on it"), *successful_turns()])
        await engine.run(make_request())
        user_messages = [m["content"] for m in provider.contexts[-1].messages if m["role"] == "user"]
        assert generate.CONTINUE_NUDGE in user_messages


class TestEngineBounds:

    async def test_three_refusals_end_with_content_refused(self, leftover_areas):
        engine, provider = make_engine([refusal(), refusal(), refusal(), *successful_turns()])
        with pytest.raises(GenerationFailed) as exc_info:
            await engine.run(make_request())
        assert exc_info.value.failure is FailureKind.CONTENT_REFUSED
        assert engine.attempt.outcome is AttemptOutcome.FAILED
        assert provider.calls == 3
        assert leftover_areas() == []

    async def test_refusal_counter_resets_on_other_turns(self):
        turns = [refusal(), refusal(), TurnResult(text="Let me think."), refusal(), refusal(), *successful_turns()]
        engine, _ = make_engine(turns)
        result = await engine.run(make_request())
        assert result.metadata.name == "pomodoro-timer"
        assert engine.attempt.consecutive_refusals == 0

    async def test_refusal_counter_resets_on_transport_errors(self):
        turns = [refusal(), refusal(), transport_error(), refusal(), *successful_turns()]
        engine, provider = make_engine(turns)
        result = await engine.run(make_request())
        assert result.metadata.name == "pomodoro-timer"
        assert provider.calls == 4 + len(successful_turns())

    async def test_deadline_cancels_running_command_before_cleanup(self, monkeypatch, leftover_areas):
        cancelled_in = []

        async def slow_build(argv, cwd, timeout, env=None):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled_in.append(Path(cwd).is_dir())
                raise
            return 0, ""

        monkeypatch.setattr(generate, "run_process", slow_build)
        build = TurnResult(tool_calls=[ToolCall(id="b", name="run_build_command",
                                                arguments={"command": "npm run build"})])
        engine, _ = make_engine([build], deadline_seconds=0.2)
        with pytest.raises(GenerationFailed) as exc_info:
            await engine.run(make_request())
        assert exc_info.value.failure is FailureKind.TIMEOUT
        # The command was stopped while its working area still existed, and the area is gone now
        assert cancelled_in == [True]
        assert leftover_areas() == []

    async def test_consecutive_errors_abort_as_provider_error(self):
        engine, provider = make_engine([transport_error() for _ in range(5)])
        with pytest.raises(GenerationFailed) as exc_info:
            await engine.run(make_request())
        assert exc_info.value.failure is FailureKind.PROVIDER_ERROR
        assert provider.calls == 5

    async def test_error_counter_resets_on_completed_turn(self):
        errors = [transport_error() for _ in range(4)]
        turns = [*errors, TurnResult(text="Thinking."), *errors, *successful_turns()]
        engine, _ = make_engine(turns)
        result = await engine.run(make_request())
        assert result.metadata.name == "pomodoro-timer"
        assert engine.attempt.consecutive_errors == 0

    async def test_turn_budget(self):
        engine, provider = make_engine([TurnResult(text="hmm")] * 10, max_turns=3)
        with pytest.raises(GenerationFailed) as exc_info:
            await engine.run(make_request())
        assert exc_info.value.failure is FailureKind.INCOMPLETE_OUTPUT
        assert provider.calls == 3

    async def test_failed_turns_count_toward_budget(self):
        engine, provider = make_engine([transport_error(), transport_error(), *successful_turns()], max_turns=3)
        with pytest.raises(GenerationFailed):
            await engine.run(make_request())
        assert provider.calls == 3

    async def test_deadline_aborts_mid_turn(self, leftover_areas):
        provider = SlowProvider(delay=10)
        engine = GenerationEngine(provider, GenerationOptions.for_variant(Variant.STATIC, deadline_seconds=0.05))
        with pytest.raises(GenerationFailed) as exc_info:
            await engine.run(make_request())
        assert exc_info.value.failure is FailureKind.TIMEOUT
        assert engine.attempt.outcome is AttemptOutcome.ABORTED
        assert provider.calls == 1
        assert leftover_areas() == []


class TestToolExecutor:

    @pytest.fixture
    def executor(self, tmp_path):
        template = get_template(Variant.STATIC)
        options = GenerationOptions.for_variant(Variant.STATIC)
        attempt = GenerationAttempt(variant=Variant.STATIC, deadline=0)
        return ToolExecutor(tmp_path, template, attempt, options)

    async def test_write_and_read(self, executor, tmp_path):
        out = await executor.execute(write_call("src/components/Clock.tsx", "export {};"))
        assert out.startswith("Wrote src/components/Clock.tsx")
        read = await executor.execute(ToolCall(id="r", name="read_file",
                                               arguments={"path": "src/components/Clock.tsx"}))
        assert read == "export {};"

    @pytest.mark.parametrize("path", ["package.json", "index.html", "src/main.tsx", "src/../vite.config.ts"])
    async def test_protected_paths_are_read_only(self, executor, tmp_path, path):
        out = await executor.execute(write_call(path, "hacked"))
        assert out.startswith("Error:")
        assert not any(p.is_file() for p in tmp_path.rglob("*"))

    @pytest.mark.parametrize("path", ["../outside.txt", "/etc/passwd", "src/../../escape.ts"])
    async def test_paths_must_stay_inside(self, executor, path):
        out = await executor.execute(write_call(path, "x"))
        assert out.startswith("Error:")

    @pytest.mark.parametrize("command", ["rm -rf /", "bash -c 'npm run build'", "", "node build.js"])
    async def test_only_npm_and_npx(self, executor, command):
        out = await executor.execute(ToolCall(id="c", name="run_build_command", arguments={"command": command}))
        assert out.startswith("Error:")

    async def test_unknown_tool(self, executor):
        out = await executor.execute(ToolCall(id="c", name="delete_everything"))
        assert "unknown tool" in out

    async def test_build_failures_are_capped(self, executor, monkeypatch):
        runs = []

        async def fake_run(argv, cwd, timeout, env=None):
            runs.append(argv)
            return 1, "error TS2304: Cannot find name"

        monkeypatch.setattr(generate, "run_process", fake_run)
        build = ToolCall(id="b", name="run_build_command", arguments={"command": "npm run build"})
        for _ in range(3):
            out = await executor.execute(build)
            assert out.startswith("exit code 1")
        out = await executor.execute(build)
        assert out.startswith("Error: build already failed 3 times")
        assert len(runs) == 3

        # Installs are still allowed after the build cap
        out = await executor.execute(ToolCall(id="i", name="run_build_command",
                                              arguments={"command": "npm install zustand@4.5.0"}))
        assert out.startswith("exit code")

    @pytest.mark.parametrize("command", ["npx vite build", "npx tsc --noEmit", "npx --yes vite build"])
    async def test_direct_compiler_runs_count_as_builds(self, executor, monkeypatch, command):
        async def fake_run(argv, cwd, timeout, env=None):
            return 2, "error"

        monkeypatch.setattr(generate, "run_process", fake_run)
        call = ToolCall(id="b", name="run_build_command", arguments={"command": command})
        for _ in range(3):
            await executor.execute(call)
        out = await executor.execute(ToolCall(id="b", name="run_build_command",
                                              arguments={"command": "npm run build"}))
        assert out.startswith("Error: build already failed 3 times")

    async def test_failed_install_does_not_count_as_build(self, executor, monkeypatch):
        async def fake_run(argv, cwd, timeout, env=None):
            return 1, "ERR! 404"

        monkeypatch.setattr(generate, "run_process", fake_run)
        for _ in range(4):
            await executor.execute(ToolCall(id="i", name="run_build_command",
                                            arguments={"command": "npm install left-pad@9"}))
        assert executor.attempt.build_failures == 0

    async def test_load_skill(self, executor):
        out = await executor.execute(ToolCall(id="s", name="load_skill", arguments={"name": "design"}))
        assert "Design skill" in out
        out = await executor.execute(ToolCall(id="s", name="load_skill", arguments={"name": "convex"}))
        assert out.startswith("Unknown skill")
