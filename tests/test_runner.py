from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Callable

import pytest

from pipeworks.errors import AgentDispatchFailure
from pipeworks.models.directive import Directive
from pipeworks.models.pipeline import CliConfig, PipelineConfig
from pipeworks.services.runner import CliAgentRunner, interpret_output, parse_directive, parse_splits

MakeItem = Callable[..., Path]


class TestParseDirective:
    def test_pass(self) -> None:
        parsed = parse_directive("some output\nDIRECTIVE: PASS")
        assert parsed is not None
        assert parsed.directive is Directive.PASS
        assert parsed.reason is None
        assert parsed.pr_url is None

    def test_fail_with_reason(self) -> None:
        parsed = parse_directive('output\nDIRECTIVE: FAIL reason="something broke"')
        assert parsed is not None
        assert parsed.directive is Directive.FAIL
        assert parsed.reason == "something broke"

    def test_reject_with_reason(self) -> None:
        parsed = parse_directive('output\nDIRECTIVE: REJECT reason="needs work"')
        assert parsed is not None
        assert parsed.directive is Directive.REJECT
        assert parsed.reason == "needs work"

    def test_split(self) -> None:
        parsed = parse_directive("part1\n<!-- SPLIT -->\npart2\nDIRECTIVE: SPLIT")
        assert parsed is not None
        assert parsed.directive is Directive.SPLIT
        assert parsed.splits == ["part1", "part2"]

    def test_case_insensitive(self) -> None:
        parsed = parse_directive("directive: pass")
        assert parsed is not None
        assert parsed.directive is Directive.PASS

    def test_last_directive_wins(self) -> None:
        parsed = parse_directive('DIRECTIVE: FAIL reason="old"\nstuff\nDIRECTIVE: PASS')
        assert parsed is not None
        assert parsed.directive is Directive.PASS

    def test_pr_url(self) -> None:
        parsed = parse_directive("output\nDIRECTIVE: PASS\npr_url: https://github.com/org/repo/pull/42")
        assert parsed is not None
        assert parsed.pr_url == "https://github.com/org/repo/pull/42"

    def test_indented_directive(self) -> None:
        parsed = parse_directive("   DIRECTIVE: REJECT   ")
        assert parsed is not None
        assert parsed.directive is Directive.REJECT

    def test_no_directive(self) -> None:
        assert parse_directive("just some text") is None
        assert parse_directive("") is None
        assert parse_directive("DIRECTIVE: MAYBE") is None


class TestParseSplits:
    def test_splits_on_marker(self) -> None:
        assert parse_splits("part1\n<!-- SPLIT -->\npart2\nDIRECTIVE: SPLIT") == ["part1", "part2"]

    def test_trims_and_drops_empty_parts(self) -> None:
        output = "  part1  \n<!-- SPLIT -->\n\n<!-- SPLIT -->\n  part2  \nDIRECTIVE: SPLIT"
        assert parse_splits(output) == ["part1", "part2"]

    def test_strips_directive_with_reason(self) -> None:
        output = 'part1\n<!-- SPLIT -->\npart2\nDIRECTIVE: SPLIT reason="done"'
        assert parse_splits(output) == ["part1", "part2"]

    def test_marker_whitespace(self) -> None:
        assert parse_splits("part1\n<!--  SPLIT  -->\npart2\nDIRECTIVE: SPLIT") == ["part1", "part2"]

    def test_nothing_to_split(self) -> None:
        assert parse_splits("DIRECTIVE: SPLIT") == []


class TestInterpretOutput:
    def test_plain_text(self) -> None:
        result = interpret_output("did it\nDIRECTIVE: PASS\n", "", 0)
        assert result.directive is Directive.PASS
        assert result.output == "did it\nDIRECTIVE: PASS"
        assert result.session_id is None

    def test_json_envelope(self) -> None:
        stdout = json.dumps({"result": "ok\nDIRECTIVE: REJECT reason=\"vague\"", "session_id": "sess-9"})
        result = interpret_output(stdout, "", 0)
        assert result.directive is Directive.REJECT
        assert result.reason == "vague"
        assert result.session_id == "sess-9"
        assert result.output.startswith("ok")

    def test_directive_wins_over_exit_code(self) -> None:
        result = interpret_output("DIRECTIVE: PASS", "warning", 1)
        assert result.directive is Directive.PASS

    def test_nonzero_exit_without_directive(self) -> None:
        result = interpret_output("", "x" * 600, 2, "claude")
        assert result.directive is Directive.FAIL
        assert result.reason is not None
        assert result.reason.startswith("claude exited 2: ")
        assert len(result.reason) == len("claude exited 2: ") + 500

    def test_missing_directive(self) -> None:
        result = interpret_output("I forgot", "", 0)
        assert result.directive is Directive.FAIL
        assert result.reason == "No DIRECTIVE found in output"


def _python_cli(pipeline: PipelineConfig, script: str, timeout: float = 30.0) -> PipelineConfig:
    cli = CliConfig(command=sys.executable, args=("-c", script), prompt_flag=None, timeout_seconds=timeout)
    return pipeline.model_copy(update={"cli": cli})


@pytest.mark.asyncio
class TestCliAgentRunner:
    async def test_runs_subprocess_with_item_on_stdin(
        self, pipeline: PipelineConfig, make_item: MakeItem, tmp_path: Path
    ) -> None:
        script = (
            "import json, sys\n"
            "text = sys.stdin.read()\n"
            "verdict = 'PASS' if 'Do the thing' in text else 'FAIL'\n"
            "print(json.dumps({'result': 'read it\\nDIRECTIVE: ' + verdict, 'session_id': 's-1'}))\n"
        )
        runner = CliAgentRunner(_python_cli(pipeline, script), tmp_path)
        path = make_item("feat", stage="plans")

        result = await runner.run(path, "plans", pipeline.agents["planner-0"])

        assert result.directive is Directive.PASS
        assert result.session_id == "s-1"
        assert result.output == "read it\nDIRECTIVE: PASS"

    async def test_nonzero_exit(self, pipeline: PipelineConfig, make_item: MakeItem, tmp_path: Path) -> None:
        script = "import sys\nsys.stderr.write('boom')\nsys.exit(3)\n"
        runner = CliAgentRunner(_python_cli(pipeline, script), tmp_path)
        path = make_item("feat", stage="plans")

        result = await runner.run(path, "plans", pipeline.agents["planner-0"])

        assert result.directive is Directive.FAIL
        assert result.reason is not None
        assert "exited 3: boom" in result.reason

    async def test_timeout(self, pipeline: PipelineConfig, make_item: MakeItem, tmp_path: Path) -> None:
        runner = CliAgentRunner(_python_cli(pipeline, "import time\ntime.sleep(30)\n", timeout=0.2), tmp_path)
        path = make_item("feat", stage="plans")

        with pytest.raises(AgentDispatchFailure, match="timed out"):
            await runner.run(path, "plans", pipeline.agents["planner-0"])

    async def test_spawn_failure(self, pipeline: PipelineConfig, make_item: MakeItem, tmp_path: Path) -> None:
        cli = CliConfig(command=str(tmp_path / "no-such-agent"), args=())
        runner = CliAgentRunner(pipeline.model_copy(update={"cli": cli}), tmp_path)
        path = make_item("feat", stage="plans")

        with pytest.raises(AgentDispatchFailure, match="Failed to spawn"):
            await runner.run(path, "plans", pipeline.agents["planner-0"])


class TestBuildArgs:
    def test_default_cli_flags(self, pipeline: PipelineConfig, tmp_path: Path) -> None:
        agent = pipeline.agents["builder-1"].model_copy(update={"model": "opus"})
        args = CliAgentRunner(pipeline, tmp_path).build_args("build", agent, "CONTENT", resume="sess-1")
        assert args == [
            "claude",
            "--print",
            "--output-format",
            "json",
            "--model",
            "opus",
            "--resume",
            "sess-1",
            "--prompt",
            "CONTENT",
        ]

    def test_prompt_file_relative_to_root(self, pipeline: PipelineConfig, tmp_path: Path) -> None:
        (tmp_path / "prompts").mkdir()
        prompt = tmp_path / "prompts" / "build.md"
        prompt.write_text("You are a builder.")
        stages = {
            **pipeline.stages,
            "build": pipeline.stages["build"].model_copy(update={"prompt": "prompts/build.md"}),
        }
        runner = CliAgentRunner(pipeline.model_copy(update={"stages": stages}), tmp_path)

        args = runner.build_args("build", pipeline.agents["builder-1"], "C", resume=None)

        assert args[args.index("--append-system-prompt-file") + 1] == str(prompt)
        assert "--resume" not in args
        assert "--model" not in args

    def test_missing_prompt_file_is_skipped(self, pipeline: PipelineConfig, tmp_path: Path) -> None:
        stages = {
            **pipeline.stages,
            "build": pipeline.stages["build"].model_copy(update={"prompt": "prompts/missing.md"}),
        }
        runner = CliAgentRunner(pipeline.model_copy(update={"stages": stages}), tmp_path)
        args = runner.build_args("build", pipeline.agents["builder-1"], "C", resume=None)
        assert "--append-system-prompt-file" not in args
