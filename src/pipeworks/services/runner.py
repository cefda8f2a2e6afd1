"""Invoking the external agent CLI and reading its verdict."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from pipeworks.errors import AgentDispatchFailure, ParseError
from pipeworks.models.agent import AgentConfig
from pipeworks.models.directive import Directive, RunResult
from pipeworks.models.pipeline import PipelineConfig
from pipeworks.services import work_store

logger = logging.getLogger(__name__)

_DIRECTIVE_RE = re.compile(
    r'^DIRECTIVE:\s*(PASS|REJECT|FAIL|SPLIT)\b(?:\s+reason="([^"]*)")?', re.IGNORECASE
)
_PR_URL_RE = re.compile(r"^pr_url:\s*(\S.*)$", re.IGNORECASE)
_SPLIT_MARKER_RE = re.compile(r"<!--\s*SPLIT\s*-->")
_SPLIT_DIRECTIVE_LINE_RE = re.compile(r"^DIRECTIVE:\s*SPLIT.*$", re.IGNORECASE | re.MULTILINE)


@dataclass
class ParsedDirective:
    directive: Directive
    reason: str | None = None
    pr_url: str | None = None
    splits: list[str] = field(default_factory=list)


def parse_splits(output: str) -> list[str]:
    """Segments of a SPLIT output, delimited by ``<!-- SPLIT -->``."""
    segments = []
    for part in _SPLIT_MARKER_RE.split(output):
        part = _SPLIT_DIRECTIVE_LINE_RE.sub("", part).strip()
        if part:
            segments.append(part)
    return segments


def parse_directive(output: str) -> ParsedDirective | None:
    """Find the last ``DIRECTIVE:`` line of ``output``; ``None`` if there is none."""
    lines = [line.strip() for line in output.splitlines()]

    pr_url = None
    for line in reversed(lines):
        match = _PR_URL_RE.match(line)
        if match:
            pr_url = match.group(1).strip()
            break

    for line in reversed(lines):
        match = _DIRECTIVE_RE.match(line)
        if match is None:
            continue
        directive = Directive(match.group(1).upper())
        parsed = ParsedDirective(directive=directive, reason=match.group(2) or None, pr_url=pr_url)
        if directive is Directive.SPLIT:
            parsed.splits = parse_splits(output)
        return parsed
    return None


def interpret_output(stdout: str, stderr: str, returncode: int | None, command: str = "agent") -> RunResult:
    """Build a RunResult from raw CLI output.

    JSON output of the form ``{"result": ..., "session_id": ...}`` is
    unwrapped; anything else is treated as plain text.
    """
    output = stdout.strip()
    session_id = None
    try:
        payload = json.loads(output)
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        output = str(payload.get("result") or output)
        session_id = payload.get("session_id")

    parsed = parse_directive(output)
    if parsed is not None:
        return RunResult(
            directive=parsed.directive,
            reason=parsed.reason,
            output=output,
            session_id=session_id,
            pr_url=parsed.pr_url,
            splits=parsed.splits,
        )
    if returncode:
        reason = f"{command} exited {returncode}: {stderr.strip()[:500]}"
    else:
        reason = "No DIRECTIVE found in output"
    return RunResult(directive=Directive.FAIL, reason=reason, output=output, session_id=session_id)


class AgentRunner(Protocol):
    """Anything that can process one work item for one stage."""

    async def run(self, item_path: Path, stage: str, agent: AgentConfig) -> RunResult:
        ...


class CliAgentRunner:
    """Runs the configured agent CLI as a subprocess in the agent's checkout."""

    def __init__(self, pipeline: PipelineConfig, root: Path):
        self.pipeline = pipeline
        self.root = Path(root)

    async def run(self, item_path: Path, stage: str, agent: AgentConfig) -> RunResult:
        content = Path(item_path).read_text(encoding="utf-8")
        try:
            item, _ = work_store.load_item(item_path)
            resume = item.sessions.get(stage)
        except ParseError:
            resume = None

        args = self.build_args(stage, agent, content, resume)
        cli = self.pipeline.cli
        stdin_data = None if cli.prompt_flag else content.encode("utf-8")

        logger.debug("[%s] launching %s in %s", agent.id, cli.command, agent.dir)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(agent.dir),
                stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise AgentDispatchFailure(f"Failed to spawn {cli.command}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(stdin_data), timeout=cli.timeout_seconds
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise AgentDispatchFailure(
                f"{cli.command} timed out after {cli.timeout_seconds:.0f}s"
            ) from None

        stderr_text = stderr.decode("utf-8", errors="replace")
        for line in stderr_text.splitlines():
            if line.strip():
                logger.debug("[%s] %s", agent.id, line)
        return interpret_output(
            stdout.decode("utf-8", errors="replace"), stderr_text, proc.returncode, cli.command
        )

    def build_args(self, stage: str, agent: AgentConfig, content: str, resume: str | None) -> list[str]:
        cli = self.pipeline.cli
        args = [cli.command, *cli.args]
        if agent.model and cli.model_flag:
            args += [cli.model_flag, agent.model]
        prompt_file = self._prompt_file(stage)
        if prompt_file is not None and cli.system_prompt_flag:
            args += [cli.system_prompt_flag, str(prompt_file)]
        if resume and cli.resume_flag:
            args += [cli.resume_flag, resume]
        if cli.prompt_flag:
            args += [cli.prompt_flag, content]
        return args

    def _prompt_file(self, stage: str) -> Path | None:
        stage_config = self.pipeline.stages.get(stage)
        if stage_config is None or not stage_config.prompt:
            return None
        path = Path(stage_config.prompt).expanduser()
        if not path.is_absolute():
            path = self.root / path
        if not path.exists():
            logger.warning("Prompt file for stage %s not found: %s", stage, path)
            return None
        return path
