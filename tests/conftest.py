from __future__ import annotations

import asyncio
import copy
from pathlib import Path
from typing import Any, Callable, Union

import pytest

from pipeworks.models.agent import AgentConfig
from pipeworks.models.directive import Directive, RunResult
from pipeworks.models.pipeline import PipelineConfig
from pipeworks.services import work_store
from pipeworks.services.event_bus import EventBus
from pipeworks.services.lock_manager import LockManager
from pipeworks.services.mover import Mover
from pipeworks.services.orchestrator import Orchestrator
from pipeworks.services.scheduler import Scheduler
from pipeworks.utils.config import build_pipeline
from pipeworks.utils.logger import ActivityLog

PIPELINE_DATA: dict[str, Any] = {
    "poll_interval": 0.05,
    "max_attempts": 3,
    "terminal": {"done": "done", "failed": "failed"},
    "agents": {
        "planner-0": {"dir": ".", "capabilities": ["plan"]},
        "builder-1": {"dir": ".", "capabilities": ["code", "test"]},
        "builder-2": {"dir": ".", "capabilities": ["code"]},
        "helper-3": {"dir": ".", "capabilities": []},
    },
    "pools": {
        "planners": {"agents": ["planner-0"], "requires": ["plan"]},
        "builders": {"agents": ["builder-1", "builder-2", "helper-3"], "requires": ["code"]},
    },
    "stages": {
        "ideas": {
            "pool": "planners",
            "transitions": {"PASS": "plans", "SPLIT": "plans", "FAIL": "failed", "REJECT": "failed"},
        },
        "plans": {
            "pool": "planners",
            "transitions": {"PASS": "build", "REJECT": "ideas", "FAIL": "failed"},
        },
        "build": {
            "pool": "builders",
            "section": "Build Log",
            "transitions": {"PASS": "done", "REJECT": "plans", "FAIL": "failed"},
        },
    },
}


Response = Union[RunResult, Callable[[Path, str, AgentConfig], RunResult], Exception]


class ScriptedRunner:
    """Agent runner returning canned results keyed by (item stem, stage)."""

    def __init__(self, default: RunResult | None = None) -> None:
        self.responses: dict[tuple[str, str], list[Response]] = {}
        self.default = default or RunResult(directive=Directive.PASS, output="ok")
        self.calls: list[tuple[str, str, str]] = []
        self.gate: asyncio.Event | None = None

    def script(self, item: str, stage: str, *responses: Response) -> None:
        self.responses.setdefault((item, stage), []).extend(responses)

    async def run(self, item_path: Path, stage: str, agent: AgentConfig) -> RunResult:
        self.calls.append((item_path.stem, stage, agent.id))
        if self.gate is not None:
            await self.gate.wait()
        queue = self.responses.get((item_path.stem, stage))
        response: Response = queue.pop(0) if queue else self.default
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(item_path, stage, agent)
        return response


@pytest.fixture
def pipeline_data() -> dict[str, Any]:
    return copy.deepcopy(PIPELINE_DATA)


@pytest.fixture
def pipeline(pipeline_data: dict[str, Any], tmp_path: Path) -> PipelineConfig:
    return build_pipeline(pipeline_data, tmp_path)


@pytest.fixture
def pipeline_dir(tmp_path: Path) -> Path:
    path = tmp_path / "pipeline"
    path.mkdir()
    return path


@pytest.fixture
def lock_manager(tmp_path: Path) -> LockManager:
    return LockManager(tmp_path / "locks")


@pytest.fixture
def activity(tmp_path: Path) -> ActivityLog:
    return ActivityLog(tmp_path / "logs")


@pytest.fixture
def mover(pipeline: PipelineConfig, pipeline_dir: Path, activity: ActivityLog) -> Mover:
    return Mover(pipeline, pipeline_dir, activity)


@pytest.fixture
def scheduler(pipeline: PipelineConfig) -> Scheduler:
    return Scheduler(pipeline)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def runner() -> ScriptedRunner:
    return ScriptedRunner()


@pytest.fixture
def orchestrator(
    pipeline: PipelineConfig,
    pipeline_dir: Path,
    runner: ScriptedRunner,
    lock_manager: LockManager,
    scheduler: Scheduler,
    mover: Mover,
    activity: ActivityLog,
    event_bus: EventBus,
) -> Orchestrator:
    return Orchestrator(
        pipeline=pipeline,
        pipeline_dir=pipeline_dir,
        runner=runner,
        lock_manager=lock_manager,
        scheduler=scheduler,
        mover=mover,
        activity=activity,
        event_bus=event_bus,
    )


@pytest.fixture
def make_item(pipeline_dir: Path) -> Callable[..., Path]:
    """Write a work item into a stage directory and return its path."""

    def _make(
        item_id: str,
        stage: str = "ideas",
        body: str = "\n## Description\n\nDo the thing\n",
        **fields: Any,
    ) -> Path:
        metadata = work_store.new_item_metadata(
            item_id,
            fields.pop("title", item_id.replace("-", " ").title()),
            stage,
            created=fields.pop("created", None),
        )
        metadata.update(fields)
        path = pipeline_dir / stage / f"{item_id}.md"
        work_store.write_item(path, metadata, body)
        return path

    return _make
