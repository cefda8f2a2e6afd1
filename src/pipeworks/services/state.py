"""Read-only pipeline snapshots and adding new work."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from pipeworks.errors import ConfigError, ParseError
from pipeworks.models.pipeline import PipelineConfig
from pipeworks.services import work_store
from pipeworks.services.lock_manager import LockManager
from pipeworks.services.pipeline import all_dirs
from pipeworks.services.scheduler import Scheduler

logger = logging.getLogger(__name__)


class ItemSummary(BaseModel):
    file: str
    id: str
    title: str
    status: str
    assignee: str = ""
    attempt: int = 1
    error: Optional[str] = None


class StageSummary(BaseModel):
    name: str
    items: list[ItemSummary] = Field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.items)


class AgentSummary(BaseModel):
    id: str
    busy_with: Optional[str] = None


class PipelineStatus(BaseModel):
    stages: list[StageSummary]
    agents: list[AgentSummary]

    @property
    def total(self) -> int:
        return sum(stage.count for stage in self.stages)


def snapshot(
    pipeline: PipelineConfig,
    pipeline_dir: Path,
    lock_manager: LockManager,
    scheduler: Optional[Scheduler] = None,
) -> PipelineStatus:
    """Current contents of every stage directory and who holds what.

    Busy agents come from the lock markers, plus the live assignments of
    ``scheduler`` when called from inside a running orchestrator.
    """
    stages = []
    for name in all_dirs(pipeline):
        summary = StageSummary(name=name)
        for path in work_store.list_items(Path(pipeline_dir) / name):
            try:
                item, _ = work_store.load_item(path)
            except ParseError as e:
                summary.items.append(
                    ItemSummary(file=path.name, id=path.stem, title=path.stem, status="unparsable", error=str(e))
                )
                continue
            summary.items.append(
                ItemSummary(
                    file=path.name,
                    id=item.id,
                    title=item.title or path.name,
                    status=item.status.value,
                    assignee=item.assignee,
                    attempt=item.attempt,
                )
            )
        stages.append(summary)

    held = {lock.agent_id: lock.file for lock in lock_manager.list_locks()}
    if scheduler is not None:
        held.update(scheduler.assignments)
    agents = [AgentSummary(id=agent_id, busy_with=held.get(agent_id)) for agent_id in pipeline.agents]
    return PipelineStatus(stages=stages, agents=agents)


def inject_item(pipeline: PipelineConfig, pipeline_dir: Path, source: Path) -> Path:
    """Copy a Markdown file into the first stage as a pending item.

    Frontmatter already present in ``source`` wins over the defaults; a file
    without frontmatter becomes the Description of a fresh item.
    """
    source = Path(source)
    if not source.is_file():
        raise FileNotFoundError(f"File not found: {source}")
    if not pipeline.stages:
        raise ConfigError("Pipeline has no stages")

    first = next(iter(pipeline.stages))
    dest_dir = Path(pipeline_dir) / first
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / (source.name if source.suffix == ".md" else f"{source.stem}.md")
    if dest.exists():
        raise FileExistsError(f"{dest.name} already exists in {first}/")

    now = work_store.now_iso()
    text = source.read_text(encoding="utf-8")
    try:
        existing, body = work_store.split_document(text, source)
    except ParseError:
        existing, body = {}, work_store.default_body(text)
        title = _first_heading(text)
    else:
        title = None

    defaults = work_store.new_item_metadata(
        str(existing.get("id") or source.stem),
        str(existing.get("title") or title or source.stem),
        first,
        history=f"{first}:{now}",
        created=now,
    )
    # Position in the pipeline is always reset; descriptive fields are kept
    metadata = {**defaults, **existing}
    metadata.update({"stage": first, "status": defaults["status"], "assignee": ""})

    work_store.write_item(dest, metadata, body)
    logger.info("Injected %s -> %s/", source.name, first)
    return dest


def _first_heading(text: str) -> str | None:
    for line in text.splitlines():
        if line.startswith("# "):
            return line[2:].strip() or None
    return None
