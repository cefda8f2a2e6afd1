from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Sequence

from pipeworks.models.directive import Directive
from pipeworks.models.pipeline import PipelineConfig
from pipeworks.services import work_store
from pipeworks.services.lock_manager import Lock
from pipeworks.services.pipeline import (
    FEEDBACK_SECTION,
    all_dirs,
    resolve_transition,
    section_for,
    split_target,
    status_for,
)
from pipeworks.utils.logger import ActivityLog

logger = logging.getLogger(__name__)

_HEADING_TITLE_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_META_TITLE_RE = re.compile(r"^title:\s*(.+)$", re.MULTILINE | re.IGNORECASE)


def infer_title(content: str) -> str | None:
    """First ``# heading`` of a split segment, else a ``title:`` line."""
    match = _HEADING_TITLE_RE.search(content) or _META_TITLE_RE.search(content)
    if match is None:
        return None
    title = match.group(1).strip().strip("\"'")
    return title or None


class Mover:
    """Applies a directive to a claimed work item.

    Every move rewrites the item's metadata first and renames the file last,
    so an interrupted move leaves a file whose ``stage`` already names its
    destination. The orchestrator finishes such moves on its next scan.
    """

    def __init__(self, pipeline: PipelineConfig, pipeline_dir: Path, activity: ActivityLog | None = None):
        self.pipeline = pipeline
        self.pipeline_dir = Path(pipeline_dir)
        self.activity = activity

    def move(
        self,
        item_path: Path,
        lock: Lock,
        current_stage: str,
        directive: Directive,
        reason: str | None = None,
        output: str | None = None,
        splits: Sequence[str] | None = None,
    ) -> Path:
        item_path = Path(item_path)
        directive = Directive(directive)
        try:
            if directive is Directive.SPLIT:
                segments = [s.strip() for s in (splits or []) if s and s.strip()]
                if segments:
                    return self._split(item_path, lock, current_stage, segments)
                directive = Directive.FAIL
                reason = reason or "SPLIT produced no work items"
            return self._transition(item_path, lock, current_stage, directive, reason, output)
        finally:
            lock.release()

    def relocate(self, item_path: Path, stage: str) -> Path:
        """Rename ``item_path`` into ``stage``'s directory."""
        target_dir = self.pipeline_dir / stage
        target_dir.mkdir(parents=True, exist_ok=True)
        target_path = target_dir / item_path.name
        if target_path != item_path:
            item_path.replace(target_path)
        return target_path

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _transition(
        self,
        item_path: Path,
        lock: Lock,
        current: str,
        directive: Directive,
        reason: str | None,
        output: str | None,
    ) -> Path:
        metadata, _ = work_store.parse(item_path)
        item_id = str(metadata.get("id") or item_path.stem)
        attempt = int(metadata.get("attempt") or 1)

        transition = resolve_transition(self.pipeline, current, directive, attempt)
        target = transition.target
        now = work_store.now_iso()

        updates = {
            "stage": target,
            "status": status_for(self.pipeline, target).value,
            "assignee": "",
            "history": work_store.append_history(metadata.get("history"), f"{current}→{target}:{now}"),
        }
        if directive is Directive.REJECT:
            updates["attempt"] = transition.attempt
        work_store.update_metadata(item_path, updates)

        if directive is Directive.PASS and output:
            work_store.append_section(item_path, section_for(self.pipeline, current), output)
        if directive is Directive.REJECT and reason:
            work_store.append_section(item_path, FEEDBACK_SECTION, f"**Rejected** ({now}): {reason}")
        elif directive is Directive.FAIL and reason:
            work_store.append_section(item_path, FEEDBACK_SECTION, f"**Failed** ({now}): {reason}")
        if transition.exhausted:
            self._stage_log(
                current,
                f"{item_path.name} exceeded max attempts ({self.pipeline.max_attempts}), "
                f"moving to {target}/",
            )

        new_path = self.relocate(item_path, target)
        self._item_log(item_id, current, lock.agent_id, f"{directive.value} → {target}")
        return new_path

    def _split(self, item_path: Path, lock: Lock, current: str, segments: list[str]) -> Path:
        metadata, _ = work_store.parse(item_path)
        parent_id = str(metadata.get("id") or item_path.stem)
        target = split_target(self.pipeline, current)
        target_dir = self.pipeline_dir / target
        now = work_store.now_iso()

        taken = self._existing_names()
        suffix = 0
        child_ids = []
        for n, content in enumerate(segments, start=1):
            while True:
                suffix += 1
                child_id = f"{parent_id}-{suffix}"
                if f"{child_id}.md" in taken:
                    logger.debug("Split child id %s already in use, trying the next", child_id)
                    continue
                child = work_store.new_item_metadata(
                    child_id,
                    infer_title(content) or f"{parent_id}-part-{n}",
                    target,
                    parent=parent_id,
                    priority=metadata.get("priority"),
                    history=f"{current}→{target}:{now}",
                    created=now,
                )
                try:
                    work_store.create_item(target_dir / f"{child_id}.md", child, f"\n{content}\n")
                except FileExistsError:
                    continue
                break
            child_ids.append(child_id)
            self._item_log(child_id, current, lock.agent_id, f"Split child {n}/{len(segments)} → {target}")

        done = self.pipeline.done_stage
        work_store.update_metadata(
            item_path,
            {
                "stage": done,
                "status": status_for(self.pipeline, done).value,
                "assignee": "",
                "history": work_store.append_history(metadata.get("history"), f"{current}→{done}:{now}"),
            },
        )
        manifest = "\n".join(f"- {child_id}" for child_id in child_ids)
        work_store.append_section(
            item_path, "Plan", f"**Split into {len(child_ids)} work items** ({now}):\n{manifest}"
        )

        done_path = self.relocate(item_path, done)
        self._stage_log(current, f"{item_path.name} SPLIT into {len(child_ids)} items → {target}")
        return done_path

    def _existing_names(self) -> set[str]:
        """Item filenames present in any stage directory."""
        names: set[str] = set()
        for stage in all_dirs(self.pipeline):
            names.update(path.name for path in work_store.list_items(self.pipeline_dir / stage))
        return names

    def _stage_log(self, stage: str, message: str) -> None:
        if self.activity:
            self.activity.stage(stage, message)
        else:
            logger.info("[%s] %s", stage, message)

    def _item_log(self, item_id: str, stage: str, agent_id: str, message: str) -> None:
        if self.activity:
            self.activity.item(item_id, stage, agent_id, message)
        else:
            logger.info("[%s] [%s] %s", item_id, agent_id, message)
