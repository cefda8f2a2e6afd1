from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from pipeworks.errors import ParseError, UnknownStage
from pipeworks.models.agent import AgentConfig
from pipeworks.models.directive import Directive, RunResult
from pipeworks.models.pipeline import PipelineConfig
from pipeworks.models.work_item import ItemStatus, WorkItem
from pipeworks.services import work_store
from pipeworks.services.event_bus import (
    DISPATCH_FAILED,
    ITEM_CLAIMED,
    ITEM_MOVED,
    ITEM_SPLIT,
    EventBus,
)
from pipeworks.services.lock_manager import Lock, LockManager
from pipeworks.services.mover import Mover
from pipeworks.services.pipeline import all_dirs
from pipeworks.services.runner import AgentRunner, CliAgentRunner
from pipeworks.services.scheduler import Scheduler
from pipeworks.utils.config import Settings
from pipeworks.utils.logger import ActivityLog

logger = logging.getLogger(__name__)


@dataclass
class Completion:
    """A finished dispatch, handed back to the poll loop."""

    item_path: Path
    stage: str
    agent: AgentConfig
    lock: Lock
    result: RunResult


class Orchestrator:
    """The poll loop.

    Design:
    - One asyncio event loop scans every stage directory each poll.
    - Each claimed item is dispatched as its own task; the loop never
      awaits an agent run directly.
    - Finished runs come back through ``_completions``. Only the loop applies
      them, so the scheduler's busy map has a single writer.
    - Everything else is re-derived from the filesystem on each scan.
    """

    def __init__(
        self,
        pipeline: PipelineConfig,
        pipeline_dir: Path,
        runner: AgentRunner,
        lock_manager: LockManager,
        scheduler: Scheduler | None = None,
        mover: Mover | None = None,
        activity: ActivityLog | None = None,
        event_bus: EventBus | None = None,
    ):
        self.pipeline = pipeline
        self.pipeline_dir = Path(pipeline_dir)
        self.runner = runner
        self.lock_manager = lock_manager
        self.scheduler = scheduler or Scheduler(pipeline)
        self.activity = activity
        self.mover = mover or Mover(pipeline, self.pipeline_dir, activity)
        self.event_bus = event_bus or EventBus()

        self._completions: asyncio.Queue[Completion] = asyncio.Queue()
        self._tasks: set[asyncio.Task[None]] = set()
        self._wakeup = asyncio.Event()
        self._stop = asyncio.Event()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        pipeline: PipelineConfig,
        runner: AgentRunner | None = None,
        event_bus: EventBus | None = None,
    ) -> Orchestrator:
        activity = ActivityLog(settings.logs_dir)
        return cls(
            pipeline=pipeline,
            pipeline_dir=settings.pipeline_dir,
            runner=runner or CliAgentRunner(pipeline, settings.root),
            lock_manager=LockManager(settings.locks_dir),
            scheduler=Scheduler(pipeline),
            mover=Mover(pipeline, settings.pipeline_dir, activity),
            activity=activity,
            event_bus=event_bus,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self, stages: Iterable[str] | None = None) -> None:
        """Poll until stopped (SIGINT/SIGTERM or ``stop()``)."""
        names = self._stage_list(stages)
        self._startup(names)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_signal)
            except (NotImplementedError, RuntimeError):
                pass

        try:
            while not self._stop.is_set():
                await self.poll_once(names)
                await self._wait(self.pipeline.poll_interval)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, RuntimeError):
                    pass
            if self._tasks:
                logger.info(
                    "Leaving %d in-flight dispatch(es); their locks expire after %s",
                    len(self._tasks),
                    self.lock_manager.stale_after,
                )
            logger.info("Watchers stopped")

    async def run_until_idle(
        self, stages: Iterable[str] | None = None, timeout: float | None = None
    ) -> bool:
        """Poll until nothing is in flight and nothing more can be dispatched.

        Returns ``False`` if ``timeout`` seconds pass first.
        """
        names = self._stage_list(stages)
        self._startup(names)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        while not self._stop.is_set():
            dispatched = await self.poll_once(names)
            if not self._tasks and self._completions.empty() and dispatched == 0:
                return True
            remaining = self.pipeline.poll_interval
            if deadline is not None:
                remaining = min(remaining, deadline - loop.time())
                if remaining <= 0:
                    return False
            await self._wait(remaining)
        return False

    def stop(self) -> None:
        self._stop.set()
        self._wakeup.set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll_once(self, stages: Iterable[str] | None = None) -> int:
        """Apply finished runs, then scan each stage once. Returns items dispatched."""
        await self._apply_completions()
        dispatched = 0
        for stage in self._stage_list(stages):
            if self._stop.is_set():
                break
            dispatched += await self._poll_stage(stage)
        return dispatched

    async def _poll_stage(self, stage: str) -> int:
        candidates: list[tuple[WorkItem, Path]] = []
        for path in work_store.list_items(self.pipeline_dir / stage):
            try:
                item, _ = work_store.load_item(path)
            except ParseError as e:
                logger.warning("Skipping unparsable item: %s", e)
                continue
            item = self._recover(path, item, stage)
            if item is None or item.status is not ItemStatus.PENDING:
                continue
            candidates.append((item, path))

        candidates.sort(key=lambda c: (*c[0].sort_key(), c[1].name))

        dispatched = 0
        for item, path in candidates:
            if self._stop.is_set():
                break
            agent = self.scheduler.find_available_agent(stage)
            if agent is None:
                break
            lock = self.lock_manager.try_claim(path.name, agent.id)
            if lock is None:
                continue
            if not self._mark_in_progress(path, stage, agent, lock):
                continue

            self.scheduler.assign(agent.id, path.name)
            self._stage_log(stage, f"{path.name} claimed by {agent.id}")
            await self.event_bus.publish(ITEM_CLAIMED, item=item.id, stage=stage, agent=agent.id)

            task = asyncio.create_task(
                self._dispatch(path, stage, agent, lock), name=f"dispatch:{path.name}"
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            dispatched += 1
        return dispatched

    def _mark_in_progress(self, path: Path, stage: str, agent: AgentConfig, lock: Lock) -> bool:
        """Re-check the item under the lock and flag it as taken."""
        try:
            item, _ = work_store.load_item(path)
            if item.status is not ItemStatus.PENDING or (item.stage and item.stage != stage):
                lock.release()
                return False
            work_store.update_metadata(
                path, {"status": ItemStatus.IN_PROGRESS.value, "assignee": agent.id}
            )
        except (ParseError, OSError) as e:
            logger.warning("Lost %s after claiming it: %s", path.name, e)
            lock.release()
            return False
        return True

    def _recover(self, path: Path, item: WorkItem, stage: str) -> WorkItem | None:
        """Finish interrupted moves and free items orphaned by a crash.

        Returns the item to consider for scheduling, or ``None`` to skip it.
        """
        if self.lock_manager.is_locked(path.name):
            return item

        if item.stage and item.stage != stage and item.stage in all_dirs(self.pipeline):
            try:
                new_path = self.mover.relocate(path, item.stage)
            except OSError as e:
                logger.warning("Cannot finish move of %s to %s: %s", path.name, item.stage, e)
            else:
                logger.info("Finished interrupted move of %s -> %s", path.name, new_path.parent.name)
            return None

        if item.status is ItemStatus.IN_PROGRESS:
            logger.info("Resetting orphaned in-progress item %s (was %s)", path.name, item.assignee)
            try:
                work_store.update_metadata(
                    path, {"status": ItemStatus.PENDING.value, "assignee": ""}
                )
            except (ParseError, OSError) as e:
                logger.warning("Cannot reset %s: %s", path.name, e)
                return None
            return item.model_copy(update={"status": ItemStatus.PENDING, "assignee": ""})
        return item

    # ------------------------------------------------------------------
    # Dispatch and completion
    # ------------------------------------------------------------------

    async def _dispatch(self, path: Path, stage: str, agent: AgentConfig, lock: Lock) -> None:
        try:
            result = await self.runner.run(path, stage, agent)
        except Exception as e:
            # Any collaborator failure goes through the normal FAIL route
            logger.error("Agent error on %s: %s", path.name, e)
            result = RunResult(directive=Directive.FAIL, reason=str(e) or type(e).__name__)
            await self.event_bus.publish(
                DISPATCH_FAILED, item=path.stem, stage=stage, agent=agent.id, error=result.reason
            )
        await self._completions.put(Completion(path, stage, agent, lock, result))
        self._wakeup.set()

    async def _apply_completions(self) -> None:
        while True:
            try:
                completion = self._completions.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._complete(completion)

    async def _complete(self, completion: Completion) -> None:
        path, stage, result = completion.item_path, completion.stage, completion.result
        suffix = f": {result.reason}" if result.reason else ""
        self._stage_log(stage, f"{path.name}: {result.directive.value}{suffix}")
        try:
            self._record_run(path, stage, result)
            new_path = self.mover.move(
                path,
                completion.lock,
                stage,
                result.directive,
                reason=result.reason,
                output=result.output,
                splits=result.splits,
            )
        except Exception:
            logger.exception("Applying %s to %s failed", result.directive.value, path.name)
        else:
            if result.directive is Directive.SPLIT and result.splits:
                await self.event_bus.publish(
                    ITEM_SPLIT, item=path.stem, stage=stage, children=len(result.splits)
                )
            else:
                await self.event_bus.publish(
                    ITEM_MOVED,
                    item=path.stem,
                    stage=stage,
                    target=new_path.parent.name,
                    directive=result.directive.value,
                )
        finally:
            self.scheduler.release(completion.agent.id)
            completion.lock.release()

    def _record_run(self, path: Path, stage: str, result: RunResult) -> None:
        """Persist the resume token and PR link reported by the agent."""
        if not result.session_id and not result.pr_url:
            return
        metadata, _ = work_store.parse(path)
        updates: dict[str, object] = {}
        if result.session_id:
            sessions = dict(metadata.get("sessions") or {})
            sessions[stage] = result.session_id
            updates["sessions"] = sessions
        if result.pr_url:
            updates["pr_url"] = result.pr_url
        work_store.update_metadata(path, updates)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _startup(self, stages: list[str]) -> None:
        self._stop.clear()
        cleared = self.lock_manager.clear_stale_locks()
        if cleared:
            logger.info("Recovered %d stale lock(s) from a previous run", cleared)
        for name in all_dirs(self.pipeline):
            (self.pipeline_dir / name).mkdir(parents=True, exist_ok=True)
        logger.info("Starting watchers for: %s", ", ".join(stages))
        logger.info("Poll interval: %ss", self.pipeline.poll_interval)

    def _stage_list(self, stages: Iterable[str] | None) -> list[str]:
        if stages is None:
            return list(self.pipeline.stages)
        names = list(stages)
        for name in names:
            if name not in self.pipeline.stages:
                raise UnknownStage(name)
        return names

    async def _wait(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=max(timeout, 0))
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    def _handle_signal(self) -> None:
        logger.info("Shutting down watchers...")
        self.stop()

    def _stage_log(self, stage: str, message: str) -> None:
        if self.activity:
            self.activity.stage(stage, message)
        else:
            logger.info("[%s] %s", stage, message)
