"""Stage graph lookups and the retry policy."""

from __future__ import annotations

from typing import NamedTuple

from pipeworks.errors import UnknownStage, UnknownTransition
from pipeworks.models.directive import Directive
from pipeworks.models.pipeline import PipelineConfig, StageConfig
from pipeworks.models.work_item import ItemStatus

# Body section receiving PASS output when a stage does not name one
DEFAULT_SECTIONS: dict[str, str] = {
    "ideas": "Plan",
    "drafts": "Plan",
    "plans": "Plan",
    "review": "Review Notes",
    "build": "Build Log",
    "work": "Build Log",
    "test": "Test Results",
    "code-review": "Code Review",
}

FEEDBACK_SECTION = "Feedback"


class Transition(NamedTuple):
    target: str
    attempt: int
    exhausted: bool = False


def get_stage(pipeline: PipelineConfig, stage: str) -> StageConfig:
    try:
        return pipeline.stages[stage]
    except KeyError:
        raise UnknownStage(stage) from None


def next_stage(pipeline: PipelineConfig, current: str, directive: Directive) -> str:
    stage = get_stage(pipeline, current)
    target = stage.transitions.get(Directive(directive))
    if not target:
        raise UnknownTransition(current, Directive(directive).value)
    return target


def resolve_transition(
    pipeline: PipelineConfig, current: str, directive: Directive, attempt: int
) -> Transition:
    """Target stage for a non-SPLIT directive, applying the REJECT retry cap.

    A directive the stage does not wire goes to the failure stage.
    """
    get_stage(pipeline, current)
    directive = Directive(directive)
    if directive is Directive.REJECT:
        attempt += 1
        if attempt > pipeline.max_attempts:
            return Transition(pipeline.failed_stage, attempt, exhausted=True)
    try:
        target = next_stage(pipeline, current, directive)
    except UnknownTransition:
        target = pipeline.failed_stage
    return Transition(target, attempt)


def split_target(pipeline: PipelineConfig, current: str) -> str:
    """Where SPLIT children start: the PASS target, else SPLIT's.

    Children always start pending, so when that target is terminal (or
    missing) they stay in the stage that split them.
    """
    stage = get_stage(pipeline, current)
    target = stage.transitions.get(Directive.PASS) or stage.transitions.get(Directive.SPLIT)
    if not target or is_terminal(pipeline, target):
        return current
    return target


def status_for(pipeline: PipelineConfig, stage: str) -> ItemStatus:
    if stage == pipeline.done_stage:
        return ItemStatus.DONE
    if stage == pipeline.failed_stage:
        return ItemStatus.FAILED
    return ItemStatus.PENDING


def section_for(pipeline: PipelineConfig, stage: str) -> str:
    configured = pipeline.stages.get(stage)
    if configured is not None and configured.section:
        return configured.section
    return DEFAULT_SECTIONS.get(stage, stage.replace("-", " ").replace("_", " ").title())


def is_terminal(pipeline: PipelineConfig, stage: str) -> bool:
    return stage in pipeline.terminal_stages


def all_dirs(pipeline: PipelineConfig) -> list[str]:
    return [*pipeline.stages, pipeline.done_stage, pipeline.failed_stage]
