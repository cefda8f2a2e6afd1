from pipeworks.models.lock import LockInfo
from pipeworks.models.work_item import ItemStatus, WorkItem
from pipeworks.models.agent import AgentConfig
from pipeworks.models.directive import Directive, RunResult
from pipeworks.models.pipeline import CliConfig, PipelineConfig, PoolConfig, StageConfig

__all__ = [
    "LockInfo",
    "ItemStatus",
    "WorkItem",
    "AgentConfig",
    "Directive",
    "RunResult",
    "CliConfig",
    "PipelineConfig",
    "PoolConfig",
    "StageConfig",
]
