from __future__ import annotations

import logging

from pipeworks.models.agent import AgentConfig
from pipeworks.models.pipeline import PipelineConfig

logger = logging.getLogger(__name__)


class Scheduler:
    """Matches idle, qualified agents to stages.

    One instance per run. The busy map and the per-pool round-robin cursor
    are only touched from the orchestrator's event loop.
    """

    def __init__(self, pipeline: PipelineConfig, round_robin: bool = True):
        self.pipeline = pipeline
        self.round_robin = round_robin
        self._assignments: dict[str, str] = {}  # agent id -> work-item filename
        self._cursor: dict[str, int] = {}  # pool name -> next index to scan

    def find_available_agent(self, stage_name: str) -> AgentConfig | None:
        stage = self.pipeline.stages.get(stage_name)
        if stage is None:
            return None
        pool = self.pipeline.pools.get(stage.pool)
        if pool is None or not pool.agents:
            return None

        size = len(pool.agents)
        offset = self._cursor.get(pool.name, 0) if self.round_robin else 0
        for i in range(size):
            idx = (offset + i) % size
            agent_id = pool.agents[idx]
            if agent_id in self._assignments:
                continue
            agent = self.pipeline.agents.get(agent_id)
            if agent is None:
                continue
            if pool.requires and not agent.has_all(pool.requires):
                continue
            if self.round_robin:
                self._cursor[pool.name] = (idx + 1) % size
            return agent
        return None

    def assign(self, agent_id: str, item: str) -> None:
        self._assignments[agent_id] = item
        logger.debug("Agent %s assigned %s", agent_id, item)

    def release(self, agent_id: str) -> None:
        self._assignments.pop(agent_id, None)

    def is_busy(self, agent_id: str) -> bool:
        return agent_id in self._assignments

    @property
    def assignments(self) -> dict[str, str]:
        return dict(self._assignments)
