from __future__ import annotations

from pathlib import Path
from pydantic import BaseModel, ConfigDict, Field


class AgentConfig(BaseModel):
    """An agent: a working checkout plus the capabilities it offers."""

    model_config = ConfigDict(frozen=True)

    id: str
    dir: Path = Field(default_factory=Path.cwd)
    capabilities: frozenset[str] = frozenset()
    model: str | None = None

    def has_all(self, required: frozenset[str] | set[str] | list[str]) -> bool:
        return set(required) <= self.capabilities
