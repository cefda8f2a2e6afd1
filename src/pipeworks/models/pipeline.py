from __future__ import annotations

from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator

from pipeworks.models.agent import AgentConfig
from pipeworks.models.directive import Directive


class PoolConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    agents: tuple[str, ...] = ()
    requires: frozenset[str] = frozenset()


class StageConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    pool: str
    transitions: dict[Directive, str] = Field(default_factory=dict)
    section: Optional[str] = None  # body section that receives PASS output
    prompt: Optional[str] = None  # system prompt file handed to the agent CLI

    @model_validator(mode="before")
    @classmethod
    def _upper_directives(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("transitions"), dict):
            data = dict(data)
            data["transitions"] = {str(k).upper(): v for k, v in data["transitions"].items()}
        return data


class CliConfig(BaseModel):
    """How to launch the external agent CLI."""

    model_config = ConfigDict(frozen=True)

    command: str = "claude"
    args: tuple[str, ...] = ("--print", "--output-format", "json")
    model_flag: Optional[str] = "--model"
    prompt_flag: Optional[str] = "--prompt"
    resume_flag: Optional[str] = "--resume"
    system_prompt_flag: Optional[str] = "--append-system-prompt-file"
    timeout_seconds: float = 1800.0


class PipelineConfig(BaseModel):
    """Fully-resolved pipeline definition, immutable for a run."""

    model_config = ConfigDict(frozen=True)

    stages: dict[str, StageConfig] = Field(default_factory=dict)
    pools: dict[str, PoolConfig] = Field(default_factory=dict)
    agents: dict[str, AgentConfig] = Field(default_factory=dict)
    done_stage: str = "done"
    failed_stage: str = "failed"
    max_attempts: int = 3
    poll_interval: float = 5.0
    cli: CliConfig = Field(default_factory=CliConfig)

    @model_validator(mode="before")
    @classmethod
    def _name_entries(cls, data: Any) -> Any:
        """Fill in ``name``/``id`` of mapping entries from their keys."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for section, key in (("stages", "name"), ("pools", "name"), ("agents", "id")):
            entries = data.get(section)
            if not isinstance(entries, dict):
                continue
            named = {}
            for entry_name, entry in entries.items():
                if isinstance(entry, dict):
                    entry = {key: entry_name, **entry}
                named[entry_name] = entry
            data[section] = named
        return data

    @property
    def stage_names(self) -> list[str]:
        return list(self.stages)

    @property
    def terminal_stages(self) -> tuple[str, str]:
        return (self.done_stage, self.failed_stage)
