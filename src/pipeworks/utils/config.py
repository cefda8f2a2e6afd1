from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from pipeworks.errors import ConfigError
from pipeworks.models.directive import Directive
from pipeworks.models.pipeline import PipelineConfig

load_dotenv()

GLOBAL_CONFIG_PATH = Path.home() / ".pipeworks" / "config.yml"

# Lowest-precedence layer; everything else is merged over it.
DEFAULT_LAYER: dict[str, Any] = {
    "poll_interval": 5,
    "max_attempts": 3,
    "terminal": {"done": "done", "failed": "failed"},
    "cli": {},
    "agents": {},
    "pools": {},
    "stages": {},
}


def _optional_number(name: str, kind: type) -> Any:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        return kind(raw)
    except ValueError:
        raise ConfigError(f"{name} must be {'an integer' if kind is int else 'a number'}, got {raw!r}") from None


def _optional_float(name: str) -> float | None:
    return _optional_number(name, float)


def _optional_int(name: str) -> int | None:
    return _optional_number(name, int)


@dataclass(frozen=True)
class Settings:
    """Process settings loaded from environment variables."""

    # Root holding pipeline/, locks/ and logs/
    root: Path = field(
        default_factory=lambda: Path(os.environ.get("PIPEWORKS_ROOT", ".")).expanduser().resolve()
    )

    # Pipeline definition; defaults to <root>/pipeline.yml
    config_path: Path | None = field(
        default_factory=lambda: (
            Path(os.environ["PIPEWORKS_CONFIG"]).expanduser() if os.environ.get("PIPEWORKS_CONFIG") else None
        )
    )

    # Overrides applied over the YAML files
    poll_interval: float | None = field(
        default_factory=lambda: _optional_float("PIPEWORKS_POLL_INTERVAL")
    )
    max_attempts: int | None = field(
        default_factory=lambda: _optional_int("PIPEWORKS_MAX_ATTEMPTS")
    )

    # Logging
    log_level: str = field(
        default_factory=lambda: os.environ.get("PIPEWORKS_LOG_LEVEL", "INFO")
    )

    @property
    def pipeline_file(self) -> Path:
        return self.config_path or self.root / "pipeline.yml"

    @property
    def pipeline_dir(self) -> Path:
        return self.root / "pipeline"

    @property
    def locks_dir(self) -> Path:
        return self.root / "locks"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    def env_layer(self) -> dict[str, Any]:
        layer: dict[str, Any] = {}
        if self.poll_interval is not None:
            layer["poll_interval"] = self.poll_interval
        if self.max_attempts is not None:
            layer["max_attempts"] = self.max_attempts
        return layer


def get_settings(**overrides: Any) -> Settings:
    """Return settings from the environment, with explicit keyword overrides."""
    return Settings(**{k: v for k, v in overrides.items() if v is not None})


# ----------------------------------------------------------------------
# Layered pipeline configuration
# ----------------------------------------------------------------------


def read_yaml(path: Path) -> dict[str, Any]:
    """Read a YAML mapping; a missing file is an empty layer."""
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def resolve_layers(*layers: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge configuration layers; later layers win.

    Precedence, lowest to highest: built-in defaults, global
    ``~/.pipeworks/config.yml``, project ``pipeline.yml``, environment,
    explicit overrides. Nested mappings are merged key by key; any other
    value (lists included) is replaced wholesale.
    """
    merged: dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            current = merged.get(key)
            if isinstance(current, dict) and isinstance(value, Mapping):
                merged[key] = resolve_layers(current, value)
            elif isinstance(value, Mapping):
                merged[key] = resolve_layers(value)
            else:
                merged[key] = value
    return merged


def build_pipeline(data: Mapping[str, Any], root: Path) -> PipelineConfig:
    """Turn a merged configuration mapping into a validated PipelineConfig."""
    data = dict(data)
    terminal = data.pop("terminal", None) or {}
    if not isinstance(terminal, Mapping):
        raise ConfigError("'terminal' must be a mapping with 'done' and 'failed'")
    data.setdefault("done_stage", terminal.get("done", "done"))
    data.setdefault("failed_stage", terminal.get("failed", "failed"))

    agents = data.get("agents") or {}
    if not isinstance(agents, Mapping):
        raise ConfigError("'agents' must be a mapping of agent id to settings")
    resolved_agents = {}
    for agent_id, agent in agents.items():
        agent = dict(agent or {})
        agent_dir = Path(str(agent.get("dir", "."))).expanduser()
        agent["dir"] = agent_dir if agent_dir.is_absolute() else (root / agent_dir).resolve()
        resolved_agents[agent_id] = agent
    data["agents"] = resolved_agents

    try:
        pipeline = PipelineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid pipeline configuration:\n{e}") from e

    validate_pipeline(pipeline)
    return pipeline


def validate_pipeline(pipeline: PipelineConfig) -> None:
    """Check every cross-reference; raise ConfigError on the first problems found."""
    problems: list[str] = []

    if not pipeline.stages:
        problems.append("no stages defined")
    if pipeline.max_attempts < 1:
        problems.append(f"max_attempts must be >= 1 (got {pipeline.max_attempts})")
    if pipeline.poll_interval <= 0:
        problems.append(f"poll_interval must be positive (got {pipeline.poll_interval})")
    if pipeline.done_stage == pipeline.failed_stage:
        problems.append("terminal 'done' and 'failed' stages must differ")

    targets = set(pipeline.stages) | set(pipeline.terminal_stages)
    for terminal in pipeline.terminal_stages:
        if terminal in pipeline.stages:
            problems.append(f"terminal stage '{terminal}' cannot also be a working stage")

    for pool in pipeline.pools.values():
        for agent_id in pool.agents:
            if agent_id not in pipeline.agents:
                problems.append(f"pool '{pool.name}' references unknown agent '{agent_id}'")

    for stage in pipeline.stages.values():
        if stage.pool not in pipeline.pools:
            problems.append(f"stage '{stage.name}' references unknown pool '{stage.pool}'")
        for directive, target in stage.transitions.items():
            if target not in targets:
                problems.append(
                    f"stage '{stage.name}' {directive.value} -> unknown stage '{target}'"
                )

    if problems:
        raise ConfigError("Invalid pipeline configuration: " + "; ".join(problems))


@lru_cache(maxsize=16)
def _load_cached(path: str, root: str, overrides_json: str, global_path: str) -> PipelineConfig:
    project_path = Path(path)
    if not project_path.exists():
        raise ConfigError(f"Pipeline config not found: {project_path}")
    layers = [
        DEFAULT_LAYER,
        read_yaml(Path(global_path)) if global_path else {},
        read_yaml(project_path),
        json.loads(overrides_json),
    ]
    return build_pipeline(resolve_layers(*layers), Path(root))


def load_pipeline(
    settings: Settings | None = None,
    overrides: Mapping[str, Any] | None = None,
    global_config: Path | None = GLOBAL_CONFIG_PATH,
) -> PipelineConfig:
    """Load, merge and validate the pipeline once per distinct input."""
    settings = settings or get_settings()
    explicit = resolve_layers(settings.env_layer(), overrides)
    return _load_cached(
        str(settings.pipeline_file.resolve()),
        str(settings.root),
        json.dumps(explicit, sort_keys=True, default=str),
        str(global_config) if global_config else "",
    )


def clear_pipeline_cache() -> None:
    _load_cached.cache_clear()


def default_transitions(stage_names: list[str], done: str, failed: str) -> dict[str, dict[str, str]]:
    """Linear wiring used by ``pipeworks init``: PASS forward, REJECT back one stage."""
    wiring: dict[str, dict[str, str]] = {}
    for i, name in enumerate(stage_names):
        forward = stage_names[i + 1] if i + 1 < len(stage_names) else done
        back = stage_names[i - 1] if i > 0 else failed
        wiring[name] = {
            Directive.PASS.value: forward,
            Directive.REJECT.value: back,
            Directive.FAIL.value: failed,
            Directive.SPLIT.value: forward,
        }
    return wiring
