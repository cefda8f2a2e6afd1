"""Error types for the pipeline."""

from __future__ import annotations

from pathlib import Path


class PipelineError(Exception):
    """Base class for pipeworks errors."""


class ParseError(PipelineError):
    """A work-item file does not have the expected frontmatter structure."""

    def __init__(self, path: str | Path, message: str):
        self.path = Path(path)
        super().__init__(f"{self.path.name}: {message}")


class ConfigError(PipelineError):
    """The pipeline configuration is missing or inconsistent."""


class UnknownStage(ConfigError):
    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"Unknown stage: {stage}")


class UnknownTransition(ConfigError):
    def __init__(self, stage: str, directive: str):
        self.stage = stage
        self.directive = directive
        super().__init__(f"No transition for {directive} in stage {stage}")


class AgentDispatchFailure(PipelineError):
    """The external agent could not be launched or did not finish in time."""
