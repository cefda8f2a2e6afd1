from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_PRIORITY = 5  # 0 (most urgent) .. 10


class ItemStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


class WorkItem(BaseModel):
    """Frontmatter of a work-item file.

    Unknown keys are kept so that rewriting a file never drops metadata
    written by other tools.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    title: str = ""
    status: ItemStatus = ItemStatus.PENDING
    stage: str = ""
    attempt: int = Field(default=1, ge=1)
    created: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    history: str = ""
    assignee: str = ""
    parent: Optional[str] = None
    priority: int = DEFAULT_PRIORITY
    sessions: dict[str, str] = Field(default_factory=dict)
    pr_url: Optional[str] = None

    @field_validator("id", "title", "assignee", "history", mode="before")
    @classmethod
    def _coerce_text(cls, value: object) -> object:
        # YAML turns bare numbers and empty values into int/None
        if value is None:
            return ""
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("priority", mode="before")
    @classmethod
    def _default_priority(cls, value: object) -> object:
        return DEFAULT_PRIORITY if value is None else value

    @field_validator("sessions", mode="before")
    @classmethod
    def _default_sessions(cls, value: object) -> object:
        return {} if value is None else value

    @field_validator("created")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def history_entries(self) -> list[str]:
        return [entry.strip() for entry in self.history.replace(",", ";").split(";") if entry.strip()]

    def sort_key(self) -> tuple[int, datetime]:
        return (self.priority, self.created)
