from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LockInfo(BaseModel):
    """Contents of a claim marker in the locks directory."""

    file: str
    agent_id: str
    locked_at: datetime = Field(default_factory=_utcnow)

    def age(self, now: datetime | None = None) -> timedelta:
        locked_at = self.locked_at
        if locked_at.tzinfo is None:
            locked_at = locked_at.replace(tzinfo=timezone.utc)
        return (now or _utcnow()) - locked_at

    def is_stale(self, threshold: timedelta, now: datetime | None = None) -> bool:
        return self.age(now) > threshold
