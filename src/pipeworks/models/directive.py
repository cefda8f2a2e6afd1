from __future__ import annotations

from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class Directive(str, Enum):
    """Verdict an agent returns for a work item."""

    PASS = "PASS"
    REJECT = "REJECT"
    FAIL = "FAIL"
    SPLIT = "SPLIT"


class RunResult(BaseModel):
    """Outcome of one agent invocation."""

    directive: Directive
    reason: Optional[str] = None
    output: str = ""
    session_id: Optional[str] = None
    pr_url: Optional[str] = None
    splits: list[str] = Field(default_factory=list)
