"""Work-item files: YAML frontmatter plus a Markdown body of ``## `` sections."""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from pipeworks.errors import ParseError
from pipeworks.models.work_item import ItemStatus, WorkItem

logger = logging.getLogger(__name__)

_FRONTMATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)^---[ \t]*(?:\r?\n|\Z)", re.DOTALL | re.MULTILINE)
_ANY_HEADING_RE = re.compile(r"^## ", re.MULTILINE)

SECTIONS = ("Description", "Plan", "Review Notes", "Build Log", "Test Results", "Code Review")


def default_body(description: str = "") -> str:
    """Section skeleton for a freshly created item."""
    blocks = []
    for name in SECTIONS:
        content = description.strip() if name == "Description" else ""
        blocks.append(f"## {name}\n\n{content}\n" if content else f"## {name}\n")
    return "\n" + "\n".join(blocks)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def render(metadata: Mapping[str, Any], body: str) -> str:
    front = yaml.safe_dump(_plain(metadata), sort_keys=False, allow_unicode=True, default_flow_style=False)
    return f"---\n{front}---\n{body}"


def split_document(text: str, path: str | Path = "<memory>") -> tuple[dict[str, Any], str]:
    match = _FRONTMATTER_RE.match(text)
    if match is None:
        raise ParseError(path, "missing '---' frontmatter block")
    try:
        metadata = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        raise ParseError(path, f"invalid YAML frontmatter: {e}") from e
    if metadata is None:
        metadata = {}
    if not isinstance(metadata, dict):
        raise ParseError(path, "frontmatter is not a mapping")
    return metadata, text[match.end():]


def parse(path: Path) -> tuple[dict[str, Any], str]:
    """Return ``(metadata, body)`` of a work-item file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ParseError(path, f"unreadable: {e}") from e
    return split_document(text, path)


def load_item(path: Path) -> tuple[WorkItem, str]:
    metadata, body = parse(path)
    metadata.setdefault("id", Path(path).stem)
    try:
        return WorkItem.model_validate(metadata), body
    except ValidationError as e:
        raise ParseError(path, f"invalid metadata: {e.errors()[0]['msg']}") from e


def write_item(path: Path, metadata: Mapping[str, Any], body: str) -> None:
    """Write atomically: temp file in the same directory, then replace."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(render(metadata, body), encoding="utf-8")
    os.replace(tmp, path)


def create_item(path: Path, metadata: Mapping[str, Any], body: str) -> None:
    """Write a new document; ``FileExistsError`` if ``path`` is already taken."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.new")
    tmp.write_text(render(metadata, body), encoding="utf-8")
    try:
        os.link(tmp, path)
    finally:
        tmp.unlink()


def update_metadata(path: Path, updates: Mapping[str, Any]) -> dict[str, Any]:
    """Shallow-merge ``updates`` over the current metadata, body untouched."""
    metadata, body = parse(path)
    merged = {**metadata, **updates}
    write_item(path, merged, body)
    return merged


def insert_section_text(body: str, section: str, text: str) -> str:
    """Return ``body`` with ``text`` added at the end of ``## section``.

    A missing section is appended after every existing one. Existing
    sections keep their relative order.
    """
    text = text.strip()
    heading_re = re.compile(rf"^## {re.escape(section)}[ \t]*$", re.MULTILINE)
    match = heading_re.search(body)
    if match is None:
        head = body.rstrip()
        lead = f"{head}\n\n" if head else "\n"
        return f"{lead}## {section}\n\n{text}\n"

    following = _ANY_HEADING_RE.search(body, match.end())
    insert_at = following.start() if following else len(body)
    before = body[:insert_at].rstrip()
    after = body[insert_at:]
    if after:
        return f"{before}\n\n{text}\n\n{after}"
    return f"{before}\n\n{text}\n"


def append_section(path: Path, section: str, text: str) -> None:
    metadata, body = parse(path)
    write_item(path, metadata, insert_section_text(body, section, text))


def new_item_metadata(
    item_id: str,
    title: str,
    stage: str,
    *,
    parent: str | None = None,
    priority: int | None = None,
    history: str = "",
    created: str | None = None,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "id": item_id,
        "title": title,
        "status": ItemStatus.PENDING.value,
        "stage": stage,
        "attempt": 1,
        "created": created or now_iso(),
        "history": history,
        "assignee": "",
    }
    if parent is not None:
        metadata["parent"] = parent
    if priority is not None:
        metadata["priority"] = priority
    return metadata


def append_history(history: str | None, entry: str) -> str:
    history = (history or "").strip()
    return f"{history}; {entry}" if history else entry


def list_items(stage_dir: Path) -> list[Path]:
    """Markdown files in a stage directory, sorted by name; missing dir is empty."""
    try:
        return sorted(p for p in Path(stage_dir).iterdir() if p.suffix == ".md" and p.is_file())
    except FileNotFoundError:
        return []
