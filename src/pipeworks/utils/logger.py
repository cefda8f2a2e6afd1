from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    """Configure the ``pipeworks`` logger hierarchy."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger("pipeworks")
    root.setLevel(numeric_level)
    if any(getattr(h, "_pipeworks", False) for h in root.handlers):
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    handler._pipeworks = True  # type: ignore[attr-defined]
    root.addHandler(handler)


class ActivityLog:
    """Append-only per-stage and per-item log files under ``logs/``.

    Every line is also emitted through the module logger, so the files are a
    durable copy of what the console shows for a given stage or item.
    """

    def __init__(self, logs_dir: Path):
        self.logs_dir = Path(logs_dir)

    def stage(self, stage: str, message: str) -> None:
        logger.info("[%s] %s", stage, message)
        self._append(self.logs_dir / "stages" / f"{stage}.log", message)

    def item(self, item_id: str, stage: str, agent_id: str, message: str) -> None:
        logger.info("[%s] [%s] %s", item_id, agent_id, message)
        self._append(self.logs_dir / "items" / f"{item_id}.log", f"[{stage}] [{agent_id}] {message}")

    def _append(self, path: Path, message: str) -> None:
        ts = datetime.now(timezone.utc).isoformat()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(f"[{ts}] {message}\n")
        except OSError as e:
            logger.warning("Cannot write activity log %s: %s", path, e)
