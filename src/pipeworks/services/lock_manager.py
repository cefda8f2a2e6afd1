from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from pipeworks.models.lock import LockInfo

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(minutes=60)


@dataclass
class Lock:
    """Handle for a claim held by this process."""

    file: str
    lock_path: Path
    agent_id: str
    _release: Callable[[Path], None] = field(repr=False)

    def release(self) -> None:
        self._release(self.lock_path)


class LockManager:
    """Exclusive claims on work-item files, backed by marker files.

    Design:
    - One ``<filename>.lock`` JSON marker per claimed item in ``locks_dir``.
    - Exclusivity comes from the filesystem (hard-link creation never
      overwrites); there is no in-process bookkeeping.
    - Markers older than ``stale_after`` (or unreadable) are reclaimable.
    - Contention is reported through ``None``/``False``, never exceptions.
    """

    def __init__(self, locks_dir: Path, stale_after: timedelta = STALE_AFTER):
        self.locks_dir = Path(locks_dir)
        self.stale_after = stale_after

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def try_claim(self, filename: str, agent_id: str) -> Lock | None:
        """Claim ``filename`` for ``agent_id``; ``None`` if someone else holds it."""
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        lock_path = self._lock_path(filename)

        if self._create(lock_path, filename, agent_id):
            return self._handle(filename, lock_path, agent_id)

        if not lock_path.exists():
            # Creation failed for a reason other than an existing marker
            return None

        existing = self._read(lock_path)
        if existing is not None and not existing.is_stale(self.stale_after):
            logger.debug("Claim denied on %s: held by %s", filename, existing.agent_id)
            return None

        if not self._evict(lock_path):
            logger.debug("Claim denied on %s: marker replaced during reclaim", filename)
            return None
        holder = existing.agent_id if existing else "unreadable marker"
        logger.info("Reclaimed stale lock on %s (held by %s)", filename, holder)
        if self._create(lock_path, filename, agent_id):
            return self._handle(filename, lock_path, agent_id)
        return None

    def release(self, lock: Lock) -> None:
        self._remove(lock.lock_path)

    def is_locked(self, filename: str) -> bool:
        return self.get_lock_info(filename) is not None

    def get_lock_info(self, filename: str) -> LockInfo | None:
        return self._read(self._lock_path(filename))

    def list_locks(self) -> list[LockInfo]:
        locks = []
        for marker in self._markers():
            info = self._read(marker)
            if info is not None:
                locks.append(info)
        return locks

    def force_release(self, filename: str) -> bool:
        lock_path = self._lock_path(filename)
        if not lock_path.exists():
            return False
        self._remove(lock_path)
        logger.info("Force-released lock on %s", filename)
        return True

    def clear_stale_locks(self) -> int:
        """Remove stale and unreadable markers, e.g. after a crash."""
        cleared = 0
        for marker in self._markers():
            info = self._read(marker)
            if (info is None or info.is_stale(self.stale_after)) and self._evict(marker):
                cleared += 1
        if cleared:
            logger.info("Cleared %d stale lock(s) from %s", cleared, self.locks_dir)
        return cleared

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _lock_path(self, filename: str) -> Path:
        return self.locks_dir / f"{filename}.lock"

    def _handle(self, filename: str, lock_path: Path, agent_id: str) -> Lock:
        logger.debug("Lock acquired on %s by %s", filename, agent_id)
        return Lock(file=filename, lock_path=lock_path, agent_id=agent_id, _release=self._remove)

    def _create(self, lock_path: Path, filename: str, agent_id: str) -> bool:
        """Create the marker with its content in place, or fail if it exists.

        The payload is written to a private temp file first and hard-linked
        to the marker name; ``link`` refuses to overwrite, so a reader never
        sees a half-written marker.
        """
        payload = LockInfo(file=filename, agent_id=agent_id).model_dump_json()
        tmp = self.locks_dir / f".{filename}.{os.getpid()}.{uuid.uuid4().hex[:8]}.tmp"
        try:
            fd = os.open(tmp, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.link(tmp, lock_path)
        except OSError:
            return False
        finally:
            self._remove(tmp)
        return True

    def _evict(self, lock_path: Path) -> bool:
        """Remove a marker judged stale, unless it changed since it was read.

        The marker is renamed aside first, which is atomic, and judged again
        there. A fresh marker that another claimant created in the meantime
        is linked back into place and ``False`` is returned.
        """
        aside = self.locks_dir / f".{lock_path.name}.{os.getpid()}.{uuid.uuid4().hex[:8]}.stale"
        try:
            os.rename(lock_path, aside)
        except OSError:
            return False

        moved = self._read(aside)
        if moved is None or moved.is_stale(self.stale_after):
            self._remove(aside)
            return True

        try:
            os.link(aside, lock_path)
        except OSError as e:
            logger.warning("Could not restore lock %s held by %s: %s", lock_path, moved.agent_id, e)
        self._remove(aside)
        return False

    def _read(self, lock_path: Path) -> LockInfo | None:
        try:
            return LockInfo.model_validate_json(lock_path.read_text(encoding="utf-8"))
        except (OSError, ValueError, ValidationError):
            return None

    def _remove(self, lock_path: Path) -> None:
        try:
            lock_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove lock %s: %s", lock_path, e)

    def _markers(self) -> list[Path]:
        try:
            return sorted(self.locks_dir.glob("*.lock"))
        except OSError:
            return []
