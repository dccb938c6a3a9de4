"""
Durable state backends.

A backend stores one JSON document and guards it with an exclusive lock.
Writes are atomic: the document is written to a temporary file in the same
directory and moved into place, so readers see either the previous or the
new document, never a partial one.
"""

from __future__ import annotations

import copy
import json
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import structlog

from strata.core.errors import LockContentionError, StateCorruptionError

logger = structlog.get_logger()

DEFAULT_STATE_PATH = Path("strata.state.json")


class StateBackend(Protocol):
    """Persistence and locking contract used by :class:`StateStore`."""

    def read(self) -> dict[str, Any] | None:
        ...

    def write(self, document: dict[str, Any]) -> None:
        ...

    def acquire(self, info: dict[str, Any]) -> None:
        ...

    def release(self, run_id: str) -> None:
        ...

    def lock_info(self) -> dict[str, Any] | None:
        ...

    def force_unlock(self) -> bool:
        ...


def lock_payload(run_id: str, operation: str) -> dict[str, Any]:
    return {
        "run_id": run_id,
        "operation": operation,
        "pid": os.getpid(),
        "created_at": datetime.now(timezone.utc).isoformat(),
    }


class FileStateBackend:
    """JSON state file with a sibling ``.lock`` file."""

    def __init__(self, path: Path | None = None, *, keep_backup: bool = True) -> None:
        self.path = Path(path or DEFAULT_STATE_PATH)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.backup_path = self.path.with_name(self.path.name + ".backup")
        self.keep_backup = keep_backup

    def read(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            return json.loads(self.path.read_text())
        except (OSError, ValueError) as exc:
            raise StateCorruptionError(
                f"Cannot read state file {self.path}: {exc}",
                {"path": str(self.path)},
            ) from exc

    def write(self, document: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(document, indent=2, sort_keys=True) + "\n"
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            if self.keep_backup and self.path.exists():
                shutil.copy2(self.path, self.backup_path)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def acquire(self, info: dict[str, Any]) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise LockContentionError(self.lock_info()) from None
        with os.fdopen(fd, "w") as handle:
            json.dump(info, handle)
        logger.debug("state_lock_acquired", path=str(self.lock_path), run_id=info.get("run_id"))

    def release(self, run_id: str) -> None:
        holder = self.lock_info()
        if holder is not None and holder.get("run_id") not in (run_id, None):
            logger.warning("state_lock_not_owned", run_id=run_id, holder=holder.get("run_id"))
            return
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            logger.warning("state_lock_already_released", run_id=run_id)

    def lock_info(self) -> dict[str, Any] | None:
        try:
            return json.loads(self.lock_path.read_text())
        except FileNotFoundError:
            return None
        except ValueError:
            return {"run_id": None, "detail": "unreadable lock file"}

    def force_unlock(self) -> bool:
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            return False
        logger.warning("state_lock_forced", path=str(self.lock_path))
        return True


class MemoryStateBackend:
    """Process-local backend for tests and embedding."""

    def __init__(self, document: dict[str, Any] | None = None) -> None:
        self.document = copy.deepcopy(document) if document is not None else None
        self.holder: dict[str, Any] | None = None
        self.writes = 0
        self.fail_next_write: Exception | None = None

    def read(self) -> dict[str, Any] | None:
        return copy.deepcopy(self.document)

    def write(self, document: dict[str, Any]) -> None:
        if self.fail_next_write is not None:
            error, self.fail_next_write = self.fail_next_write, None
            raise error
        # Round-trip through JSON so unserialisable values fail like on disk.
        self.document = json.loads(json.dumps(document))
        self.writes += 1

    def acquire(self, info: dict[str, Any]) -> None:
        if self.holder is not None:
            raise LockContentionError(dict(self.holder))
        self.holder = dict(info)

    def release(self, run_id: str) -> None:
        if self.holder is not None and self.holder.get("run_id") == run_id:
            self.holder = None

    def lock_info(self) -> dict[str, Any] | None:
        return dict(self.holder) if self.holder else None

    def force_unlock(self) -> bool:
        held = self.holder is not None
        self.holder = None
        return held
