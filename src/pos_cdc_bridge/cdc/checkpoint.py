"""Watermark store implementations keeping the last processed change version per table."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from threading import Lock, RLock
from typing import Dict, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class WatermarkStore(Protocol):
    def load(self, table: str) -> Optional[int]: ...

    def save(self, table: str, version: int) -> None: ...

    def reset(
        self,
        table: str,
        *,
        expected_version: Optional[int] = None,
        new_version: Optional[int] = None,
        force: bool = False,
    ) -> None: ...


def _check_reset(
    current: Optional[int],
    expected_version: Optional[int],
    new_version: Optional[int],
    force: bool,
) -> None:
    """Raise ``ValueError`` when a manual rewind is not safe to apply."""
    if force:
        return
    if current is None:
        if expected_version is not None:
            raise ValueError("watermark missing; supply force=True to reset")
        return
    if expected_version is None or expected_version != current:
        raise ValueError("unexpected watermark value")
    if new_version is not None and new_version > current:
        raise ValueError("new watermark must not exceed current value")


class InMemoryWatermarkStore:
    """Volatile store; a restart re-seeds from the change log's current version."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._versions: Dict[str, int] = {}

    def load(self, table: str) -> Optional[int]:
        with self._lock:
            return self._versions.get(table)

    def save(self, table: str, version: int) -> None:
        with self._lock:
            current = self._versions.get(table)
            if current is None or version > current:
                self._versions[table] = version

    def reset(
        self,
        table: str,
        *,
        expected_version: Optional[int] = None,
        new_version: Optional[int] = None,
        force: bool = False,
    ) -> None:
        with self._lock:
            current = self._versions.get(table)
            _check_reset(current, expected_version, new_version, force)
            if new_version is None:
                self._versions.pop(table, None)
            else:
                self._versions[table] = new_version


class PersistentWatermarkStore:
    """Durable store that persists watermarks to a JSON file atomically.

    The file is re-read whenever another process has replaced it, so a
    rewind made with the admin CLI is picked up by a running service instead
    of being overwritten by its next save.
    """

    def __init__(self, path: Path | str, *, fsync: bool = False) -> None:
        self._path = Path(path)
        self._fsync = fsync
        self._lock = RLock()
        self._versions: Dict[str, int] = {}
        self._disk_marker: Optional[Tuple[int, int]] = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - only raised on permission issues
            logger.warning(
                "unable to create watermark directory %s: %s", self._path.parent, exc
            )
        self._load_from_disk()

    @property
    def path(self) -> Path:
        return self._path

    def load(self, table: str) -> Optional[int]:
        with self._lock:
            self._refresh_locked()
            return self._versions.get(table)

    def save(self, table: str, version: int) -> None:
        with self._lock:
            self._refresh_locked()
            current = self._versions.get(table)
            if current is not None and version <= current:
                return
            self._versions[table] = version
            self._write_locked()

    def reset(
        self,
        table: str,
        *,
        expected_version: Optional[int] = None,
        new_version: Optional[int] = None,
        force: bool = False,
    ) -> None:
        with self._lock:
            self._refresh_locked()
            current = self._versions.get(table)
            _check_reset(current, expected_version, new_version, force)
            if new_version is None:
                if current is None:
                    return
                self._versions.pop(table, None)
            else:
                self._versions[table] = new_version
            self._write_locked()

    def _stat_marker(self) -> Optional[Tuple[int, int]]:
        try:
            stat = self._path.stat()
        except OSError:
            return None
        return (stat.st_ino, stat.st_mtime_ns)

    def _refresh_locked(self) -> None:
        marker = self._stat_marker()
        if marker is None or marker == self._disk_marker:
            return
        logger.info("watermark file %s changed on disk; reloading", self._path)
        self._load_from_disk()

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            return
        self._disk_marker = self._stat_marker()
        try:
            raw = self._path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw else {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("failed to load watermark file %s: %s", self._path, exc)
            return
        if not isinstance(data, dict):
            logger.warning("watermark file %s has invalid format; ignoring", self._path)
            return
        with self._lock:
            self._versions = {
                key: value
                for key, value in data.items()
                if isinstance(key, str) and isinstance(value, int)
            }

    def _write_locked(self) -> None:
        temp_fd: Optional[int] = None
        temp_path: Optional[str] = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                prefix=f".{self._path.name}.", dir=str(self._path.parent)
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as tmp:
                temp_fd = None  # ownership transferred to file object
                json.dump(self._versions, tmp, sort_keys=True)
                tmp.flush()
                if self._fsync:
                    os.fsync(tmp.fileno())
            os.replace(temp_path, self._path)
            temp_path = None
            self._disk_marker = self._stat_marker()
            if self._fsync:
                self._fsync_directory()
        except OSError as exc:
            logger.error("failed to persist watermark file %s: %s", self._path, exc)
            raise
        finally:
            if temp_fd is not None:
                try:
                    os.close(temp_fd)
                except OSError:
                    pass
            if temp_path is not None:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass

    def _fsync_directory(self) -> None:
        try:
            dir_fd = os.open(self._path.parent, os.O_RDONLY)
        except OSError:  # pragma: no cover - platform dependent
            return
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)


def build_watermark_store(
    backend: str, path: Path | str, *, fsync: bool = False
) -> WatermarkStore:
    if backend == "memory":
        return InMemoryWatermarkStore()
    return PersistentWatermarkStore(path, fsync=fsync)


__all__ = [
    "InMemoryWatermarkStore",
    "PersistentWatermarkStore",
    "WatermarkStore",
    "build_watermark_store",
]
