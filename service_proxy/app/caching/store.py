"""
Disk-backed cache store.

Every resource lives in one file below the cache root, at the location
mirroring its key. The file modification time is the entry's last-write
timestamp; no other metadata is persisted.
"""

import asyncio
import os
import stat
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

from shared.errors import InvalidPathError, StorageError
from shared.logging import get_logger
from .keys import ResourceKey
from .rwlock import AsyncRWLock

TEMP_SUFFIX = ".part"


def _is_temp_file(filename: str) -> bool:
    """Whether ``filename`` is an in-progress write left by ``CacheStore.write``."""
    return filename.startswith(".") and filename.endswith(TEMP_SUFFIX)


@dataclass(frozen=True)
class CacheEntry:
    """Snapshot of a stored resource taken at lookup time."""
    key: ResourceKey
    location: Path
    size: int
    modified_at: float
    age: float


class CacheStore:
    """Maps resource keys to files with freshness metadata.

    Lookups and reads share a store-wide lock; writes take it exclusively,
    so a reader sees either the previous complete file or the new one.
    """

    def __init__(self, root: Union[str, Path], *, clock: Callable[[], float] = time.time):
        self.root = Path(root)
        self._resolved_root = self.root.resolve()
        self._clock = clock
        self._lock = AsyncRWLock()
        self.logger = get_logger("proxy.cache_store")

    def ensure_root(self) -> None:
        """Create the storage root if needed."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(
                "Failed to create cache directory",
                details={"root": str(self.root), "error": str(exc)},
            ) from exc
        self._resolved_root = self.root.resolve()

    async def lookup(self, key: ResourceKey) -> Optional[CacheEntry]:
        """Return the entry for ``key`` or ``None`` when nothing is stored."""
        async with self._lock.shared():
            return await asyncio.to_thread(self._stat_entry, key)

    async def read(self, entry: CacheEntry) -> bytes:
        """Read the content of a previously looked-up entry."""
        async with self._lock.shared():
            return await asyncio.to_thread(self._read_file, entry.location)

    async def lookup_and_read(self, key: ResourceKey) -> Optional[Tuple[CacheEntry, bytes]]:
        """Lookup and read under one shared hold so metadata matches content."""
        async with self._lock.shared():
            entry = await asyncio.to_thread(self._stat_entry, key)
            if entry is None:
                return None
            content = await asyncio.to_thread(self._read_file, entry.location)
            return entry, content

    async def write(self, key: ResourceKey, content: bytes) -> CacheEntry:
        """Durably replace the content stored under ``key``."""
        async with self._lock.exclusive():
            entry = await asyncio.to_thread(self._write_file, key, content)

        self.logger.debug("Cache entry written", key=key.path, size=entry.size)
        return entry

    async def stats(self) -> Dict[str, Any]:
        """Count stored entries and bytes."""
        async with self._lock.shared():
            files, total = await asyncio.to_thread(self._walk_sizes)
        return {"root": str(self.root), "entries": files, "bytes": total}

    def _location(self, key: ResourceKey) -> Path:
        # Resolves symlinks on disk; call from a worker thread.
        candidate = self._resolved_root.joinpath(key.relative_path())
        resolved = candidate.resolve(strict=False)
        if not resolved.is_relative_to(self._resolved_root) or resolved == self._resolved_root:
            raise InvalidPathError(
                "Resource path escapes the cache root",
                details={"key": key.path},
            )
        return candidate

    def _stat_entry(self, key: ResourceKey) -> Optional[CacheEntry]:
        location = self._location(key)
        try:
            st = os.stat(location)
        except (FileNotFoundError, NotADirectoryError):
            return None
        except OSError as exc:
            self.logger.warning("Cache entry not readable", key=key.path, error=str(exc))
            return None

        if not stat.S_ISREG(st.st_mode):
            return None

        return CacheEntry(
            key=key,
            location=location,
            size=st.st_size,
            modified_at=st.st_mtime,
            age=max(0.0, self._clock() - st.st_mtime),
        )

    @staticmethod
    def _read_file(location: Path) -> bytes:
        try:
            return location.read_bytes()
        except OSError as exc:
            raise StorageError(
                "Failed to read cached file",
                details={"location": str(location), "error": str(exc)},
            ) from exc

    def _write_file(self, key: ResourceKey, content: bytes) -> CacheEntry:
        location = self._location(key)
        try:
            location.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(
                "Failed to create cache directories",
                details={"key": key.path, "error": str(exc)},
            ) from exc

        temp_name: Optional[str] = None
        try:
            fd, temp_name = tempfile.mkstemp(
                dir=location.parent,
                prefix=f".{key.name}.",
                suffix=TEMP_SUFFIX,
            )
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())

            now = self._clock()
            os.chmod(temp_name, 0o644)
            os.utime(temp_name, (now, now))
            os.replace(temp_name, location)
            temp_name = None
        except OSError as exc:
            raise StorageError(
                "Failed to write cached file",
                details={"key": key.path, "error": str(exc)},
            ) from exc
        finally:
            if temp_name is not None:
                try:
                    os.unlink(temp_name)
                except FileNotFoundError:
                    pass

        return CacheEntry(
            key=key,
            location=location,
            size=len(content),
            modified_at=now,
            age=0.0,
        )

    def _walk_sizes(self) -> Tuple[int, int]:
        files = 0
        total = 0
        if not self.root.exists():
            return files, total
        for dirpath, _dirnames, filenames in os.walk(self.root):
            for filename in filenames:
                if _is_temp_file(filename):
                    continue
                try:
                    total += os.path.getsize(os.path.join(dirpath, filename))
                except OSError:
                    continue
                files += 1
        return files, total
