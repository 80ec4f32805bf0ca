# tierstore/backends/filesystem.py
"""
Filesystem tier: one file per payload under the record kind's storage directory.

File names embed the owner name, a millisecond timestamp and a random suffix,
so concurrent writers never target the same path. Writes go to a temp file
first and are moved into place with os.replace. Blocking file I/O runs in the
default executor.
"""

from __future__ import annotations

import os
import time
import asyncio
import pathlib
import secrets
import datetime
import functools
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

from tierstore import codec
from tierstore.backends.base import TierBackend
from tierstore.config import RecordKind, StorageConfig
from tierstore.errors import NotFound, SizeLimitExceeded, StorageUnavailable
from tierstore.metrics import record_tier_op
from tierstore.models import F_FILE_NAME, F_FILE_SIZE, StoredObjectLocator, StoreResult, Tier
from tierstore.utils.common import bytes_to_human

_SUFFIX_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"


def _random_suffix(length: int = 9) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


def _safe_name(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_" else "_" for c in name) or "payload"


class FilesystemBackend(TierBackend):
    tier = Tier.FILESYSTEM_FILE

    def __init__(self, config: StorageConfig, kind: RecordKind, storage_dir: Optional[Union[str, pathlib.Path]] = None):
        super().__init__()
        self.config = config
        self.kind = kind
        self.storage_dir = pathlib.Path(storage_dir) if storage_dir else config.storage_dir(kind)

    async def _run(self, fn: Callable[..., Any], *args) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    def _write_sync(self, path: pathlib.Path, payload: bytes) -> None:
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        try:
            with open(tmp, "wb") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except BaseException:
            try:
                tmp.unlink()
            except FileNotFoundError:
                pass
            raise

    @staticmethod
    def _read_sync(path: pathlib.Path) -> bytes:
        with open(path, "rb") as fh:
            return fh.read()

    def new_path(self, name: str, compressed: bool) -> pathlib.Path:
        stamp = int(time.time() * 1000)
        ext = "gz" if compressed else "json"
        filename = f"{self.kind.file_prefix}_{_safe_name(name)}_{stamp}_{_random_suffix()}.{ext}"
        return self.storage_dir / filename

    @record_tier_op("store")
    async def store(self, data: bytes, *, name: str, compress: Optional[bool] = None,
                    metadata: Optional[Dict[str, Any]] = None) -> StoreResult:
        if compress is None:
            compress = len(data) > self.config.compression_threshold
        payload = codec.compress_bytes(data) if compress else data
        if len(payload) > self.config.max_file_size:
            raise SizeLimitExceeded(
                f"File size ({bytes_to_human(len(payload))}) exceeds maximum allowed size "
                f"({bytes_to_human(self.config.max_file_size)})"
            )
        path = self.new_path(name, compress)
        try:
            await self._run(self._write_sync, path, payload)
        except OSError as exc:
            raise StorageUnavailable(f"Failed to write {path}: {exc}", str(path)) from exc
        self.log.info("Form data stored: %s (%s, compressed: %s)", path.name, bytes_to_human(len(payload)), compress)
        locator = StoredObjectLocator(tier=self.tier, reference=str(path.resolve()), compressed=compress, size_bytes=len(data))
        return StoreResult(
            locator=locator,
            stored_bytes=len(payload),
            embedded={F_FILE_NAME: path.name, F_FILE_SIZE: len(payload)},
        )

    @record_tier_op("retrieve")
    async def retrieve(self, locator: StoredObjectLocator, record: Optional[Mapping[str, Any]] = None) -> bytes:
        if not locator.reference:
            raise NotFound("file locator has no path")
        path = pathlib.Path(locator.reference)
        try:
            raw = await self._run(self._read_sync, path)
        except FileNotFoundError as exc:
            raise NotFound(f"Form data file not found: {path}", locator.reference) from exc
        except OSError as exc:
            raise StorageUnavailable(f"Failed to read {path}: {exc}", locator.reference) from exc
        if locator.compressed or codec.is_gzipped(raw):
            return codec.decompress_bytes(raw, locator.reference)
        return raw

    async def delete(self, locator: StoredObjectLocator) -> None:
        if not locator.reference:
            return
        path = pathlib.Path(locator.reference)
        try:
            await self._run(path.unlink)
            self.log.info("Form data file deleted: %s", path)
        except FileNotFoundError:
            self.log.debug("Form data file already gone: %s", path)
        except OSError:
            self.log.warning("Failed to delete form data file %s", path, exc_info=True)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    async def file_info(self, path: Union[str, pathlib.Path]) -> Dict[str, Any]:
        try:
            st = await self._run(os.stat, str(path))
        except OSError:
            return {"exists": False, "size": 0, "created": None, "modified": None}
        return {
            "exists": True,
            "size": st.st_size,
            "created": datetime.datetime.fromtimestamp(st.st_ctime, datetime.timezone.utc),
            "modified": datetime.datetime.fromtimestamp(st.st_mtime, datetime.timezone.utc),
        }

    def _cleanup_sync(self, cutoff: float, keep: frozenset) -> int:
        if not self.storage_dir.exists():
            return 0
        deleted = 0
        for f in self.storage_dir.iterdir():
            try:
                if str(f.resolve()) in keep:
                    continue
                if f.is_file() and f.stat().st_mtime < cutoff:
                    f.unlink()
                    deleted += 1
            except FileNotFoundError:
                continue
        return deleted

    async def cleanup_old_files(self, older_than_days: int = 30, keep: Optional[Iterable[str]] = None) -> int:
        """
        Delete stored files not modified for ``older_than_days``.

        Paths in ``keep`` are never removed, whatever their age; callers pass
        every path still referenced by a record.
        """
        cutoff = time.time() - older_than_days * 86400
        kept = frozenset(str(pathlib.Path(p).resolve()) for p in (keep or ()))
        try:
            deleted = await self._run(self._cleanup_sync, cutoff, kept)
        except OSError:
            self.log.exception("Error during cleanup of %s", self.storage_dir)
            return 0
        self.log.info("Cleaned up %d old %s files", deleted, self.kind.label)
        return deleted

    def _stats_sync(self) -> Dict[str, Any]:
        if not self.storage_dir.exists():
            return {"totalFiles": 0, "totalSize": 0, "averageFileSize": 0}
        sizes = [f.stat().st_size for f in self.storage_dir.iterdir() if f.is_file()]
        total = sum(sizes)
        return {
            "totalFiles": len(sizes),
            "totalSize": total,
            "averageFileSize": (total / len(sizes)) if sizes else 0,
        }

    async def storage_stats(self) -> Dict[str, Any]:
        try:
            return await self._run(self._stats_sync)
        except OSError:
            self.log.exception("Error getting storage stats for %s", self.storage_dir)
            return {"totalFiles": 0, "totalSize": 0, "averageFileSize": 0}
