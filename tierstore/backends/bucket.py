# tierstore/backends/bucket.py
"""
GridFS bucket tier.

Writes stream the payload through an upload stream in ``chunk_size_bytes``
slices and only return once close() has been acknowledged. Reads always start
with a metadata-only point lookup so a missing object surfaces as NotFound;
objects larger than ``large_object_threshold`` are then reassembled by the
DirectReader instead of the bucket's sorted download stream.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from gridfs.errors import CorruptGridFile, NoFile
from motor.motor_asyncio import AsyncIOMotorGridFSBucket
from pymongo.errors import PyMongoError

from tierstore.backends.base import TierBackend
from tierstore.config import RecordKind, StorageConfig
from tierstore.direct_reader import DirectReader, to_object_id
from tierstore.errors import CorruptedObject, NotFound, StorageError, StorageUnavailable
from tierstore.metrics import record_tier_op
from tierstore.models import StoredObjectLocator, StoreResult, Tier
from tierstore.utils.common import bytes_to_human, utcnow

CONTENT_TYPE = "application/json"


class BucketBackend(TierBackend):
    tier = Tier.CHUNKED_BUCKET

    def __init__(self, db, config: StorageConfig, kind: RecordKind, bucket=None, reader: Optional[DirectReader] = None):
        super().__init__()
        self.config = config
        self.kind = kind
        self.bucket = bucket if bucket is not None else AsyncIOMotorGridFSBucket(
            db, bucket_name=kind.bucket_name, chunk_size_bytes=config.chunk_size_bytes
        )
        self.reader = reader or DirectReader(db, config, kind=kind)

    @record_tier_op("store")
    async def store(self, data: bytes, *, name: str, compress: Optional[bool] = None,
                    metadata: Optional[Dict[str, Any]] = None) -> StoreResult:
        meta = dict(metadata or {})
        meta.setdefault("contentType", CONTENT_TYPE)
        meta.setdefault("createdAt", utcnow())
        meta.setdefault("originalSize", len(data))
        filename = f"{self.kind.file_prefix}_{name}.json"
        chunk = self.config.chunk_size_bytes
        grid_in = self.bucket.open_upload_stream(filename, chunk_size_bytes=chunk, metadata=meta)
        try:
            for offset in range(0, len(data), chunk):
                await grid_in.write(data[offset:offset + chunk])
            await grid_in.close()
        except PyMongoError as exc:
            try:
                await grid_in.abort()
            except PyMongoError:
                self.log.warning("Abort of partial upload %s failed", filename, exc_info=True)
            raise StorageUnavailable(f"GridFS upload of {filename} failed: {exc}") from exc
        file_id = str(grid_in._id)
        self.log.info("Form data stored in GridFS: %s id=%s (%s)", filename, file_id, bytes_to_human(len(data)))
        locator = StoredObjectLocator(tier=self.tier, reference=file_id, compressed=False, size_bytes=len(data))
        return StoreResult(locator=locator, stored_bytes=len(data))

    async def _stream_read(self, reference: str) -> bytes:
        oid = to_object_id(reference)
        try:
            grid_out = await self.bucket.open_download_stream(oid)
            parts = []
            while True:
                piece = await grid_out.readchunk()
                if not piece:
                    break
                parts.append(piece)
        except NoFile as exc:
            raise NotFound(f"Bucket object {reference} not found", reference) from exc
        except CorruptGridFile as exc:
            raise CorruptedObject(f"Bucket object {reference} is corrupted: {exc}", reference) from exc
        except PyMongoError as exc:
            raise StorageUnavailable(f"GridFS download of {reference} failed: {exc}", reference) from exc
        return b"".join(parts)

    @record_tier_op("retrieve")
    async def retrieve(self, locator: StoredObjectLocator, record: Optional[Mapping[str, Any]] = None) -> bytes:
        reference = locator.reference
        if not reference:
            raise NotFound("bucket locator has no object id")
        info = await self.reader.lookup(reference)
        if info is None:
            raise NotFound(f"Bucket object {reference} not found", reference)
        if info.length > self.config.large_object_threshold:
            self.log.info("Object %s is %s; using direct reader", reference, bytes_to_human(info.length))
            return await self.reader.read_bytes(reference, info)
        return await self._stream_read(reference)

    async def delete(self, locator: StoredObjectLocator) -> None:
        if not locator.reference:
            return
        try:
            await self.bucket.delete(to_object_id(locator.reference))
            self.log.info("GridFS object deleted: %s", locator.reference)
        except (NoFile, NotFound):
            self.log.debug("GridFS object already gone: %s", locator.reference)
        except (PyMongoError, StorageError):
            self.log.warning("Failed to delete GridFS object %s", locator.reference, exc_info=True)
