# tierstore/direct_reader.py
"""
Direct reader for large GridFS objects.

The bucket's standard download path orders chunks with a sorted query whose
in-memory sort buffer is capped; objects above ``large_object_threshold`` are
reassembled here instead:

  1. point query on ``<bucket>.files`` by ``_id`` (no listing, no sort)
  2. total_chunks = ceil(length / chunkSize)
  3. chunks fetched one at a time by ``(files_id, n)`` in batches of
     ``direct_reader_batch_size``
  4. any chunk absent after its batch -> CorruptedObject (never retried)
  5. concatenate in sequence order, decode guarded JSON
"""

from __future__ import annotations

import math
import logging
import datetime
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import PyMongoError

from tierstore import codec
from tierstore.config import RecordKind, StorageConfig
from tierstore.errors import CorruptedObject, NotFound, StorageUnavailable
from tierstore.metrics import DIRECT_READER_CHUNKS

LOG = logging.getLogger("tierstore.direct_reader")

_FILES_PROJECTION = {"filename": 1, "length": 1, "chunkSize": 1, "uploadDate": 1, "metadata": 1}


def to_object_id(reference: Union[str, ObjectId]) -> ObjectId:
    if isinstance(reference, ObjectId):
        return reference
    try:
        return ObjectId(reference)
    except (InvalidId, TypeError) as exc:
        raise NotFound(f"Invalid bucket object id: {reference!r}", reference) from exc


class BucketObjectInfo:
    """Metadata of one bucket object as stored in ``<bucket>.files``."""

    __slots__ = ("file_id", "filename", "length", "chunk_size", "upload_date", "metadata")

    def __init__(self, file_id: ObjectId, filename: Optional[str], length: int, chunk_size: int,
                 upload_date: Optional[datetime.datetime] = None, metadata: Optional[Dict[str, Any]] = None):
        self.file_id = file_id
        self.filename = filename
        self.length = int(length)
        self.chunk_size = int(chunk_size)
        self.upload_date = upload_date
        self.metadata = metadata or {}

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "BucketObjectInfo":
        return cls(
            file_id=doc["_id"],
            filename=doc.get("filename"),
            length=doc.get("length", 0),
            chunk_size=doc.get("chunkSize", 0),
            upload_date=doc.get("uploadDate"),
            metadata=doc.get("metadata"),
        )

    @property
    def total_chunks(self) -> int:
        if self.length <= 0:
            return 0
        if self.chunk_size <= 0:
            raise CorruptedObject(f"bucket object {self.file_id} declares chunkSize={self.chunk_size}", str(self.file_id))
        return math.ceil(self.length / self.chunk_size)


class ChunkAssembler:
    """
    Ordered buffer slots indexed by sequence number. Chunks may be added in any
    order; ``result()`` always concatenates 0..total-1.
    """

    def __init__(self, total_chunks: int, reference: Any = None):
        self.total = total_chunks
        self.reference = reference
        self._slots: List[Optional[bytes]] = [None] * total_chunks

    def add(self, n: int, data: bytes) -> None:
        if n < 0 or n >= self.total:
            raise CorruptedObject(f"chunk n={n} outside 0..{self.total - 1}", self.reference)
        self._slots[n] = bytes(data)

    def missing(self, start: int = 0, stop: Optional[int] = None) -> List[int]:
        stop = self.total if stop is None else stop
        return [n for n in range(start, stop) if self._slots[n] is None]

    def check_range(self, start: int, stop: int) -> None:
        gaps = self.missing(start, stop)
        if gaps:
            raise CorruptedObject(
                f"Missing chunk(s) {gaps[:10]} for {self.reference} ({len(gaps)} missing of {self.total})",
                self.reference,
            )

    def result(self) -> bytes:
        self.check_range(0, self.total)
        return b"".join(self._slots)  # type: ignore[arg-type]


class DirectReader:
    def __init__(self, db, config: StorageConfig, kind: Optional[RecordKind] = None, bucket_name: Optional[str] = None):
        name = bucket_name or (kind.bucket_name if kind else None)
        if not name:
            raise ValueError("DirectReader needs a bucket name or record kind")
        self.config = config
        self.bucket_name = name
        self.files = db[f"{name}.files"]
        self.chunks = db[f"{name}.chunks"]

    async def lookup(self, reference: Union[str, ObjectId]) -> Optional[BucketObjectInfo]:
        """Metadata-only existence check. Returns None when the object is gone."""
        oid = to_object_id(reference)
        try:
            doc = await self.files.find_one({"_id": oid}, _FILES_PROJECTION)
        except PyMongoError as exc:
            raise StorageUnavailable(f"Bucket metadata lookup failed for {oid}: {exc}", str(oid)) from exc
        return BucketObjectInfo.from_doc(doc) if doc else None

    async def _fetch_chunk(self, oid: ObjectId, n: int) -> Optional[Dict[str, Any]]:
        try:
            return await self.chunks.find_one({"files_id": oid, "n": n}, {"n": 1, "data": 1})
        except PyMongoError as exc:
            raise StorageUnavailable(f"Chunk lookup failed for {oid} n={n}: {exc}", str(oid)) from exc

    async def read_bytes(self, reference: Union[str, ObjectId], info: Optional[BucketObjectInfo] = None) -> bytes:
        oid = to_object_id(reference)
        if info is None:
            info = await self.lookup(oid)
        if info is None:
            raise NotFound(f"Bucket object {oid} not found", str(oid))

        total = info.total_chunks
        batch_size = self.config.direct_reader_batch_size
        assembler = ChunkAssembler(total, str(oid))
        LOG.info("Direct read of %s: %d bytes in %d chunks (batch=%d)", oid, info.length, total, batch_size)

        for batch_no, start in enumerate(range(0, total, batch_size), start=1):
            stop = min(start + batch_size, total)
            for n in range(start, stop):
                doc = await self._fetch_chunk(oid, n)
                if doc is not None:
                    assembler.add(doc.get("n", n), doc["data"])
                    DIRECT_READER_CHUNKS.inc()
            assembler.check_range(start, stop)
            if batch_no % 10 == 0:
                LOG.info("Direct read of %s: %d/%d chunks", oid, stop, total)
            else:
                LOG.debug("Direct read of %s: batch %d done (%d/%d)", oid, batch_no, stop, total)

        data = assembler.result()
        if len(data) != info.length:
            raise CorruptedObject(f"Reassembled {len(data)} bytes for {oid}, expected {info.length}", str(oid))
        return data

    async def read(self, reference: Union[str, ObjectId]) -> Any:
        data = await self.read_bytes(reference)
        return codec.decode_json(data, str(reference))
