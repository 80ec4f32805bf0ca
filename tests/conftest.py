"""
Tierstore Pytest Configuration
------------------------------

Centralized fixtures and in-memory collaborators for all tests.

Features:
 - Async in-memory stand-ins for a motor collection, database and GridFS bucket
   (injected through constructors, no running MongoDB needed)
 - Small thresholds so every tier boundary is reachable with tiny payloads
 - tmp_path-based storage roots
 - Auto-clean TIERSTORE_* environment variables
"""

import os
import copy
import logging
import datetime
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from bson import ObjectId
from gridfs.errors import NoFile
from pymongo.errors import OperationFailure

from tierstore.config import FORMS, StorageConfig
from tierstore.direct_reader import DirectReader
from tierstore.maintenance import MaintenanceService
from tierstore.records import RecordService
from tierstore.router import LargeObjectRouter

# -----------------------------------------------------------------------------
# Logging setup for tests
# -----------------------------------------------------------------------------
LOG = logging.getLogger("tierstore.tests")
LOG.setLevel(logging.WARNING)

_MISSING = object()


# -----------------------------------------------------------------------------
# Query matching (the subset of MongoDB operators the storage layer uses)
# -----------------------------------------------------------------------------
def _match_cond(doc: Dict[str, Any], key: str, cond: Any) -> bool:
    value = doc.get(key, _MISSING)
    if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
        for op, arg in cond.items():
            present = value is not _MISSING
            v = value if present else None
            if op == "$ne":
                if v == arg:
                    return False
            elif op == "$exists":
                if present != bool(arg):
                    return False
            elif op == "$in":
                if v not in arg:
                    return False
            elif op == "$nin":
                if v in arg:
                    return False
            else:
                raise NotImplementedError(op)
        return True
    if cond is None:
        return value is _MISSING or value is None
    return value is not _MISSING and value == cond


def matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    for key, cond in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, q) for q in cond):
                return False
        elif key == "$and":
            if not all(matches(doc, q) for q in cond):
                return False
        elif not _match_cond(doc, key, cond):
            return False
    return True


def _project(doc: Dict[str, Any], projection: Optional[Dict[str, int]]) -> Dict[str, Any]:
    if not projection:
        return copy.deepcopy(doc)
    out = {k: copy.deepcopy(v) for k, v in doc.items() if projection.get(k)}
    out["_id"] = doc["_id"]
    return out


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs

    def sort(self, key: str, direction: int = 1):
        self._docs.sort(key=lambda d: (d.get(key) is None, d.get(key)), reverse=direction < 0)
        return self

    def skip(self, n: int):
        self._docs = self._docs[n:]
        return self

    def limit(self, n: int):
        if n:
            self._docs = self._docs[:n]
        return self

    async def to_list(self, length: Optional[int] = None):
        return list(self._docs if length is None else self._docs[:length])

    def __aiter__(self):
        self._it = iter(self._docs)
        return self

    async def __anext__(self):
        try:
            return next(self._it)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    """Async, in-memory subset of AsyncIOMotorCollection."""

    def __init__(self, name: str):
        self.name = name
        self.docs: List[Dict[str, Any]] = []
        self.fail_ops: set = set()
        self.calls: Dict[str, int] = {}

    def _enter(self, op: str) -> None:
        self.calls[op] = self.calls.get(op, 0) + 1
        if op in self.fail_ops:
            raise OperationFailure(f"injected failure in {self.name}.{op}")

    async def find_one(self, query=None, projection=None):
        self._enter("find_one")
        for doc in self.docs:
            if matches(doc, query):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None):
        self._enter("find")
        return FakeCursor([_project(d, projection) for d in self.docs if matches(d, query)])

    async def insert_one(self, doc):
        self._enter("insert_one")
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", ObjectId())
        self.docs.append(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    async def insert_many(self, docs, ordered: bool = True):
        self._enter("insert_many")
        ids = []
        for doc in docs:
            doc = copy.deepcopy(doc)
            doc.setdefault("_id", ObjectId())
            self.docs.append(doc)
            ids.append(doc["_id"])
        return SimpleNamespace(inserted_ids=ids)

    @staticmethod
    def _apply(doc, update):
        for k, v in update.get("$set", {}).items():
            doc[k] = copy.deepcopy(v)
        for k in update.get("$unset", {}):
            doc.pop(k, None)

    async def update_one(self, query, update):
        self._enter("update_one")
        for doc in self.docs:
            if matches(doc, query):
                self._apply(doc, update)
                return SimpleNamespace(matched_count=1, modified_count=1)
        return SimpleNamespace(matched_count=0, modified_count=0)

    async def update_many(self, query, update):
        self._enter("update_many")
        hits = [d for d in self.docs if matches(d, query)]
        for doc in hits:
            self._apply(doc, update)
        return SimpleNamespace(matched_count=len(hits), modified_count=len(hits))

    async def delete_one(self, query):
        self._enter("delete_one")
        for i, doc in enumerate(self.docs):
            if matches(doc, query):
                del self.docs[i]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def delete_many(self, query):
        self._enter("delete_many")
        keep = [d for d in self.docs if not matches(d, query)]
        deleted = len(self.docs) - len(keep)
        self.docs = keep
        return SimpleNamespace(deleted_count=deleted)

    async def count_documents(self, query):
        self._enter("count_documents")
        return sum(1 for d in self.docs if matches(d, query))

    async def create_index(self, keys, **options):
        return "_".join(f"{k}_{d}" for k, d in keys)


class FakeDatabase:
    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]

    async def command(self, name: str):
        return {"ok": 1.0}


# -----------------------------------------------------------------------------
# GridFS bucket stand-in writing real ``<bucket>.files`` / ``.chunks`` docs
# -----------------------------------------------------------------------------
class FakeGridIn:
    def __init__(self, bucket: "FakeGridFSBucket", filename: str, chunk_size: int, metadata: Dict[str, Any]):
        self._bucket = bucket
        self._id = ObjectId()
        self.filename = filename
        self.chunk_size = chunk_size
        self.metadata = metadata
        self._buf = bytearray()
        self.aborted = False

    async def write(self, data: bytes):
        if "write" in self._bucket.fail_ops:
            raise OperationFailure("injected upload failure")
        self._buf.extend(data)

    async def close(self):
        data = bytes(self._buf)
        for n, off in enumerate(range(0, len(data), self.chunk_size)):
            await self._bucket.chunks.insert_one(
                {"files_id": self._id, "n": n, "data": data[off:off + self.chunk_size]}
            )
        await self._bucket.files.insert_one({
            "_id": self._id,
            "filename": self.filename,
            "length": len(data),
            "chunkSize": self.chunk_size,
            "uploadDate": datetime.datetime.now(datetime.timezone.utc),
            "metadata": self.metadata,
        })

    async def abort(self):
        self.aborted = True
        await self._bucket.chunks.delete_many({"files_id": self._id})


class FakeGridOut:
    def __init__(self, chunks: List[bytes]):
        self._chunks = list(chunks)

    async def readchunk(self) -> bytes:
        return self._chunks.pop(0) if self._chunks else b""


class FakeGridFSBucket:
    def __init__(self, db: FakeDatabase, bucket_name: str = "fs", chunk_size_bytes: int = 255 * 1024):
        self.files = db[f"{bucket_name}.files"]
        self.chunks = db[f"{bucket_name}.chunks"]
        self.chunk_size_bytes = chunk_size_bytes
        self.fail_ops: set = set()
        self.uploads: List[FakeGridIn] = []
        self.downloads = 0

    def open_upload_stream(self, filename, chunk_size_bytes=None, metadata=None):
        grid_in = FakeGridIn(self, filename, chunk_size_bytes or self.chunk_size_bytes, metadata or {})
        self.uploads.append(grid_in)
        return grid_in

    async def open_download_stream(self, file_id):
        self.downloads += 1
        doc = await self.files.find_one({"_id": file_id})
        if doc is None:
            raise NoFile(f"no file in gridfs with _id {file_id!r}")
        chunks = sorted((c for c in self.chunks.docs if c["files_id"] == file_id), key=lambda c: c["n"])
        return FakeGridOut([c["data"] for c in chunks])

    async def delete(self, file_id):
        res = await self.files.delete_one({"_id": file_id})
        await self.chunks.delete_many({"files_id": file_id})
        if not res.deleted_count:
            raise NoFile(f"no file could be deleted because none matched {file_id!r}")


# -----------------------------------------------------------------------------
# Global environment sanitization
# -----------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep TIERSTORE_* variables from the host out of config tests."""
    for var in list(os.environ):
        if var.startswith("TIERSTORE_"):
            monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("TZ", "UTC")
    yield


# -----------------------------------------------------------------------------
# Config / collaborators
# -----------------------------------------------------------------------------
@pytest.fixture
def small_config(tmp_path):
    """
    direct 4KB, compress above 512B, direct-reader above 2KB, 256B chunks,
    batches of 3 chunks, 64KB file cap.
    """
    return StorageConfig(
        direct_threshold=4096,
        compression_threshold=512,
        large_object_threshold=2048,
        chunk_size_bytes=256,
        direct_reader_batch_size=3,
        max_file_size=64 * 1024,
        storage_root=tmp_path / "storage",
        migration_concurrency=4,
    )


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def fake_bucket(fake_db, small_config):
    return FakeGridFSBucket(fake_db, FORMS.bucket_name, small_config.chunk_size_bytes)


@pytest.fixture
def reader(fake_db, small_config):
    return DirectReader(fake_db, small_config, kind=FORMS)


@pytest.fixture
def router(fake_db, small_config, fake_bucket):
    return LargeObjectRouter.build(fake_db, small_config, FORMS, bucket=fake_bucket)


@pytest.fixture
def records(fake_db, router):
    return RecordService(fake_db[FORMS.collection], router)


@pytest.fixture
def maintenance(fake_db, router, reader):
    return MaintenanceService(fake_db[FORMS.collection], router, reader)


def payload_of(size: int) -> Dict[str, Any]:
    """A JSON object whose compact encoding is exactly ``size`` bytes (size >= 11)."""
    return {"blob": "x" * (size - len('{"blob":""}'))}


@pytest.fixture
def make_payload():
    return payload_of
