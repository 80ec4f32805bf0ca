# tierstore/backends/chunked.py
"""
Legacy chunk-collection tier (``storageMethod: chunked``).

Payload text is split into ``chunk_size_bytes`` slices stored as documents
``{formId, chunkIndex, totalChunks, data, createdAt}`` in ``formChunks``.
Reads use per-index point lookups, never a sorted range query.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, Mapping, Optional

from pymongo.errors import PyMongoError

from tierstore.backends.base import TierBackend
from tierstore.config import StorageConfig
from tierstore.direct_reader import ChunkAssembler
from tierstore.errors import MalformedObject, NotFound, StorageUnavailable
from tierstore.metrics import record_tier_op
from tierstore.models import StoredObjectLocator, StoreResult, Tier
from tierstore.utils.common import utcnow


class ChunkedCollectionBackend(TierBackend):
    tier = Tier.CHUNKED_COLLECTION

    def __init__(self, db, config: StorageConfig, collection=None):
        super().__init__()
        self.config = config
        self.collection = collection if collection is not None else db[config.legacy_chunks_collection]

    @record_tier_op("store")
    async def store(self, data: bytes, *, name: str, compress: Optional[bool] = None,
                    metadata: Optional[Dict[str, Any]] = None) -> StoreResult:
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedObject(f"payload is not valid UTF-8: {exc}") from exc
        step = self.config.chunk_size_bytes
        pieces = [text[i:i + step] for i in range(0, len(text), step)] or [""]
        chunked_id = f"{name}_{uuid.uuid4().hex}"
        now = utcnow()
        docs = [
            {"formId": chunked_id, "chunkIndex": i, "totalChunks": len(pieces), "data": piece, "createdAt": now}
            for i, piece in enumerate(pieces)
        ]
        try:
            await self.collection.insert_many(docs, ordered=True)
        except PyMongoError as exc:
            await self._delete_quietly(chunked_id)
            raise StorageUnavailable(f"Chunk insert for {chunked_id} failed: {exc}", chunked_id) from exc
        self.log.info("Form data stored in %d chunks: %s", len(pieces), chunked_id)
        locator = StoredObjectLocator(tier=self.tier, reference=chunked_id, size_bytes=len(data))
        return StoreResult(locator=locator, stored_bytes=len(data))

    @record_tier_op("retrieve")
    async def retrieve(self, locator: StoredObjectLocator, record: Optional[Mapping[str, Any]] = None) -> bytes:
        ref = locator.reference
        if not ref:
            raise NotFound("chunk locator has no id")
        try:
            first = await self.collection.find_one({"formId": ref, "chunkIndex": 0})
            if first is None:
                raise NotFound(f"No chunks found for {ref}", ref)
            total = first.get("totalChunks") or await self.collection.count_documents({"formId": ref})
            assembler = ChunkAssembler(int(total), ref)
            assembler.add(0, first["data"].encode("utf-8"))
            for idx in range(1, int(total)):
                doc = await self.collection.find_one({"formId": ref, "chunkIndex": idx})
                if doc is not None:
                    assembler.add(doc["chunkIndex"], doc["data"].encode("utf-8"))
        except PyMongoError as exc:
            raise StorageUnavailable(f"Chunk lookup for {ref} failed: {exc}", ref) from exc
        return assembler.result()

    async def _delete_quietly(self, ref: str) -> None:
        try:
            await self.collection.delete_many({"formId": ref})
        except PyMongoError:
            self.log.warning("Failed to delete chunks for %s", ref, exc_info=True)

    async def delete(self, locator: StoredObjectLocator) -> None:
        if locator.reference:
            await self._delete_quietly(locator.reference)
