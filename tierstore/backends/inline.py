# tierstore/backends/inline.py
"""
Inline tiers: the payload lives on the owning record itself.

``direct`` keeps the JSON document in ``formData``; ``compressed`` keeps a gzip
blob in ``compressedData``. Neither has an external reference, so delete is a
no-op: clearing the record fields is the record service's job.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from tierstore import codec
from tierstore.backends.base import TierBackend
from tierstore.errors import NotFound
from tierstore.metrics import record_tier_op
from tierstore.models import F_COMPRESSED_DATA, F_FORM_DATA, StoredObjectLocator, StoreResult, Tier


class InlineBackend(TierBackend):
    tier = Tier.INLINE

    @record_tier_op("store")
    async def store(self, data: bytes, *, name: str, compress: Optional[bool] = None,
                    metadata: Optional[Dict[str, Any]] = None) -> StoreResult:
        document = codec.decode_json(data)
        locator = StoredObjectLocator(tier=self.tier, size_bytes=len(data))
        return StoreResult(locator=locator, stored_bytes=len(data), embedded={F_FORM_DATA: document})

    @record_tier_op("retrieve")
    async def retrieve(self, locator: StoredObjectLocator, record: Optional[Mapping[str, Any]] = None) -> bytes:
        if record is None or record.get(F_FORM_DATA) is None:
            raise NotFound("record holds no inline form data")
        return codec.encode_json(record[F_FORM_DATA])

    async def delete(self, locator: StoredObjectLocator) -> None:
        return None


class CompressedInlineBackend(TierBackend):
    tier = Tier.COMPRESSED_INLINE

    @record_tier_op("store")
    async def store(self, data: bytes, *, name: str, compress: Optional[bool] = None,
                    metadata: Optional[Dict[str, Any]] = None) -> StoreResult:
        blob = codec.compress_bytes(data)
        locator = StoredObjectLocator(tier=self.tier, compressed=True, size_bytes=len(data))
        self.log.debug("Compressed inline payload %d -> %d bytes", len(data), len(blob))
        return StoreResult(locator=locator, stored_bytes=len(blob), embedded={F_COMPRESSED_DATA: blob})

    @record_tier_op("retrieve")
    async def retrieve(self, locator: StoredObjectLocator, record: Optional[Mapping[str, Any]] = None) -> bytes:
        blob = record.get(F_COMPRESSED_DATA) if record is not None else None
        if not blob:
            raise NotFound("record holds no compressed form data")
        return codec.decompress_bytes(bytes(blob))

    async def delete(self, locator: StoredObjectLocator) -> None:
        return None
