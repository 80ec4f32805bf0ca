# tierstore/router.py
"""
Large-object storage router.

Composes the size classifier with one backend per tier. A store serializes the
payload once, asks the classifier for a tier and writes through exactly that
backend: there is no fallback to another tier within one call. Reads dispatch
on the tier tag persisted on the owning record.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from tierstore import codec
from tierstore.backends import (
    BucketBackend,
    ChunkedCollectionBackend,
    CompressedInlineBackend,
    FilesystemBackend,
    InlineBackend,
    TierBackend,
)
from tierstore.classifier import Placement, plan, should_compress
from tierstore.config import RecordKind, StorageConfig
from tierstore.errors import StorageError, UnsupportedTier
from tierstore.models import (
    F_COMPRESSED_DATA,
    F_DATA_SIZE,
    F_FILE_PATH,
    F_GRIDFS_ID,
    F_CHUNKED_ID,
    F_IS_COMPRESSED,
    F_IS_LARGE,
    F_STORAGE_METHOD,
    F_STORAGE_STATUS,
    LOCATOR_FIELDS,
    StorageStatus,
    StoredObjectLocator,
    StoreResult,
    Tier,
)

LOG = logging.getLogger("tierstore.router")

# Order used to infer a tier for records written before storageMethod existed.
_INFERENCE_ORDER = (
    (F_FILE_PATH, Tier.FILESYSTEM_FILE),
    (F_GRIDFS_ID, Tier.CHUNKED_BUCKET),
    (F_CHUNKED_ID, Tier.CHUNKED_COLLECTION),
    (F_COMPRESSED_DATA, Tier.COMPRESSED_INLINE),
)


class LargeObjectRouter:
    def __init__(self, config: StorageConfig, kind: RecordKind, backends: Dict[Tier, TierBackend]):
        self.config = config
        self.kind = kind
        self.backends = dict(backends)

    @classmethod
    def build(cls, db, config: StorageConfig, kind: RecordKind, bucket=None) -> "LargeObjectRouter":
        """Wire every tier backend against one database handle."""
        backends: Dict[Tier, TierBackend] = {
            Tier.INLINE: InlineBackend(),
            Tier.COMPRESSED_INLINE: CompressedInlineBackend(),
            Tier.FILESYSTEM_FILE: FilesystemBackend(config, kind),
            Tier.CHUNKED_BUCKET: BucketBackend(db, config, kind, bucket=bucket),
            Tier.CHUNKED_COLLECTION: ChunkedCollectionBackend(db, config),
        }
        return cls(config, kind, backends)

    def backend(self, tier: Tier) -> TierBackend:
        try:
            return self.backends[tier]
        except KeyError:
            raise UnsupportedTier(f"No backend configured for tier {tier.value!r}") from None

    def plan(self, size_bytes: int) -> Placement:
        return plan(size_bytes, self.config)

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------
    @staticmethod
    def _encode(payload: Any) -> bytes:
        # null inline data is indistinguishable from "no formData"
        if payload is None:
            raise ValueError("form data must not be null")
        return codec.encode_json(payload)

    async def store(self, payload: Any, *, name: str, tags: Optional[Dict[str, Any]] = None) -> StoreResult:
        data = self._encode(payload)
        tier, compress = self.plan(len(data))
        return await self._store_bytes(tier, data, name=name, compress=compress, tags=tags)

    async def store_as(self, tier: Tier, payload: Any, *, name: str, tags: Optional[Dict[str, Any]] = None) -> StoreResult:
        """Store through a fixed tier regardless of size (migration target)."""
        data = self._encode(payload)
        compress = should_compress(tier, len(data), self.config)
        return await self._store_bytes(tier, data, name=name, compress=compress, tags=tags)

    async def _store_bytes(self, tier: Tier, data: bytes, *, name: str, compress: bool,
                           tags: Optional[Dict[str, Any]]) -> StoreResult:
        backend = self.backend(tier)
        metadata = {"kind": self.kind.name, **(tags or {})}
        result = await backend.store(data, name=name, compress=compress, metadata=metadata)
        LOG.info("Stored %s payload %s: tier=%s size=%d ref=%s",
                 self.kind.label, name, tier.value, len(data), result.locator.reference)
        return result

    # ------------------------------------------------------------------
    # Locators on records
    # ------------------------------------------------------------------
    @staticmethod
    def locator_for(record: Mapping[str, Any]) -> StoredObjectLocator:
        tag = record.get(F_STORAGE_METHOD)
        tier: Optional[Tier] = None
        if tag:
            try:
                tier = Tier(tag)
            except ValueError:
                raise UnsupportedTier(f"Unknown storageMethod {tag!r}") from None
        if tier is None:
            tier = next((t for field, t in _INFERENCE_ORDER if record.get(field)), Tier.INLINE)

        ref_field = tier.reference_field
        ref = record.get(ref_field) if ref_field else None
        if tier == Tier.COMPRESSED_INLINE:
            compressed = True
        elif tier == Tier.FILESYSTEM_FILE:
            compressed = bool(record.get(F_IS_COMPRESSED))
        else:
            compressed = False
        return StoredObjectLocator(
            tier=tier,
            reference=str(ref) if ref else None,
            compressed=compressed,
            size_bytes=int(record.get(F_DATA_SIZE) or 0),
        )

    @staticmethod
    def record_update(result: StoreResult) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """
        ``($set, $unset)`` documents that persist a locator on its record and
        drop every field that belongs to another tier.
        """
        loc = result.locator
        to_set: Dict[str, Any] = {
            F_STORAGE_METHOD: loc.tier.value,
            F_DATA_SIZE: loc.size_bytes,
            F_IS_LARGE: loc.tier.is_large,
            F_IS_COMPRESSED: loc.compressed,
            F_STORAGE_STATUS: StorageStatus.HEALTHY.value,
        }
        ref_field = loc.tier.reference_field
        if ref_field:
            to_set[ref_field] = loc.reference
        to_set.update(result.embedded)
        to_unset = {f: "" for f in LOCATOR_FIELDS if f not in to_set}
        return to_set, to_unset

    # ------------------------------------------------------------------
    # Retrieve / delete
    # ------------------------------------------------------------------
    async def retrieve(self, record: Mapping[str, Any]) -> Any:
        locator = self.locator_for(record)
        data = await self.backend(locator.tier).retrieve(locator, record)
        return codec.decode_json(data, locator.reference)

    async def delete_locator(self, locator: StoredObjectLocator) -> None:
        """Best-effort; failures are logged, never raised."""
        try:
            await self.backend(locator.tier).delete(locator)
        except StorageError:
            LOG.warning("Could not delete %s payload ref=%s", locator.tier.value, locator.reference, exc_info=True)

    async def delete(self, record: Union[Mapping[str, Any], StoredObjectLocator]) -> None:
        if isinstance(record, StoredObjectLocator):
            locator = record
        else:
            try:
                locator = self.locator_for(record)
            except StorageError:
                LOG.warning("Record %s has no usable locator; nothing to delete", record.get("_id"))
                return
        await self.delete_locator(locator)

    @staticmethod
    def legacy_locators(record: Mapping[str, Any], keep: Tier) -> list:
        """Locators for legacy blobs a record still references besides its ``keep`` tier."""
        out = []
        for field, tier in ((F_FILE_PATH, Tier.FILESYSTEM_FILE), (F_GRIDFS_ID, Tier.CHUNKED_BUCKET),
                            (F_CHUNKED_ID, Tier.CHUNKED_COLLECTION)):
            if tier != keep and record.get(field):
                compressed = bool(record.get(F_IS_COMPRESSED)) if tier == Tier.FILESYSTEM_FILE else False
                out.append(StoredObjectLocator(tier=tier, reference=str(record[field]), compressed=compressed))
        return out

    @classmethod
    def referenced_locators(cls, record: Mapping[str, Any]) -> list:
        """Every out-of-record blob the record points at, current tier first, without duplicates."""
        out = []
        try:
            current = cls.locator_for(record)
        except UnsupportedTier:
            current = None
        if current is not None and current.reference:
            out.append(current)
        seen = {(loc.tier, loc.reference) for loc in out}
        for loc in cls.legacy_locators(record, keep=Tier.EXTERNAL):
            if (loc.tier, loc.reference) not in seen:
                seen.add((loc.tier, loc.reference))
                out.append(loc)
        return out


__all__ = ["LargeObjectRouter"]
