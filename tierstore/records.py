# tierstore/records.py
"""
Owning-record service for form and second-form documents.

Payload bytes are written through the router before the record is touched, so a
failed store never leaves a partial locator behind. Replacing a payload writes
the new blob under a fresh name, repoints the record, and only then removes the
old blob. Deleting a record removes the record first and its blobs afterwards,
so a failed delete leaves the record readable.
"""

from __future__ import annotations

import math
import logging
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import PyMongoError

from tierstore.config import RecordKind
from tierstore.errors import RecordNotFound, StorageError, StorageUnavailable
from tierstore.models import F_FORM_DATA, StoreResult
from tierstore.router import LargeObjectRouter
from tierstore.utils.common import bounded_gather, bytes_to_human, utcnow

LOG = logging.getLogger("tierstore.records")

SORT_ORDERS = {"asc": 1, "desc": -1}
MAX_PAGE_SIZE = 100


def parse_record_id(record_id: Any) -> ObjectId:
    if isinstance(record_id, ObjectId):
        return record_id
    try:
        return ObjectId(record_id)
    except (InvalidId, TypeError):
        raise RecordNotFound(f"Invalid record id: {record_id!r}", record_id) from None


class RecordService:
    def __init__(self, collection, router: LargeObjectRouter, kind: Optional[RecordKind] = None,
                 concurrency: Optional[int] = None):
        self.collection = collection
        self.router = router
        self.kind = kind or router.kind
        self.concurrency = concurrency or router.config.migration_concurrency

    async def _find(self, oid: ObjectId) -> Dict[str, Any]:
        try:
            record = await self.collection.find_one({"_id": oid})
        except PyMongoError as exc:
            raise StorageUnavailable(f"Lookup of {self.kind.label} {oid} failed: {exc}", str(oid)) from exc
        if record is None:
            raise RecordNotFound(f"{self.kind.label.capitalize()} {oid} not found", str(oid))
        return record

    async def create(self, user_id: Any, form_data: Any, status: str = "pending",
                     extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        oid = ObjectId()
        result = await self.router.store(form_data, name=str(oid), tags={"recordId": str(oid), "userId": str(user_id)})
        to_set, _ = self.router.record_update(result)
        now = utcnow()
        doc: Dict[str, Any] = {"_id": oid, "userId": user_id, "status": status}
        doc.update(extra or {})
        doc.update(to_set)
        doc["createdAt"] = now
        doc["updatedAt"] = now
        try:
            await self.collection.insert_one(doc)
        except PyMongoError as exc:
            await self.router.delete_locator(result.locator)
            raise StorageUnavailable(f"Insert of {self.kind.label} {oid} failed: {exc}", str(oid)) from exc
        LOG.info("Created %s %s (%s via %s)", self.kind.label, oid,
                 bytes_to_human(result.locator.size_bytes), result.locator.tier.value)
        return doc

    async def get(self, record_id: Any, include_data: bool = True) -> Dict[str, Any]:
        record = await self._find(parse_record_id(record_id))
        if include_data:
            record[F_FORM_DATA] = await self.router.retrieve(record)
        return record

    async def _hydrate(self, record: Dict[str, Any]) -> Dict[str, Any]:
        try:
            record[F_FORM_DATA] = await self.router.retrieve(record)
        except StorageError as exc:
            LOG.error("Failed to retrieve data for %s %s: %s", self.kind.label, record.get("_id"), exc)
            record[F_FORM_DATA] = None
            record["_error"] = f"Failed to retrieve {self.kind.label} data from storage"
        return record

    async def list_page(self, page: int = 1, limit: int = 10, sort_by: str = "createdAt", sort_order: str = "desc",
                        status: Optional[str] = None, user_id: Any = None, include_data: bool = True) -> Dict[str, Any]:
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be positive")
        if sort_order not in SORT_ORDERS:
            raise ValueError(f"sort_order must be one of {sorted(SORT_ORDERS)}")
        limit = min(limit, MAX_PAGE_SIZE)
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if user_id is not None:
            query["userId"] = user_id

        skip = (page - 1) * limit
        try:
            total = await self.collection.count_documents(query)
            cursor = self.collection.find(query).sort(sort_by, SORT_ORDERS[sort_order]).skip(skip).limit(limit)
            records = await cursor.to_list(length=limit)
        except PyMongoError as exc:
            raise StorageUnavailable(f"Listing {self.kind.label} records failed: {exc}") from exc
        if include_data:
            records = await bounded_gather((self._hydrate(r) for r in records), concurrency=self.concurrency)

        total_pages = math.ceil(total / limit) if total else 0
        return {
            "data": records,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": total_pages,
                "hasNext": page < total_pages,
                "hasPrev": page > 1,
            },
            "filters": {"status": status, "sortBy": sort_by, "sortOrder": sort_order},
        }

    async def update(self, record_id: Any, form_data: Any = None, status: Optional[str] = None) -> Dict[str, Any]:
        oid = parse_record_id(record_id)
        existing = await self._find(oid)
        to_set: Dict[str, Any] = {"updatedAt": utcnow()}
        to_unset: Dict[str, Any] = {}
        if status is not None:
            to_set["status"] = status

        result: Optional[StoreResult] = None
        if form_data is not None:
            result = await self.router.store(form_data, name=str(oid), tags={"recordId": str(oid)})
            new_set, to_unset = self.router.record_update(result)
            to_set.update(new_set)

        update: Dict[str, Any] = {"$set": to_set}
        if to_unset:
            update["$unset"] = to_unset
        try:
            await self.collection.update_one({"_id": oid}, update)
        except PyMongoError as exc:
            if result is not None:
                await self.router.delete_locator(result.locator)
            raise StorageUnavailable(f"Update of {self.kind.label} {oid} failed: {exc}", str(oid)) from exc

        if result is not None:
            for old in self.router.referenced_locators(existing):
                if old.reference != result.locator.reference:
                    await self.router.delete_locator(old)
            LOG.info("Replaced %s %s payload (%s via %s)", self.kind.label, oid,
                     bytes_to_human(result.locator.size_bytes), result.locator.tier.value)
        return await self._find(oid)

    async def delete(self, record_id: Any) -> Dict[str, Any]:
        oid = parse_record_id(record_id)
        record = await self._find(oid)
        try:
            await self.collection.delete_one({"_id": oid})
        except PyMongoError as exc:
            raise StorageUnavailable(f"Delete of {self.kind.label} {oid} failed: {exc}", str(oid)) from exc
        for locator in self.router.referenced_locators(record):
            await self.router.delete_locator(locator)
        LOG.info("Deleted %s %s", self.kind.label, oid)
        return {"success": True, "deletedCount": 1}

    async def bulk_delete(self, record_ids: Iterable[Any]) -> Dict[str, Any]:
        oids: List[ObjectId] = []
        for rid in record_ids:
            try:
                oids.append(parse_record_id(rid))
            except RecordNotFound:
                LOG.warning("Skipping invalid %s id %r in bulk delete", self.kind.label, rid)
        if not oids:
            return {"success": True, "deletedCount": 0}
        try:
            records = await self.collection.find({"_id": {"$in": oids}}).to_list(length=None)
            result = await self.collection.delete_many({"_id": {"$in": oids}})
        except PyMongoError as exc:
            raise StorageUnavailable(f"Bulk delete of {self.kind.label} records failed: {exc}") from exc
        for record in records:
            for locator in self.router.referenced_locators(record):
                await self.router.delete_locator(locator)
        LOG.info("Bulk deleted %d %s record(s)", result.deleted_count, self.kind.label)
        return {"success": True, "deletedCount": result.deleted_count}
