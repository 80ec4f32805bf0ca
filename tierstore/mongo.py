# tierstore/mongo.py
"""
Async MongoDB connection wrapper.

Holds one motor client per process and knows the indexes the record
collections and the legacy chunk collection rely on.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import ConnectionFailure, PyMongoError, ServerSelectionTimeoutError

from tierstore.config import RECORD_KINDS, StorageConfig
from tierstore.errors import StorageUnavailable
from tierstore.utils.common import retry_async

LOG = logging.getLogger("tierstore.mongo")

IndexSpec = Tuple[str, List[Tuple[str, int]], Dict[str, Any]]


def get_index_specs(config: StorageConfig) -> List[IndexSpec]:
    """(collection, keys, options) for every index the storage layer queries by."""
    specs: List[IndexSpec] = []
    for kind in RECORD_KINDS.values():
        col = kind.collection
        specs += [
            (col, [("userId", 1)], {}),
            (col, [("status", 1)], {}),
            (col, [("createdAt", -1)], {}),
            (col, [("userId", 1), ("status", 1)], {}),
            (col, [("isLargeData", 1)], {}),
            (col, [("dataSize", 1)], {}),
            (col, [("storageMethod", 1)], {}),
            (col, [("gridFSFileId", 1)], {"sparse": True}),
        ]
    specs.append((config.legacy_chunks_collection, [("formId", 1), ("chunkIndex", 1)], {"unique": True}))
    return specs


class MongoStorage:
    def __init__(self, config: StorageConfig, client: Optional[AsyncIOMotorClient] = None):
        self.config = config
        self.client = client
        self.db = client[config.mongo_db] if client is not None else None

    @retry_async(retries=3, backoff_factor=0.5, retry_on=(ConnectionFailure, ServerSelectionTimeoutError))
    async def _ping_once(self) -> None:
        await self.db.command("ping")

    async def connect(self):
        if self.client is None:
            self.client = AsyncIOMotorClient(self.config.mongo_uri, serverSelectionTimeoutMS=self.config.mongo_timeout_ms)
            self.db = self.client[self.config.mongo_db]
        try:
            await self._ping_once()
        except PyMongoError as exc:
            raise StorageUnavailable(f"MongoDB unreachable at {self.config.mongo_uri}: {exc}") from exc
        LOG.info("MongoStorage connected to %s/%s", self.config.mongo_uri, self.config.mongo_db)
        return self.db

    async def close(self):
        if self.client is not None:
            self.client.close()
            LOG.info("MongoStorage client closed")
        self.client = None
        self.db = None

    async def ping(self) -> bool:
        if self.db is None:
            return False
        try:
            await self.db.command("ping")
            return True
        except PyMongoError:
            LOG.exception("Mongo ping failed")
            return False

    async def ensure_index(self, collection: str, keys: List[Tuple[str, int]], **options: Any) -> str:
        if self.db is None:
            raise StorageUnavailable("MongoDB not connected")
        index_name = await self.db[collection].create_index(keys, **options)
        LOG.info("Ensured index %s on %s", index_name, collection)
        return index_name

    async def bootstrap_indexes(self, dry_run: bool = False) -> int:
        """Create the indexes listed by get_index_specs. Returns how many were ensured."""
        created = 0
        for collection, keys, opts in get_index_specs(self.config):
            if dry_run:
                LOG.info("Would ensure index on %s %s %s", collection, keys, opts)
                continue
            try:
                await self.ensure_index(collection, keys, **opts)
                created += 1
            except PyMongoError:
                LOG.exception("ensure_index failed for %s %s", collection, keys)
                raise
        LOG.info("Bootstrap indexes complete (%d ensured, dry_run=%s)", created, dry_run)
        return created
