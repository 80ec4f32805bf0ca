#!/usr/bin/env python3
"""
Storage index bootstrap.

Ensures the MongoDB indexes the form collections and the legacy chunk
collection are queried by.

Usage:
  python3 scripts/setup_storage_indexes.py [--dry-run] [--env-file .env]

Environment:
  TIERSTORE_MONGO_URI  (default: mongodb://localhost:27017)
  TIERSTORE_MONGO_DB   (default: mcerts)
"""

import sys
import asyncio
import logging
import argparse

from tierstore.config import StorageConfig
from tierstore.errors import StorageError
from tierstore.mongo import MongoStorage, get_index_specs
from tierstore.utils.logger import configure_logging

LOG = logging.getLogger("tierstore.setup_storage_indexes")


async def setup_indexes(env_file=None, dry_run: bool = False) -> int:
    config = StorageConfig.from_env(env_file=env_file)
    LOG.info("Starting Mongo index setup on %s/%s (dry_run=%s)", config.mongo_uri, config.mongo_db, dry_run)
    if dry_run:
        for collection, keys, opts in get_index_specs(config):
            LOG.info("Would ensure index for %s on %s (%s)", collection, keys, opts or "-")
        return 0

    store = MongoStorage(config)
    await store.connect()
    try:
        created = await store.bootstrap_indexes()
        LOG.info("Created/ensured %d indexes.", created)
        LOG.info("Mongo ping status: %s", await store.ping())
    finally:
        await store.close()
    return created


def main():
    parser = argparse.ArgumentParser(description="Tiered form storage index setup")
    parser.add_argument("--env-file", default=None, help="Optional .env file to load")
    parser.add_argument("--dry-run", action="store_true", help="Only print planned operations")
    args = parser.parse_args()
    configure_logging()
    try:
        asyncio.run(setup_indexes(env_file=args.env_file, dry_run=args.dry_run))
    except StorageError as exc:
        LOG.error("Index setup failed: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
