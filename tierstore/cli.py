# tierstore/cli.py
"""
Maintenance CLI for tiered form storage.

    tierstore --kind forms diagnose
    tierstore --kind secondforms migrate --tier file
    tierstore emergency-recover 65f0c0ffee0000000000abcd
"""

from __future__ import annotations

import sys
import json
import asyncio
import logging
import argparse
from typing import Any

from pydantic import BaseModel

from tierstore.config import RECORD_KINDS, StorageConfig, get_record_kind
from tierstore.errors import StorageError
from tierstore.maintenance import MaintenanceService
from tierstore.metrics import start_prometheus_exporter
from tierstore.models import Tier
from tierstore.mongo import MongoStorage
from tierstore.utils.logger import configure_logging

LOG = logging.getLogger("tierstore.cli")

_TIER_CHOICES = [t.value for t in Tier if t != Tier.EXTERNAL]


def _build_cli():
    p = argparse.ArgumentParser(prog="tierstore", description="Tiered form storage maintenance CLI")
    p.add_argument("--kind", choices=sorted(RECORD_KINDS), default="forms", help="Record kind to operate on")
    p.add_argument("--json-logs", action="store_true", help="Emit one JSON object per log line")
    p.add_argument("--log-level", default=None)
    p.add_argument("--env-file", default=None, help="Optional .env file to load")
    sub = p.add_subparsers(dest="cmd")

    s1 = sub.add_parser("bootstrap", help="Create storage indexes")
    s1.add_argument("--dry-run", action="store_true")

    s2 = sub.add_parser("migrate", help="Move every record to one tier")
    s2.add_argument("--tier", choices=_TIER_CHOICES, default=None, help="Target tier (default: preferred tier)")

    s3 = sub.add_parser("verify", help="Retrieve every record at a tier and report failures")
    s3.add_argument("--tier", choices=_TIER_CHOICES, default=None)

    sub.add_parser("diagnose", help="Find records whose bucket object is missing")
    sub.add_parser("recover-orphans", help="Clear references to missing bucket objects")

    s4 = sub.add_parser("emergency-recover", help="Direct-read one bucket object; mark its records corrupted on failure")
    s4.add_argument("reference")

    s5 = sub.add_parser("cleanup-legacy", help="Delete legacy blobs of records already at the preferred tier")
    s5.add_argument("--tier", choices=_TIER_CHOICES, default=None)

    s6 = sub.add_parser("cleanup-files", help="Delete storage files older than N days")
    s6.add_argument("--days", type=int, default=30)

    sub.add_parser("stats", help="Filesystem tier usage")

    s7 = sub.add_parser("metrics", help="Run Prometheus metrics exporter")
    s7.add_argument("--port", type=int, default=9109)

    return p


def _print(result: Any) -> None:
    if isinstance(result, BaseModel):
        result = result.model_dump(mode="json")
    print(json.dumps(result, indent=2, default=str))


async def _cli_async_main(args) -> int:
    if args.cmd == "metrics":
        start_prometheus_exporter(port=args.port)
        LOG.info("Metrics exporter running; press Ctrl-C to exit.")
        while True:
            await asyncio.sleep(60)

    config = StorageConfig.from_env(env_file=args.env_file)
    kind = get_record_kind(args.kind)
    mongo = MongoStorage(config)
    await mongo.connect()
    try:
        if args.cmd == "bootstrap":
            _print({"ensured": await mongo.bootstrap_indexes(dry_run=args.dry_run)})
            return 0
        svc = MaintenanceService.build(mongo.db, config, kind)
        if args.cmd == "migrate":
            _print(await svc.migrate_all(args.tier))
        elif args.cmd == "verify":
            _print(await svc.verify(args.tier))
        elif args.cmd == "diagnose":
            _print(await svc.diagnose())
        elif args.cmd == "recover-orphans":
            _print(await svc.recover_orphans())
        elif args.cmd == "emergency-recover":
            _print(await svc.emergency_recover(args.reference))
        elif args.cmd == "cleanup-legacy":
            _print(await svc.cleanup_legacy(args.tier))
        elif args.cmd == "cleanup-files":
            _print({"deleted": await svc.cleanup_files(args.days)})
        elif args.cmd == "stats":
            _print(await svc.storage_stats())
        else:
            LOG.warning("Unknown command %r", args.cmd)
            return 2
    finally:
        await mongo.close()
    return 0


def main_cli():
    parser = _build_cli()
    args = parser.parse_args()
    if not args.cmd:
        parser.print_help()
        sys.exit(2)
    configure_logging(level=args.log_level, json_logs=args.json_logs)
    try:
        code = asyncio.run(_cli_async_main(args))
    except StorageError as exc:
        LOG.error("%s", exc)
        code = 1
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main_cli()
