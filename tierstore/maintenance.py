# tierstore/maintenance.py
"""
Migration & repair service.

Every batch operation processes records independently and aggregates failures
into a report instead of raising, so runs can be repeated safely. Per-record
ordering for a migration is retrieve -> store new -> update record -> delete
old; a crash between steps leaves orphaned bytes, never a record pointing at
nothing.

Storage status transitions:

    healthy --migrate--> migrating --> healthy (new tier) | migration_failed
    healthy(gridfs) --diagnose--> orphaned --recover--> cleared
    orphaned --emergency recover--> healthy | corrupted
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from tierstore import codec
from tierstore.config import RecordKind, StorageConfig
from tierstore.direct_reader import DirectReader
from tierstore.errors import (
    CorruptedObject,
    EmptyObject,
    MalformedObject,
    NotFound,
    StorageError,
    StorageUnavailable,
    UnsupportedTier,
)
from tierstore.metrics import MAINTENANCE_RECORDS
from tierstore.models import (
    F_CHUNKED_ID,
    F_COMPRESSED_DATA,
    F_DATA_SIZE,
    F_FILE_NAME,
    F_FILE_PATH,
    F_FILE_SIZE,
    F_FORM_DATA,
    F_GRIDFS_ID,
    F_IS_COMPRESSED,
    F_IS_LARGE,
    F_STORAGE_METHOD,
    F_STORAGE_STATUS,
    TERMINAL_STATUSES,
    CleanupOutcome,
    DiagnosisIssue,
    DiagnosisReport,
    EmergencyRecoveryOutcome,
    MigrationOutcome,
    RecoveryOutcome,
    StorageStatus,
    Tier,
    VerificationReport,
)
from tierstore.records import parse_record_id
from tierstore.router import LargeObjectRouter
from tierstore.utils.common import bounded_gather, bytes_to_human, now_iso, utcnow

LOG = logging.getLogger("tierstore.maintenance")

# Record fields that only exist for one tier; cleanup_legacy unsets them when a
# record has moved on.
_LEGACY_FIELDS = (F_FILE_PATH, F_GRIDFS_ID, F_CHUNKED_ID, F_COMPRESSED_DATA)
_FILE_FIELDS = (F_FILE_NAME, F_FILE_SIZE)

# Corruption kinds that justify marking records; StorageUnavailable does not.
_PERMANENT_FAILURES = (NotFound, CorruptedObject, EmptyObject, MalformedObject)


def _own_fields(tier: Tier) -> tuple:
    if tier == Tier.COMPRESSED_INLINE:
        return (F_COMPRESSED_DATA,)
    return (tier.reference_field,) if tier.reference_field else ()


class MaintenanceService:
    def __init__(self, collection, router: LargeObjectRouter, reader: DirectReader):
        self.collection = collection
        self.router = router
        self.reader = reader
        self.config: StorageConfig = router.config
        self.kind: RecordKind = router.kind

    @classmethod
    def build(cls, db, config: StorageConfig, kind: RecordKind, bucket=None) -> "MaintenanceService":
        router = LargeObjectRouter.build(db, config, kind, bucket=bucket)
        return cls(db[kind.collection], router, DirectReader(db, config, kind=kind))

    async def _mark(self, record_id: Any, status: StorageStatus) -> None:
        try:
            await self.collection.update_one(
                {"_id": record_id},
                {"$set": {F_STORAGE_STATUS: status.value, "updatedAt": utcnow()}},
            )
        except PyMongoError:
            LOG.warning("Could not set storageStatus=%s on %s", status.value, record_id, exc_info=True)

    async def _records(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self.collection.find(query).to_list(length=None)

    # ------------------------------------------------------------------
    # Migrate-all
    # ------------------------------------------------------------------
    @staticmethod
    def migration_query(target: Tier) -> Dict[str, Any]:
        clauses: List[Dict[str, Any]] = [{F_STORAGE_METHOD: {"$ne": target.value}}]
        ref_field = target.reference_field
        if ref_field:
            clauses.append({ref_field: {"$exists": False}})
            clauses.append({ref_field: None})
        return {"$or": clauses, F_STORAGE_STATUS: {"$nin": list(TERMINAL_STATUSES)}}

    async def _migrate_one(self, record: Dict[str, Any], target: Tier) -> Optional[str]:
        rid = record["_id"]
        await self._mark(rid, StorageStatus.MIGRATING)
        try:
            payload = await self.router.retrieve(record)
            result = await self.router.store_as(target, payload, name=str(rid), tags={"recordId": str(rid)})
        except StorageError as exc:
            LOG.error("Failed to migrate %s %s: %s", self.kind.label, rid, exc)
            await self._mark(rid, StorageStatus.MIGRATION_FAILED)
            MAINTENANCE_RECORDS.labels(action="migrate", outcome="failed").inc()
            return f"{rid}: {exc}"

        to_set, to_unset = self.router.record_update(result)
        to_set["updatedAt"] = utcnow()
        update: Dict[str, Any] = {"$set": to_set}
        if to_unset:
            update["$unset"] = to_unset
        try:
            await self.collection.update_one({"_id": rid}, update)
        except PyMongoError as exc:
            LOG.error("Failed to repoint %s %s after store: %s", self.kind.label, rid, exc)
            await self.router.delete_locator(result.locator)
            await self._mark(rid, StorageStatus.MIGRATION_FAILED)
            MAINTENANCE_RECORDS.labels(action="migrate", outcome="failed").inc()
            return f"{rid}: {exc}"

        for old in self.router.referenced_locators(record):
            if old.reference != result.locator.reference:
                await self.router.delete_locator(old)
        LOG.info("Migrated %s %s to %s (%s)", self.kind.label, rid, target.value,
                 bytes_to_human(result.locator.size_bytes))
        MAINTENANCE_RECORDS.labels(action="migrate", outcome="ok").inc()
        return None

    async def migrate_all(self, tier: Optional[Tier] = None) -> MigrationOutcome:
        target = Tier(tier) if tier is not None else self.config.preferred_tier
        if target == Tier.EXTERNAL:
            raise UnsupportedTier("cannot migrate records to the external tier")
        records = await self._records(self.migration_query(target))
        outcome = MigrationOutcome(total=len(records))
        LOG.info("Migrating %d %s record(s) to %s", len(records), self.kind.label, target.value)
        errors = await bounded_gather(
            (self._migrate_one(r, target) for r in records), concurrency=self.config.migration_concurrency
        )
        for err in errors:
            if err is None:
                outcome.migrated += 1
            else:
                outcome.failed += 1
                outcome.errors.append(err)
        LOG.info("Migration complete: %d migrated, %d failed", outcome.migrated, outcome.failed)
        return outcome

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------
    async def _verify_one(self, record: Dict[str, Any], tier: Tier) -> str:
        ref_field = tier.reference_field
        if ref_field and not record.get(ref_field):
            return "missing"
        try:
            await self.router.retrieve(record)
        except StorageError as exc:
            LOG.error("Verification failed for %s %s: %s", self.kind.label, record["_id"], exc)
            return "invalid"
        return "valid"

    async def verify(self, tier: Optional[Tier] = None) -> VerificationReport:
        target = Tier(tier) if tier is not None else self.config.preferred_tier
        records = await self._records({F_STORAGE_METHOD: target.value})
        report = VerificationReport(tier=target, total=len(records))
        results = await bounded_gather(
            (self._verify_one(r, target) for r in records), concurrency=self.config.migration_concurrency
        )
        for res in results:
            setattr(report, res, getattr(report, res) + 1)
        LOG.info("Verified %d %s record(s) at %s: %d valid, %d invalid, %d missing",
                 report.total, self.kind.label, target.value, report.valid, report.invalid, report.missing)
        return report

    # ------------------------------------------------------------------
    # Diagnose / recover
    # ------------------------------------------------------------------
    async def diagnose(self) -> DiagnosisReport:
        """Metadata-only existence check for every record claiming bucket storage."""
        query = {"$or": [
            {F_STORAGE_METHOD: Tier.CHUNKED_BUCKET.value},
            {F_STORAGE_METHOD: {"$exists": False}, F_GRIDFS_ID: {"$exists": True}},
        ]}
        records = await self._records(query)
        report = DiagnosisReport(checked=len(records))
        for record in records:
            rid = record["_id"]
            ref = record.get(F_GRIDFS_ID)
            size = int(record.get(F_DATA_SIZE) or 0)
            reason = None
            if not ref:
                reason = "no bucket reference"
            else:
                try:
                    info = await self.reader.lookup(ref)
                except StorageUnavailable as exc:
                    report.errors.append(f"{rid}: {exc}")
                    continue
                except StorageError:
                    reason = "invalid bucket object id"
                else:
                    if info is None:
                        reason = "missing bucket object"
            if reason:
                report.issues.append(DiagnosisIssue(
                    record_id=str(rid), reference=str(ref) if ref else None, data_size=size, reason=reason,
                ))
                await self._mark(rid, StorageStatus.ORPHANED)
        LOG.info("Diagnosed %d %s record(s): %d issue(s)", report.checked, self.kind.label, len(report.issues))
        return report

    async def recover_orphans(self, report: Optional[DiagnosisReport] = None) -> RecoveryOutcome:
        """
        Clear broken bucket references. Destructive: the payload is presumed
        unrecoverable and the record is left without large data.
        """
        if report is None:
            report = await self.diagnose()
        outcome = RecoveryOutcome(total=len(report.issues))
        for issue in report.issues:
            rid = issue.record_id
            try:
                oid = parse_record_id(rid)
                await self.collection.update_one(
                    {"_id": oid},
                    {
                        "$set": {
                            F_STORAGE_METHOD: Tier.INLINE.value,
                            F_IS_LARGE: False,
                            F_FORM_DATA: None,
                            F_STORAGE_STATUS: StorageStatus.CLEARED.value,
                            "updatedAt": utcnow(),
                        },
                        "$unset": {F_GRIDFS_ID: ""},
                    },
                )
            except (PyMongoError, StorageError) as exc:
                LOG.error("Failed to clear orphaned reference on %s %s: %s", self.kind.label, rid, exc)
                outcome.failed += 1
                outcome.errors.append(f"{rid}: {exc}")
                MAINTENANCE_RECORDS.labels(action="recover", outcome="failed").inc()
                continue
            LOG.warning("Cleared orphaned bucket reference %s on %s %s", issue.reference, self.kind.label, rid)
            outcome.cleared += 1
            MAINTENANCE_RECORDS.labels(action="recover", outcome="ok").inc()
        return outcome

    async def emergency_recover(self, reference: str) -> EmergencyRecoveryOutcome:
        """
        Full direct read of one bucket object. Success marks its records healthy;
        a permanent failure marks them corrupted and drops the dangling reference.
        """
        outcome = EmergencyRecoveryOutcome(reference=reference)
        records = await self._records({F_GRIDFS_ID: reference})
        outcome.affected_records = [str(r["_id"]) for r in records]
        try:
            data = await self.reader.read_bytes(reference)
            codec.decode_json(data, reference)
        except StorageError as exc:
            outcome.error = str(exc)
            if not isinstance(exc, _PERMANENT_FAILURES):
                LOG.error("Emergency recovery of %s could not reach storage: %s", reference, exc)
                return outcome
            LOG.error("Emergency recovery of %s failed; marking %d record(s) corrupted: %s",
                      reference, len(records), exc)
            for record in records:
                await self._mark_corrupted(record, reference, str(exc))
            MAINTENANCE_RECORDS.labels(action="emergency_recover", outcome="corrupted").inc(len(records))
            return outcome

        outcome.recovered = True
        outcome.size_bytes = len(data)
        for record in records:
            await self._mark(record["_id"], StorageStatus.HEALTHY)
        LOG.info("Emergency recovery of %s succeeded (%s, %d record(s))",
                 reference, bytes_to_human(len(data)), len(records))
        MAINTENANCE_RECORDS.labels(action="emergency_recover", outcome="ok").inc(len(records))
        return outcome

    async def _mark_corrupted(self, record: Dict[str, Any], reference: str, reason: str) -> None:
        sentinel = {
            "_corrupted": True,
            "originalSize": int(record.get(F_DATA_SIZE) or 0),
            "reason": reason,
            "reference": reference,
            "detectedAt": now_iso(),
        }
        try:
            await self.collection.update_one(
                {"_id": record["_id"]},
                {
                    "$set": {
                        F_STORAGE_METHOD: Tier.INLINE.value,
                        F_FORM_DATA: sentinel,
                        F_IS_LARGE: False,
                        F_IS_COMPRESSED: False,
                        F_STORAGE_STATUS: StorageStatus.CORRUPTED.value,
                        "updatedAt": utcnow(),
                    },
                    "$unset": {F_GRIDFS_ID: ""},
                },
            )
        except PyMongoError:
            LOG.error("Could not mark %s %s corrupted", self.kind.label, record["_id"], exc_info=True)

    # ------------------------------------------------------------------
    # Legacy cleanup
    # ------------------------------------------------------------------
    async def cleanup_legacy(self, tier: Optional[Tier] = None) -> CleanupOutcome:
        target = Tier(tier) if tier is not None else self.config.preferred_tier
        legacy = [f for f in _LEGACY_FIELDS if f not in _own_fields(target)]
        query = {F_STORAGE_METHOD: target.value, "$or": [{f: {"$exists": True}} for f in legacy]}
        records = await self._records(query)
        outcome = CleanupOutcome(total=len(records))
        for record in records:
            rid = record["_id"]
            for locator in self.router.legacy_locators(record, keep=target):
                await self.router.delete_locator(locator)
            unset = {f: "" for f in legacy if f in record}
            if F_FILE_PATH in unset:
                unset.update({f: "" for f in _FILE_FIELDS if f in record})
            try:
                await self.collection.update_one({"_id": rid}, {"$unset": unset, "$set": {"updatedAt": utcnow()}})
            except PyMongoError as exc:
                LOG.error("Failed to unset legacy fields on %s %s: %s", self.kind.label, rid, exc)
                outcome.failed += 1
                outcome.errors.append(f"{rid}: {exc}")
                MAINTENANCE_RECORDS.labels(action="cleanup_legacy", outcome="failed").inc()
                continue
            outcome.cleaned += 1
            MAINTENANCE_RECORDS.labels(action="cleanup_legacy", outcome="ok").inc()
        LOG.info("Legacy cleanup: %d of %d %s record(s) cleaned", outcome.cleaned, outcome.total, self.kind.label)
        return outcome

    # ------------------------------------------------------------------
    # Filesystem sweeps
    # ------------------------------------------------------------------
    async def cleanup_files(self, older_than_days: int = 30) -> int:
        """Sweep stale files that no record of this kind points at."""
        try:
            referenced = await self.collection.find(
                {F_FILE_PATH: {"$exists": True, "$ne": None}}, {F_FILE_PATH: 1}
            ).to_list(length=None)
        except PyMongoError as exc:
            raise StorageUnavailable(f"Could not list referenced {self.kind.label} files: {exc}") from exc
        keep = [r[F_FILE_PATH] for r in referenced if r.get(F_FILE_PATH)]
        return await self.router.backend(Tier.FILESYSTEM_FILE).cleanup_old_files(older_than_days, keep=keep)

    async def storage_stats(self) -> Dict[str, Any]:
        stats = await self.router.backend(Tier.FILESYSTEM_FILE).storage_stats()
        stats["kind"] = self.kind.name
        stats["records"] = await self.collection.count_documents({})
        return stats
