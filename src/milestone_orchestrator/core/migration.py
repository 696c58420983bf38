"""Moves every record from the active storage tier to another one.

The target is built in a fresh directory beside the source and only
becomes active after its contents verify against the source. Any failure
removes the partial target and leaves the source active and intact.
"""

import json
import logging
import shutil
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from milestone_orchestrator.db.base import StorageBackend, records_checksum
from milestone_orchestrator.db.flat import write_atomic
from milestone_orchestrator.db.models import TIERS
from milestone_orchestrator.db.router import StorageRouter, open_backend, tier_location
from milestone_orchestrator.errors import MigrationInProgress, VerificationFailure

logger = logging.getLogger(__name__)


@dataclass
class MigrationResult:
    success: bool
    source_tier: str
    target_tier: str
    record_count: int = 0
    reason: str | None = None
    backup_path: Path | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "source_tier": self.source_tier,
            "target_tier": self.target_tier,
            "record_count": self.record_count,
            "reason": self.reason,
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "duration_ms": self.duration_ms,
        }


class MigrationEngine:
    def __init__(self, router: StorageRouter, events=None, clock=datetime.now, drain_timeout: float = 30.0):
        self.router = router
        self.events = events
        self._clock = clock
        self.drain_timeout = drain_timeout

    @property
    def backup_dir(self) -> Path:
        return self.router.data_dir / "backups"

    def check_target(self, target_tier: str) -> str:
        """Return the active tier, or raise ValueError if ``target_tier`` is not a move."""
        if target_tier not in TIERS:
            raise ValueError(f"Unknown storage tier: {target_tier}")
        source_tier = self.router.current_tier()
        if target_tier == source_tier:
            raise ValueError(f"Storage is already on the {target_tier} tier")
        return source_tier

    def migrate(self, target_tier: str) -> MigrationResult:
        """Migrate the active tier to ``target_tier``.

        Returns a result in both outcomes; verification failures never
        escape. Raises ValueError for an unknown tier or the current one.
        """
        source_tier = self.check_target(target_tier)

        started = time.monotonic()
        label = self._clock().strftime("%Y%m%dT%H%M%S%f")
        result = MigrationResult(success=False, source_tier=source_tier, target_tier=target_tier)
        logger.info("Migrating storage %s -> %s", source_tier, target_tier)

        try:
            with self.router.quiesce(
                MigrationInProgress(f"Storage migration to {target_tier} in progress"),
                drain_timeout=self.drain_timeout,
            ):
                source = self.router.backend
                records = list(source.records())
                result.record_count = len(records)
                target = None
                try:
                    result.backup_path = self._backup(records, source_tier, label)
                    target = self._build(target_tier, label, records)
                    self._verify(target, records)
                    self.router.swap(target)
                except Exception as e:
                    result.reason = f"{type(e).__name__}: {e}"
                    self._rollback(source, target, records, result.backup_path)
                    shutil.rmtree(tier_location(self.router.data_dir, target_tier, label), ignore_errors=True)
                else:
                    result.success = True
                    source.close()
                    shutil.rmtree(source.root, ignore_errors=True)
        except MigrationInProgress as e:
            result.reason = str(e)

        result.duration_ms = round((time.monotonic() - started) * 1000, 2)
        self._report(result)
        return result

    # ── Steps ───────────────────────────────────────────────────────────

    def _backup(self, records: list[dict], tier: str, label: str) -> Path:
        path = self.backup_dir / f"backup-{label}-{tier}.json"
        write_atomic(path, json.dumps({
            "tier": tier,
            "created_at": self._clock().isoformat(),
            "checksum": records_checksum(records),
            "records": records,
        }))
        return path

    def _build(self, tier: str, label: str, records: list[dict]) -> StorageBackend:
        root = tier_location(self.router.data_dir, tier, label)
        if root.exists():
            shutil.rmtree(root)
        target = open_backend(tier, root)
        target.put_many(records)
        return target

    def _verify(self, target: StorageBackend, records: list[dict]):
        expected = dict(Counter(r["kind"] for r in records))
        actual = {kind: n for kind, n in target.counts().items() if n}
        if actual != expected:
            raise VerificationFailure(f"Record counts differ: expected {expected}, found {actual}")
        if target.checksum() != records_checksum(records):
            raise VerificationFailure("Record checksums differ between source and target")

    def _rollback(self, source: StorageBackend, target: StorageBackend | None, records: list[dict],
                  backup_path: Path | None):
        if target is not None:
            target.close()
        if backup_path is not None and source.checksum() != records_checksum(records):
            logger.warning("Source tier diverged from backup %s; restoring it", backup_path)
            backup = json.loads(backup_path.read_text())
            source.clear()
            source.put_many(backup["records"])

    def _report(self, result: MigrationResult):
        if result.success:
            logger.info("Migrated %d records %s -> %s in %.0fms", result.record_count,
                        result.source_tier, result.target_tier, result.duration_ms)
        else:
            logger.warning("Migration %s -> %s rolled back: %s", result.source_tier,
                           result.target_tier, result.reason)
        if self.events is not None:
            event_type = "storage.migrated" if result.success else "storage.migration_failed"
            self.events.append(event_type, result.target_tier, result.to_dict())
