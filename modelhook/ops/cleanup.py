"""Retention policy for inactive, failing and never-triggered subscriptions."""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog

from modelhook.core.clock import utcnow
from modelhook.ops.recovery import RecoveryManager
from modelhook.subscriptions.database import SubscriptionStore
from modelhook.subscriptions.models import Subscription, SubscriptionStatus

logger = structlog.get_logger("modelhook")


class CleanupType(str, Enum):
    INACTIVE = "inactive"
    ERRORS = "errors"
    NEVER_TRIGGERED = "never-triggered"
    ALL = "all"


@dataclass
class CleanupReport:
    total_processed: int = 0
    total_archived: int = 0
    total_deleted: int = 0
    failed: int = 0
    dry_run: bool = False
    cancelled: bool = False
    backup_path: str | None = None
    by_type: dict[str, int] = field(default_factory=dict)
    candidates: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "total_archived": self.total_archived,
            "total_deleted": self.total_deleted,
            "failed": self.failed,
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "backup_path": self.backup_path,
            "by_type": dict(self.by_type),
            "candidates": list(self.candidates),
        }


class CleanupPolicy:
    """Finds subscriptions past their retention window and archives or deletes them."""

    def __init__(
        self,
        store: SubscriptionStore,
        inactive_days: int = 30,
        error_days: int = 7,
        never_triggered_days: int = 14,
        batch_size: int = 100,
        recovery: RecoveryManager | None = None,
        backup_before_cleanup: bool = False,
    ) -> None:
        self.store = store
        self.inactive_days = inactive_days
        self.error_days = error_days
        self.never_triggered_days = never_triggered_days
        self.batch_size = batch_size
        self.recovery = recovery
        self.backup_before_cleanup = backup_before_cleanup

    async def find_candidates(
        self,
        cleanup_type: CleanupType | str,
        now: datetime | None = None,
    ) -> dict[str, list[Subscription]]:
        """Matches per concrete type. ``all`` assigns each subscription to the first type it matches."""
        cleanup_type = CleanupType(cleanup_type)
        now = now or utcnow()
        types = (
            [CleanupType.INACTIVE, CleanupType.ERRORS, CleanupType.NEVER_TRIGGERED]
            if cleanup_type == CleanupType.ALL
            else [cleanup_type]
        )

        found: dict[str, list[Subscription]] = {}
        seen: set[str] = set()
        for kind in types:
            if kind == CleanupType.INACTIVE:
                rows = await self.store.cleanup_candidates(
                    status=SubscriptionStatus.INACTIVE,
                    updated_before=now - timedelta(days=self.inactive_days),
                )
            elif kind == CleanupType.ERRORS:
                rows = await self.store.cleanup_candidates(
                    has_error=True,
                    updated_before=now - timedelta(days=self.error_days),
                )
            else:
                rows = await self.store.cleanup_candidates(
                    never_triggered=True,
                    created_before=now - timedelta(days=self.never_triggered_days),
                )
            unique = [row for row in rows if row.id not in seen]
            seen.update(row.id for row in unique)
            found[kind.value] = unique
        return found

    async def run(
        self,
        cleanup_type: CleanupType | str = CleanupType.ALL,
        dry_run: bool = False,
        force: bool = False,
        archive: bool = False,
        confirm: Callable[[str], bool] | None = None,
        batch_size: int | None = None,
        now: datetime | None = None,
    ) -> CleanupReport:
        """Apply the retention policy.

        Without ``force`` the ``confirm`` callback must approve the run; a
        missing callback counts as a refusal.
        """
        found = await self.find_candidates(cleanup_type, now=now)
        total = sum(len(rows) for rows in found.values())
        report = CleanupReport(dry_run=dry_run, by_type={kind: 0 for kind in found})

        if dry_run:
            report.by_type = {kind: len(rows) for kind, rows in found.items()}
            report.candidates = [
                {"id": s.id, "type": kind, "target_class": s.target_class, "endpoint_url": s.endpoint_url}
                for kind, rows in found.items()
                for s in rows
            ]
            logger.info("Cleanup dry run", cleanup_type=str(CleanupType(cleanup_type).value), matches=total)
            return report

        if total == 0:
            return report

        action = "archive" if archive else "permanently delete"
        if not force:
            approved = bool(confirm and confirm(f"{action.capitalize()} {total} subscription(s)?"))
            if not approved:
                report.cancelled = True
                logger.info("Cleanup cancelled", matches=total)
                return report

        if self.backup_before_cleanup and self.recovery is not None:
            report.backup_path = str(await self.recovery.backup(name="pre_cleanup"))

        size = batch_size or self.batch_size
        for kind, rows in found.items():
            ids = [row.id for row in rows]
            for start in range(0, len(ids), size):
                processed, failed = await self._process_chunk(ids[start:start + size], archive)
                report.by_type[kind] += processed
                report.total_processed += processed
                report.failed += failed
                if archive:
                    report.total_archived += processed
                else:
                    report.total_deleted += processed

        logger.info(
            "Cleanup completed",
            action=action,
            total_processed=report.total_processed,
            failed=report.failed,
            by_type=report.by_type,
        )
        return report

    async def _process_chunk(self, ids: list[str], archive: bool) -> tuple[int, int]:
        """One transaction per chunk; on failure retry record by record to isolate bad rows."""
        operation = self.store.archive_many if archive else self.store.hard_delete_many
        try:
            return await operation(ids), 0
        except Exception as e:
            logger.warning("Cleanup chunk failed, retrying individually", size=len(ids), error=str(e))

        processed = failed = 0
        for subscription_id in ids:
            try:
                processed += await operation([subscription_id])
            except Exception as e:
                failed += 1
                logger.error(
                    "Failed to clean up subscription",
                    subscription_id=subscription_id,
                    error=str(e),
                    exc_info=True,
                )
        return processed, failed
