"""
SyncWorker: drains the change log on the current primary.

One tick:
  1. Resolve the primary once (PrimaryCache) and use it for the whole tick.
  2. Return entries abandoned in_progress by a dead tick to failed, then
     select due entries (pending/failed, under the retry cap, past backoff).
  3. Per entry: mark in_progress, prepare the row once, apply it to every
     other node concurrently (one executor task per target), aggregate.
  4. success / conflict_pending (+ conflict records, one notice) / failed.

Ticks never overlap: a tick that finds another one running returns None.
"""
import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlmodel import Session

from dbsync.db.engine import ReplicaPool
from dbsync.models.change_log import ChangeLogEntry, SyncStatus
from dbsync.notify.telegram import ConflictNotice, LoggingNotifier
from dbsync.replication.applier import (
    ApplyAction,
    ApplyResult,
    ChangeRequest,
    PreparedChange,
    RecordApplier,
    jsonable,
)
from dbsync.replication.change_log import ChangeLogStore
from dbsync.replication.conflicts import ConflictStore
from dbsync.replication.primary import PrimaryCache
from dbsync.replication.schema import InvalidChangeError

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
CONFLICTED = "conflicted"
FAILED = "failed"
INVALID = "invalid"


class SyncConfig(BaseModel):
    """Runtime-tunable worker settings."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    interval_seconds: int = Field(default=60, ge=1)
    batch_size: int = Field(default=100, ge=1, le=1000)
    max_retries: int = Field(default=3, ge=1)
    soft_deadline_seconds: float = Field(default=50, gt=0)
    retry_backoff_seconds: int = Field(default=0, ge=0)

    @classmethod
    def from_settings(cls, settings) -> "SyncConfig":
        return cls(
            enabled=settings.sync_enabled,
            interval_seconds=settings.sync_interval_seconds,
            batch_size=settings.sync_batch_size,
            max_retries=settings.sync_max_retries,
            soft_deadline_seconds=settings.sync_soft_deadline_seconds,
            retry_backoff_seconds=settings.sync_retry_backoff_seconds,
        )


@dataclass
class SyncRunReport:
    started_at: datetime
    primary: Optional[str] = None
    finished_at: Optional[datetime] = None
    processed: int = 0
    succeeded: int = 0
    conflicted: int = 0
    failed: int = 0
    invalid: int = 0
    deferred: int = 0
    requeued: int = 0  # abandoned in_progress entries returned to failed
    duration_ms: float = 0.0
    error: Optional[str] = None

    def count(self, outcome: str) -> None:
        self.processed += 1
        setattr(self, outcome, getattr(self, outcome) + 1)


class SyncWorker:
    """Replicates change-log entries from the primary to every other node."""

    def __init__(
        self,
        pool: ReplicaPool,
        primary_cache: PrimaryCache,
        applier: Optional[RecordApplier] = None,
        notifier=None,
        config: Optional[SyncConfig] = None,
    ):
        self.pool = pool
        self.primary_cache = primary_cache
        self.applier = applier or RecordApplier(pool)
        self.notifier = notifier or LoggingNotifier()
        self._config = config or SyncConfig()
        self._listeners: List[Callable[[SyncConfig], None]] = []
        self._running = False
        self.last_report: Optional[SyncRunReport] = None

    @property
    def running(self) -> bool:
        return self._running

    # ─── Configuration ────────────────────────────────────────────────────────

    def get_config(self) -> SyncConfig:
        return self._config

    def update_config(self, **changes: Any) -> SyncConfig:
        """
        Validate and apply new settings; listeners (the scheduler) are told.

        Raises:
            pydantic.ValidationError: unknown key or out-of-range value.
        """
        updated = SyncConfig.model_validate({**self._config.model_dump(), **changes})
        self._config = updated
        logger.info("Sync config updated: %s", changes)
        for listener in self._listeners:
            listener(updated)
        return updated

    def add_config_listener(self, listener: Callable[[SyncConfig], None]) -> None:
        self._listeners.append(listener)

    # ─── Tick ─────────────────────────────────────────────────────────────────

    async def run_once(self) -> Optional[SyncRunReport]:
        """Run one tick. Returns None if a tick is already running."""
        if self._running:
            logger.debug("Sync tick skipped: previous tick still running")
            return None
        self._running = True

        config = self._config
        clock = time.monotonic()
        report = SyncRunReport(started_at=datetime.utcnow())
        try:
            report.primary = self.primary_cache.get()
            with self.pool.session(report.primary) as session:
                report.requeued = ChangeLogStore.requeue_stale(session, config.soft_deadline_seconds)
                if report.requeued:
                    logger.warning("Requeued %d change-log entries left in progress", report.requeued)
                entries = ChangeLogStore.select_due(
                    session,
                    batch_size=config.batch_size,
                    max_retries=config.max_retries,
                    backoff_seconds=config.retry_backoff_seconds,
                )
                if entries:
                    logger.info("Syncing %d change-log entries from %s", len(entries), report.primary)
                for index, entry in enumerate(entries):
                    if index and time.monotonic() - clock >= config.soft_deadline_seconds:
                        report.deferred = len(entries) - index
                        logger.warning("Soft deadline reached, deferring %d entries", report.deferred)
                        break
                    report.count(await self._sync_entry(session, entry, config))
        except Exception as exc:
            logger.error("Sync tick failed: %s", exc)
            report.error = str(exc)
        finally:
            report.finished_at = datetime.utcnow()
            report.duration_ms = round((time.monotonic() - clock) * 1000.0, 2)
            self.last_report = report
            self._running = False

        if report.processed:
            logger.info(
                "Sync tick done: %d processed, %d ok, %d conflicts, %d failed, %d invalid (%.0f ms)",
                report.processed, report.succeeded, report.conflicted,
                report.failed, report.invalid, report.duration_ms,
            )
        return report

    async def _sync_entry(self, session: Session, entry: ChangeLogEntry, config: SyncConfig) -> str:
        try:
            return await self._process(session, entry, config)
        except Exception as exc:
            logger.error("Entry %s failed unexpectedly: %s", entry.id, exc)
            session.rollback()
            ChangeLogStore.mark_failed(session, entry, str(exc))
            return FAILED

    async def _process(self, session: Session, entry: ChangeLogEntry, config: SyncConfig) -> str:
        ChangeLogStore.mark_in_progress(session, entry)
        request = ChangeRequest.from_entry(entry)
        loop = asyncio.get_event_loop()

        try:
            if request.source_node not in self.pool:
                raise InvalidChangeError(f"unknown source node {request.source_node!r}")
            prepared = await loop.run_in_executor(None, self.applier.prepare, request)
        except InvalidChangeError as exc:
            return self._invalid(session, entry, str(exc), config)

        targets = [name for name in self.pool.names if name != request.source_node]
        results: List[ApplyResult] = await asyncio.gather(
            *(loop.run_in_executor(None, self._apply_one, prepared, target) for target in targets)
        )

        conflicts = [r for r in results if r.action is ApplyAction.CONFLICT]
        errors = [r for r in results if r.error]
        synced = [r.node for r in results if r.ok]

        if conflicts:
            source_data = jsonable(prepared.data)
            for result in conflicts:
                ConflictStore.record(session, request, result, source_data)
            ChangeLogStore.mark_conflict(session, entry, [r.node for r in conflicts], synced)
            await self._notify(request, conflicts)
            return CONFLICTED

        invalid = next((r for r in errors if r.invalid), None)
        if invalid is not None:
            return self._invalid(session, entry, invalid.error, config)

        if errors:
            message = "; ".join(f"{r.node}: {r.error}" for r in errors)
            ChangeLogStore.mark_failed(session, entry, message, synced)
            if entry.retry_count >= config.max_retries:
                logger.error(
                    "Entry %s (%s[%s]) permanently failed after %d attempts: %s",
                    entry.id, entry.table_name, entry.record_id, entry.retry_count, message,
                )
            else:
                logger.warning("Entry %s failed (attempt %d): %s", entry.id, entry.retry_count, message)
            return FAILED

        ChangeLogStore.mark_success(session, entry, targets)
        return SUCCEEDED

    def _apply_one(self, prepared: PreparedChange, target: str) -> ApplyResult:
        try:
            return self.applier.apply(prepared, target, suppress_capture=True)
        except InvalidChangeError as exc:
            return ApplyResult(node=target, error=str(exc), invalid=True)
        except Exception as exc:
            logger.warning("Apply of %s[%s] to %s failed: %s",
                           prepared.schema.name, prepared.key, target, exc)
            return ApplyResult(node=target, error=str(exc))

    @staticmethod
    def _invalid(session: Session, entry: ChangeLogEntry, error: str, config: SyncConfig) -> str:
        logger.warning("Skipping invalid change-log entry %s: %s", entry.id, error)
        ChangeLogStore.mark_invalid(session, entry, error, config.max_retries)
        return INVALID

    async def _notify(self, request: ChangeRequest, conflicts: List[ApplyResult]) -> None:
        types = sorted({r.conflict.type.value for r in conflicts})
        notice = ConflictNotice(
            table_name=request.table_name,
            record_id=request.record_id,
            source_node=request.source_node,
            target_nodes=[r.node for r in conflicts],
            conflict_type=", ".join(types),
        )
        try:
            await self.notifier.notify_conflict(notice)
        except Exception as exc:
            logger.error("Conflict notification failed: %s", exc)

    # ─── Operator queries ─────────────────────────────────────────────────────

    def status(self) -> Dict[str, Any]:
        primary = self.primary_cache.get()
        with self.pool.session(primary) as session:
            counts = {
                "pending_count": ChangeLogStore.count_by_status(session, SyncStatus.PENDING),
                "in_progress_count": ChangeLogStore.count_by_status(session, SyncStatus.IN_PROGRESS),
                "failed_count": ChangeLogStore.count_by_status(session, SyncStatus.FAILED),
                "conflict_pending_count": ChangeLogStore.count_by_status(
                    session, SyncStatus.CONFLICT_PENDING
                ),
                "open_conflicts": ConflictStore.count_open(session),
                "exhausted_count": len(
                    ChangeLogStore.exhausted(session, self._config.max_retries)
                ),
            }
        return {
            "primary": primary,
            "running": self._running,
            "enabled": self._config.enabled,
            **counts,
            "connection_status": self.pool.test_connections(),
            "last_run": asdict(self.last_report) if self.last_report else None,
        }

    def stats(self, days: int = 7) -> List[Dict[str, Any]]:
        with self.pool.session(self.primary_cache.get()) as session:
            return ChangeLogStore.stats(session, days=days)
