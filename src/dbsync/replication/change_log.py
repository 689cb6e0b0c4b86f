"""
ChangeLogStore: append, select and update change-log entries.

The store lives on the current primary node; every method takes a Session
bound to it. Only the Sync Worker and the conflict resolver mutate entries.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from pydantic_core import to_jsonable_python
from sqlalchemy import and_, delete, func, not_, or_, update
from sqlmodel import Session, select

from dbsync.models.change_log import (
    RETRYABLE_STATUSES,
    TERMINAL_STATUSES,
    ChangeLogEntry,
    Operation,
    SyncStatus,
)
from dbsync.replication.schema import InvalidChangeError, get_schema

logger = logging.getLogger(__name__)


@dataclass
class Page:
    items: List[Any] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20


@dataclass
class LogFilter:
    table_name: Optional[str] = None
    operation: Optional[Operation] = None
    status: Optional[SyncStatus] = None
    source_node: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class ChangeLogStore:
    """Queries and state transitions for the sync_log table."""

    # ─── Producer side ────────────────────────────────────────────────────────

    @staticmethod
    def append(
        session: Session,
        table_name: str,
        record_id: Any,
        operation: str,
        change_data: Optional[Dict[str, Any]],
        source_node: str,
    ) -> int:
        """
        Record a mutation for replication. Called by the originating write path.

        Returns:
            The new log id.

        Raises:
            InvalidChangeError: unknown table or operation, no source node.
        """
        get_schema(table_name)
        try:
            op = Operation(str(operation).upper())
        except ValueError:
            raise InvalidChangeError(f"unsupported operation {operation!r}")
        if not source_node:
            raise InvalidChangeError("source node is required")

        entry = ChangeLogEntry(
            table_name=table_name,
            record_id=str(record_id),
            operation=op,
            change_data=to_jsonable_python(change_data or {}),
            source_node=source_node,
        )
        session.add(entry)
        session.commit()
        session.refresh(entry)
        return entry.id

    # ─── Worker side ──────────────────────────────────────────────────────────

    @staticmethod
    def select_due(
        session: Session,
        *,
        batch_size: int,
        max_retries: int,
        backoff_seconds: int = 0,
        now: Optional[datetime] = None,
    ) -> List[ChangeLogEntry]:
        """
        Oldest pending/failed entries still under the retry cap.

        With backoff_seconds > 0, a failed entry waits
        backoff_seconds * 2 ** (retry_count - 1) after its last attempt.
        conflict_pending and resolved entries are never selected.
        """
        statement = select(ChangeLogEntry).where(
            ChangeLogEntry.sync_status.in_(RETRYABLE_STATUSES),
            ChangeLogEntry.retry_count < max_retries,
        )
        if backoff_seconds > 0:
            now = now or datetime.utcnow()
            cooling = [
                and_(
                    ChangeLogEntry.sync_status == SyncStatus.FAILED,
                    ChangeLogEntry.retry_count == attempt,
                    ChangeLogEntry.last_retry_time.is_not(None),
                    ChangeLogEntry.last_retry_time
                    > now - timedelta(seconds=backoff_seconds * 2 ** (attempt - 1)),
                )
                for attempt in range(1, max_retries)
            ]
            if cooling:
                statement = statement.where(not_(or_(*cooling)))
        statement = statement.order_by(
            ChangeLogEntry.created_at.asc(), ChangeLogEntry.id.asc()
        ).limit(batch_size)
        return list(session.exec(statement).all())

    @staticmethod
    def mark_in_progress(session: Session, entry: ChangeLogEntry) -> None:
        entry.sync_status = SyncStatus.IN_PROGRESS
        entry.last_retry_time = datetime.utcnow()
        session.add(entry)
        session.commit()

    @staticmethod
    def requeue_stale(
        session: Session, stale_after_seconds: float, now: Optional[datetime] = None
    ) -> int:
        """
        Return abandoned in_progress entries to failed, counting the attempt.

        An entry stays in_progress only if the tick that claimed it died or
        could not record the outcome. Returns rows changed.
        """
        now = now or datetime.utcnow()
        table = ChangeLogEntry.__table__
        result = session.connection().execute(
            update(table)
            .where(
                table.c.sync_status == SyncStatus.IN_PROGRESS,
                or_(
                    table.c.last_retry_time.is_(None),
                    table.c.last_retry_time < now - timedelta(seconds=stale_after_seconds),
                ),
            )
            .values(
                sync_status=SyncStatus.FAILED,
                retry_count=table.c.retry_count + 1,
                error_message="interrupted while in progress",
                last_retry_time=now,
            )
        )
        session.commit()
        return result.rowcount

    @staticmethod
    def mark_success(session: Session, entry: ChangeLogEntry, synced_nodes: Iterable[str]) -> None:
        entry.sync_status = SyncStatus.SUCCESS
        entry.synced_nodes = sorted(set(synced_nodes))
        entry.error_message = None
        entry.last_retry_time = datetime.utcnow()
        session.add(entry)
        session.commit()

    @staticmethod
    def mark_failed(
        session: Session,
        entry: ChangeLogEntry,
        error: str,
        synced_nodes: Iterable[str] = (),
    ) -> None:
        """Non-conflict failure: counts against the retry cap."""
        entry.sync_status = SyncStatus.FAILED
        entry.retry_count = (entry.retry_count or 0) + 1
        entry.error_message = error
        entry.synced_nodes = sorted(set(entry.synced_nodes or []) | set(synced_nodes))
        entry.last_retry_time = datetime.utcnow()
        session.add(entry)
        session.commit()

    @staticmethod
    def mark_invalid(session: Session, entry: ChangeLogEntry, error: str, max_retries: int) -> None:
        """Unappliable payload: parked as failed at the retry cap."""
        entry.sync_status = SyncStatus.FAILED
        entry.retry_count = max(max_retries, entry.retry_count or 0)
        entry.error_message = f"invalid change: {error}"
        entry.last_retry_time = datetime.utcnow()
        session.add(entry)
        session.commit()

    @staticmethod
    def mark_conflict(
        session: Session,
        entry: ChangeLogEntry,
        conflict_nodes: Iterable[str],
        synced_nodes: Iterable[str] = (),
    ) -> None:
        """Conflict: parked for an operator, excluded from automatic retries."""
        entry.sync_status = SyncStatus.CONFLICT_PENDING
        entry.error_message = f"conflict on: {', '.join(sorted(conflict_nodes))}"
        entry.synced_nodes = sorted(set(entry.synced_nodes or []) | set(synced_nodes))
        entry.last_retry_time = datetime.utcnow()
        session.add(entry)
        session.commit()

    @staticmethod
    def resolve_for_record(session: Session, table_name: str, record_id: str, message: str) -> int:
        """Close every conflict_pending entry of one record. Returns rows changed."""
        result = session.connection().execute(
            update(ChangeLogEntry.__table__)
            .where(
                ChangeLogEntry.__table__.c.table_name == table_name,
                ChangeLogEntry.__table__.c.record_id == str(record_id),
                ChangeLogEntry.__table__.c.sync_status == SyncStatus.CONFLICT_PENDING,
            )
            .values(
                sync_status=SyncStatus.RESOLVED,
                error_message=message,
                last_retry_time=datetime.utcnow(),
            )
        )
        session.commit()
        return result.rowcount

    # ─── Operator queries ─────────────────────────────────────────────────────

    @staticmethod
    def get(session: Session, log_id: int) -> Optional[ChangeLogEntry]:
        return session.get(ChangeLogEntry, log_id)

    @staticmethod
    def list_logs(
        session: Session,
        filters: Optional[LogFilter] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page:
        """Newest first, filtered and paginated."""
        filters = filters or LogFilter()
        conditions = []
        if filters.table_name:
            conditions.append(ChangeLogEntry.table_name == filters.table_name)
        if filters.operation:
            conditions.append(ChangeLogEntry.operation == Operation(filters.operation))
        if filters.status:
            conditions.append(ChangeLogEntry.sync_status == SyncStatus(filters.status))
        if filters.source_node:
            conditions.append(ChangeLogEntry.source_node == filters.source_node)
        if filters.start:
            conditions.append(ChangeLogEntry.created_at >= filters.start)
        if filters.end:
            conditions.append(ChangeLogEntry.created_at <= filters.end)

        total = session.exec(
            select(func.count()).select_from(ChangeLogEntry).where(*conditions)
        ).one()
        items = session.exec(
            select(ChangeLogEntry)
            .where(*conditions)
            .order_by(ChangeLogEntry.created_at.desc(), ChangeLogEntry.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return Page(items=list(items), total=total, page=page, limit=limit)

    @staticmethod
    def count_by_status(session: Session, status: SyncStatus) -> int:
        return session.exec(
            select(func.count())
            .select_from(ChangeLogEntry)
            .where(ChangeLogEntry.sync_status == status)
        ).one()

    @staticmethod
    def exhausted(session: Session, max_retries: int) -> List[ChangeLogEntry]:
        """Failed entries that reached the retry cap and need an operator."""
        return list(session.exec(
            select(ChangeLogEntry)
            .where(
                ChangeLogEntry.sync_status == SyncStatus.FAILED,
                ChangeLogEntry.retry_count >= max_retries,
            )
            .order_by(ChangeLogEntry.created_at.asc())
        ).all())

    @staticmethod
    def stats(session: Session, days: int = 7, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Entry counts per (day, status) over the last `days` days, newest day first."""
        since = (now or datetime.utcnow()) - timedelta(days=days)
        day = func.date(ChangeLogEntry.created_at)
        rows = session.exec(
            select(day, ChangeLogEntry.sync_status, func.count())
            .where(ChangeLogEntry.created_at >= since)
            .group_by(day, ChangeLogEntry.sync_status)
            .order_by(day.desc())
        ).all()
        return [
            {"date": str(d), "status": SyncStatus(s).value, "count": c}
            for d, s, c in rows
        ]

    @staticmethod
    def cleanup(
        session: Session,
        days: int = 30,
        status: str = "all",
        now: Optional[datetime] = None,
    ) -> int:
        """
        Delete finished entries older than `days`.

        status="all" only covers terminal statuses; pending, in-flight and
        conflict_pending entries are never removed here.
        """
        if status == "all":
            statuses = TERMINAL_STATUSES
        else:
            chosen = SyncStatus(status)
            if chosen not in TERMINAL_STATUSES:
                raise ValueError(f"cannot clean up entries in status {status!r}")
            statuses = (chosen,)

        cutoff = (now or datetime.utcnow()) - timedelta(days=days)
        table = ChangeLogEntry.__table__
        result = session.connection().execute(
            delete(table).where(
                table.c.created_at < cutoff,
                table.c.sync_status.in_(statuses),
            )
        )
        session.commit()
        logger.info("Cleaned up %d change-log entries older than %d days", result.rowcount, days)
        return result.rowcount
