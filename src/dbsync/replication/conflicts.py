"""
Conflict persistence and operator-driven resolution.

ConflictStore records what the worker detects (one open record per
table/record/target). ConflictResolver is the operator-facing side: it
replays the chosen version of the data and closes the record, then releases
the originating change-log entries once nothing is left open for the record.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from dbsync.db.engine import ReplicaPool
from dbsync.models.change_log import ChangeLogEntry
from dbsync.models.conflict import ConflictRecord, ResolveAction, ResolveStatus
from dbsync.replication.applier import ApplyResult, ChangeRequest, RecordApplier, as_int
from dbsync.replication.change_log import ChangeLogStore, Page
from dbsync.replication.schema import MODIFIED_FIELD, ORIGIN_FIELD, VERSION_FIELD

logger = logging.getLogger(__name__)

_ACTION_LABELS = {
    ResolveAction.USE_SOURCE: "used source data",
    ResolveAction.USE_TARGET: "kept target data",
    ResolveAction.MANUAL_MERGE: "applied manual merge",
    ResolveAction.IGNORE: "ignored",
}


class ConflictNotFoundError(LookupError):
    """No pending conflict with that id."""


class ConflictStore:
    """Durable conflict records on the primary node."""

    @staticmethod
    def record(
        session: Session,
        request: ChangeRequest,
        result: ApplyResult,
        source_data: Dict[str, Any],
    ) -> ConflictRecord:
        """
        Persist a conflict reported by the applier.

        A pending record for the same (table, record, target) is refreshed in
        place rather than duplicated.
        """
        existing = ConflictStore.open_for(
            session, request.table_name, request.record_id, result.node
        )
        notes = result.conflict.describe() if result.conflict else None
        conflict = existing or ConflictRecord(
            table_name=request.table_name,
            record_id=str(request.record_id),
            source_node=request.source_node,
            target_node=result.node,
            conflict_type=result.conflict.type,
        )
        conflict.change_log_id = request.id
        conflict.conflict_type = result.conflict.type
        conflict.source_node = request.source_node
        conflict.source_data = source_data
        conflict.target_data = result.target_data or {}
        conflict.detected_at = datetime.utcnow()
        conflict.notes = notes
        session.add(conflict)
        session.commit()
        session.refresh(conflict)

        if existing:
            logger.info("Refreshed open conflict %s for %s[%s] -> %s",
                        conflict.id, conflict.table_name, conflict.record_id, conflict.target_node)
        else:
            logger.warning("Recorded conflict %s: %s[%s] %s -> %s (%s)",
                           conflict.id, conflict.table_name, conflict.record_id,
                           conflict.source_node, conflict.target_node, conflict.conflict_type.value)
        return conflict

    @staticmethod
    def open_for(
        session: Session, table_name: str, record_id: str, target_node: str
    ) -> Optional[ConflictRecord]:
        return session.exec(
            select(ConflictRecord).where(
                ConflictRecord.table_name == table_name,
                ConflictRecord.record_id == str(record_id),
                ConflictRecord.target_node == target_node,
                ConflictRecord.resolve_status == ResolveStatus.PENDING,
            )
        ).first()

    @staticmethod
    def count_open(session: Session, table_name: Optional[str] = None,
                   record_id: Optional[str] = None) -> int:
        statement = (
            select(func.count())
            .select_from(ConflictRecord)
            .where(ConflictRecord.resolve_status == ResolveStatus.PENDING)
        )
        if table_name is not None:
            statement = statement.where(ConflictRecord.table_name == table_name)
        if record_id is not None:
            statement = statement.where(ConflictRecord.record_id == str(record_id))
        return session.exec(statement).one()

    @staticmethod
    def list(
        session: Session,
        table_name: Optional[str] = None,
        status: Optional[ResolveStatus] = ResolveStatus.PENDING,
        page: int = 1,
        limit: int = 20,
    ) -> Page:
        conditions = []
        if table_name:
            conditions.append(ConflictRecord.table_name == table_name)
        if status:
            conditions.append(ConflictRecord.resolve_status == ResolveStatus(status))
        total = session.exec(
            select(func.count()).select_from(ConflictRecord).where(*conditions)
        ).one()
        items = session.exec(
            select(ConflictRecord)
            .where(*conditions)
            .order_by(ConflictRecord.detected_at.desc(), ConflictRecord.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return Page(items=list(items), total=total, page=page, limit=limit)


@dataclass
class BatchItemResult:
    conflict_id: int
    success: bool
    error: Optional[str] = None


@dataclass
class BatchResolveResult:
    success_count: int = 0
    failure_count: int = 0
    items: List[BatchItemResult] = field(default_factory=list)


class ConflictResolver:
    """Operator operations over conflicts: inspect, resolve, batch-resolve."""

    def __init__(
        self,
        pool: ReplicaPool,
        applier: RecordApplier,
        primary: Callable[[], str],
    ):
        """
        Args:
            pool: Replica pool.
            applier: Used to replay the chosen snapshot onto a node.
            primary: Returns the current primary (where conflicts live).
        """
        self.pool = pool
        self.applier = applier
        self.primary = primary

    def list_conflicts(
        self,
        table_name: Optional[str] = None,
        status: Optional[str] = ResolveStatus.PENDING.value,
        page: int = 1,
        limit: int = 20,
    ) -> Page:
        with self.pool.session(self.primary()) as session:
            return ConflictStore.list(
                session,
                table_name=table_name,
                status=ResolveStatus(status) if status else None,
                page=page,
                limit=limit,
            )

    def get_conflict(self, conflict_id: int) -> ConflictRecord:
        with self.pool.session(self.primary()) as session:
            conflict = session.get(ConflictRecord, conflict_id)
            if conflict is None:
                raise ConflictNotFoundError(f"conflict {conflict_id} not found")
            return conflict

    def resolve(
        self,
        conflict_id: int,
        action: str,
        manual_data: Optional[Dict[str, Any]] = None,
        resolved_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ConflictRecord:
        """
        Resolve one pending conflict.

        use_source replays the source snapshot onto the target node;
        use_target leaves the target untouched and writes its snapshot back
        to the source node; manual_merge writes manual_data onto the target
        node; ignore changes no data.

        Raises:
            ConflictNotFoundError: unknown id or conflict already closed.
            ValueError: bad action, or manual_merge without manual_data.
        """
        action = ResolveAction(action)
        if action is ResolveAction.MANUAL_MERGE and not manual_data:
            raise ValueError("manual_merge requires manual_data")

        with self.pool.session(self.primary()) as session:
            conflict = session.get(ConflictRecord, conflict_id)
            if conflict is None or conflict.resolve_status != ResolveStatus.PENDING:
                raise ConflictNotFoundError(
                    f"conflict {conflict_id} does not exist or is already closed"
                )

            self._replay(session, conflict, action, manual_data)
            self._close(session, conflict, action, resolved_by, notes)
            logger.info("Resolved conflict %s (%s[%s] -> %s) with %s by %s",
                        conflict.id, conflict.table_name, conflict.record_id,
                        conflict.target_node, action.value, resolved_by or "unknown")
            return conflict

    def batch_resolve(
        self,
        conflict_ids: Iterable[int],
        action: str,
        notes: Optional[str] = None,
        resolved_by: Optional[str] = None,
    ) -> BatchResolveResult:
        """Apply one action to many conflicts; a failing item never stops the batch."""
        action = ResolveAction(action)
        if action is ResolveAction.MANUAL_MERGE:
            raise ValueError("manual_merge cannot be applied in batch")

        result = BatchResolveResult()
        for conflict_id in conflict_ids:
            try:
                self.resolve(conflict_id, action, resolved_by=resolved_by, notes=notes)
                result.success_count += 1
                result.items.append(BatchItemResult(conflict_id=conflict_id, success=True))
            except Exception as exc:
                logger.error("Batch resolve failed for conflict %s: %s", conflict_id, exc)
                result.failure_count += 1
                result.items.append(
                    BatchItemResult(conflict_id=conflict_id, success=False, error=str(exc))
                )
        logger.info("Batch resolve (%s): %d succeeded, %d failed",
                    action.value, result.success_count, result.failure_count)
        return result

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _replay(
        self,
        session: Session,
        conflict: ConflictRecord,
        action: ResolveAction,
        manual_data: Optional[Dict[str, Any]],
    ) -> None:
        if action is ResolveAction.USE_SOURCE:
            data, node = conflict.source_data, conflict.target_node
        elif action is ResolveAction.MANUAL_MERGE:
            data, node = manual_data, conflict.target_node
        elif action is ResolveAction.USE_TARGET and conflict.target_data:
            self._adopt_target(session, conflict)
            return
        else:
            return
        self.applier.write_snapshot(conflict.table_name, conflict.record_id, data, node)

    def _adopt_target(self, session: Session, conflict: ConflictRecord) -> None:
        """
        Target stays as it is; the source takes its data as a fresh write.

        The write is stamped as a new version from the source node and queued
        as an UPDATE, so the next tick carries it to every other node.
        """
        versions = [
            as_int(conflict.target_data.get(VERSION_FIELD)),
            as_int(conflict.source_data.get(VERSION_FIELD)),
        ]
        data = {
            **conflict.target_data,
            VERSION_FIELD: max(v for v in versions + [0] if v is not None) + 1,
            MODIFIED_FIELD: datetime.utcnow().replace(microsecond=0),
            ORIGIN_FIELD: conflict.source_node,
        }
        self.applier.write_snapshot(conflict.table_name, conflict.record_id, data, conflict.source_node)
        ChangeLogStore.append(
            session, conflict.table_name, conflict.record_id, "UPDATE", data, conflict.source_node
        )

    @staticmethod
    def _close(
        session: Session,
        conflict: ConflictRecord,
        action: ResolveAction,
        resolved_by: Optional[str],
        notes: Optional[str],
    ) -> None:
        conflict.resolve_status = (
            ResolveStatus.IGNORED if action is ResolveAction.IGNORE else ResolveStatus.RESOLVED
        )
        conflict.resolve_action = action
        conflict.resolved_by = resolved_by
        conflict.resolved_at = datetime.utcnow()
        if notes:
            conflict.notes = f"{conflict.notes}\n--- resolution ---\n{notes}" if conflict.notes else notes
        session.add(conflict)

        if action in (ResolveAction.USE_SOURCE, ResolveAction.MANUAL_MERGE) and conflict.change_log_id:
            entry = session.get(ChangeLogEntry, conflict.change_log_id)
            if entry is not None:
                entry.synced_nodes = sorted(set(entry.synced_nodes or []) | {conflict.target_node})
                session.add(entry)
        session.commit()
        session.refresh(conflict)

        if ConflictStore.count_open(session, conflict.table_name, conflict.record_id) == 0:
            ChangeLogStore.resolve_for_record(
                session,
                conflict.table_name,
                conflict.record_id,
                f"conflict resolved: {_ACTION_LABELS[action]}",
            )
            session.refresh(conflict)
