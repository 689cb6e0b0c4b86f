"""
RecordApplier: turns one change-log entry into a data-safe write on one node.

Flow for a single entry:
  1. prepare(): resolve the table schema and primary key, reduce change_data
     to replicable fields, merge it over the current full row fetched from
     the source node, backfill required fields. Done once per entry.
  2. apply(): per target node, inside one transaction with change capture
     suppressed:
       - fetch the existing row by primary key (soft-deleted rows included)
       - identical on core fields -> no-op
       - version / timestamp / origin checks -> structured ConflictInfo
       - otherwise INSERT the row, or UPDATE only the changed columns
     DELETE is always a soft delete.

Conflicts are returned as data, never raised. Connectivity and SQL errors
propagate so the worker can count the target as failed and retry later.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic_core import to_jsonable_python
from sqlalchemy import insert, select, update
from sqlmodel import Session

from dbsync.db.engine import ReplicaPool, suppressed_capture
from dbsync.models.change_log import ChangeLogEntry, Operation
from dbsync.models.conflict import ConflictType
from dbsync.replication.schema import (
    DELETED_FIELD,
    MODIFIED_FIELD,
    ORIGIN_FIELD,
    VERSION_FIELD,
    InvalidChangeError,
    TableSchema,
    comparable,
    get_schema,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeRequest:
    """Detached copy of a change-log entry, safe to hand to worker threads."""

    id: Optional[int]
    table_name: str
    record_id: str
    operation: Operation
    change_data: Dict[str, Any]
    source_node: str

    @classmethod
    def from_entry(cls, entry: ChangeLogEntry) -> "ChangeRequest":
        return cls(
            id=entry.id,
            table_name=entry.table_name,
            record_id=entry.record_id,
            operation=entry.operation,
            change_data=dict(entry.change_data or {}),
            source_node=entry.source_node,
        )


@dataclass
class PreparedChange:
    request: ChangeRequest
    schema: TableSchema
    key: Any
    data: Dict[str, Any]
    skip: bool = False  # nothing usable to replicate

    @property
    def operation(self) -> Operation:
        return Operation(self.request.operation)


@dataclass
class FieldDiff:
    field: str
    target_value: Any
    incoming_value: Any


@dataclass
class ConflictInfo:
    type: ConflictType
    fields: List[FieldDiff] = field(default_factory=list)
    target_version: Optional[int] = None
    incoming_version: Optional[int] = None
    target_time: Optional[datetime] = None
    incoming_time: Optional[datetime] = None

    def describe(self) -> str:
        lines = [f"conflict type: {self.type.value}"]
        if self.fields:
            lines.append("conflicting fields:")
            lines += [
                f"  - {d.field}: target={d.target_value!r} incoming={d.incoming_value!r}"
                for d in self.fields
            ]
        if self.target_version is not None or self.incoming_version is not None:
            lines.append(f"version: target={self.target_version} incoming={self.incoming_version}")
        return "\n".join(lines)


class ApplyAction(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    DELETED = "deleted"
    NOOP = "noop"
    CONFLICT = "conflict"


@dataclass
class ApplyResult:
    node: str
    action: Optional[ApplyAction] = None
    conflict: Optional[ConflictInfo] = None
    target_data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    invalid: bool = False  # payload can never be applied

    @property
    def ok(self) -> bool:
        return self.error is None and self.action is not ApplyAction.CONFLICT


def jsonable(row: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Row dict with dates rendered as ISO strings, for JSON columns."""
    return to_jsonable_python(row or {})


def as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class RecordApplier:
    """Applies prepared changes to replica nodes."""

    def __init__(self, pool: ReplicaPool):
        self.pool = pool

    # ─── Preparation (once per entry) ─────────────────────────────────────────

    def prepare(self, request: ChangeRequest) -> PreparedChange:
        """
        Build the complete row to replicate.

        Raises:
            InvalidChangeError: unknown table/operation, unusable record id.
        """
        schema = get_schema(request.table_name)
        try:
            operation = Operation(request.operation)
        except ValueError:
            raise InvalidChangeError(f"unsupported operation {request.operation!r}")
        key = schema.coerce_key(request.record_id)

        if operation is Operation.DELETE:
            return PreparedChange(request, schema, key, {schema.primary_key: key})

        reduced = schema.reduce(request.change_data)
        source_row = None
        try:
            source_row = self.fetch_row(schema, key, request.source_node)
        except Exception as exc:
            logger.warning(
                "Source row %s[%s] unavailable on %s, using change data: %s",
                schema.name, key, request.source_node, exc,
            )

        if source_row:
            data = schema.reduce({**source_row, **reduced})
        elif reduced:
            data = reduced
        else:
            logger.info("No replicable data for %s[%s]; nothing to apply", schema.name, key)
            return PreparedChange(request, schema, key, {}, skip=True)

        data[schema.primary_key] = key
        return PreparedChange(request, schema, key, schema.backfill(key, data))

    def fetch_row(self, schema: TableSchema, key: Any, node: str) -> Optional[Dict[str, Any]]:
        with self.pool.session(node) as session:
            return self._fetch(session, schema, key)

    # ─── Apply (per target) ───────────────────────────────────────────────────

    def apply(
        self,
        prepared: PreparedChange,
        target: str,
        *,
        suppress_capture: bool = True,
    ) -> ApplyResult:
        """
        Write one prepared change to one target node.

        Args:
            prepared: Output of prepare().
            target: Node name.
            suppress_capture: Keep the target's change capture from logging
                this replayed write.

        Returns:
            ApplyResult with the action taken, or the conflict detected.
        """
        if prepared.skip:
            return ApplyResult(node=target, action=ApplyAction.NOOP)

        with self.pool.session(target) as session:
            with suppressed_capture(session, suppress_capture):
                existing = self._fetch(session, prepared.schema, prepared.key)
                if prepared.operation is Operation.DELETE:
                    result = self._soft_delete(session, prepared, target, existing)
                else:
                    result = self._upsert(session, prepared, target, existing)
            session.commit()
        return result

    def write_snapshot(
        self,
        table_name: str,
        record_id: Any,
        data: Dict[str, Any],
        node: str,
        *,
        suppress_capture: bool = True,
    ) -> ApplyAction:
        """Force a row onto a node, skipping conflict checks (conflict resolution)."""
        schema = get_schema(table_name)
        key = schema.coerce_key(record_id)
        row = schema.reduce(data)
        row[schema.primary_key] = key

        with self.pool.session(node) as session:
            with suppressed_capture(session, suppress_capture):
                existing = self._fetch(session, schema, key)
                if existing is None:
                    action = self._insert(session, schema, schema.backfill(key, row))
                else:
                    action = self._update_changed(session, schema, key, existing, row)
            session.commit()
        logger.info("Wrote resolved snapshot %s[%s] -> %s (%s)", table_name, key, node, action.value)
        return action

    # ─── Comparison ───────────────────────────────────────────────────────────

    @staticmethod
    def needs_sync(schema: TableSchema, existing: Dict[str, Any], incoming: Dict[str, Any]) -> bool:
        """True when any core field of the incoming row differs from the target."""
        return any(
            comparable(incoming[f]) != comparable(existing.get(f))
            for f in schema.core_fields(incoming)
        )

    @staticmethod
    def detect_conflict(
        schema: TableSchema,
        existing: Dict[str, Any],
        incoming: Dict[str, Any],
    ) -> Optional[ConflictInfo]:
        """Classify a divergence between target and incoming rows, if any."""
        diffs = [
            FieldDiff(f, comparable(existing.get(f)), comparable(incoming[f]))
            for f in schema.core_fields(incoming)
            if existing.get(f) is not None
            and comparable(existing.get(f)) != comparable(incoming[f])
        ]
        target_version = as_int(existing.get(VERSION_FIELD))
        incoming_version = as_int(incoming.get(VERSION_FIELD))
        target_time = existing.get(MODIFIED_FIELD)
        incoming_time = incoming.get(MODIFIED_FIELD)

        conflict_type = None
        if (
            target_version is not None
            and incoming_version is not None
            and target_version > incoming_version
        ):
            conflict_type = ConflictType.VERSION
        elif (
            isinstance(target_time, datetime)
            and isinstance(incoming_time, datetime)
            and target_time.replace(microsecond=0) > incoming_time
        ):
            conflict_type = ConflictType.CONCURRENT
        elif (
            diffs
            and existing.get(ORIGIN_FIELD)
            and incoming.get(ORIGIN_FIELD)
            and existing[ORIGIN_FIELD] != incoming[ORIGIN_FIELD]
        ):
            conflict_type = ConflictType.DATA_MISMATCH

        if conflict_type is None:
            return None
        return ConflictInfo(
            type=conflict_type,
            fields=diffs,
            target_version=target_version,
            incoming_version=incoming_version,
            target_time=target_time if isinstance(target_time, datetime) else None,
            incoming_time=incoming_time if isinstance(incoming_time, datetime) else None,
        )

    # ─── Internal helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _fetch(session: Session, schema: TableSchema, key: Any) -> Optional[Dict[str, Any]]:
        # No is_deleted filter: soft-deleted rows still take part in checks.
        table = schema.table
        row = session.connection().execute(
            select(table).where(table.c[schema.primary_key] == key)
        ).first()
        return dict(row._mapping) if row is not None else None

    def _upsert(
        self,
        session: Session,
        prepared: PreparedChange,
        target: str,
        existing: Optional[Dict[str, Any]],
    ) -> ApplyResult:
        schema, key, data = prepared.schema, prepared.key, prepared.data

        if existing is None:
            missing = schema.missing_required(data)
            if missing:
                raise InvalidChangeError(
                    f"{schema.name}[{key}] cannot be inserted, missing {', '.join(missing)}"
                )
            action = self._insert(session, schema, data)
            logger.debug("Inserted %s[%s] -> %s", schema.name, key, target)
            return ApplyResult(node=target, action=action)

        if not self.needs_sync(schema, existing, data):
            logger.debug("%s[%s] already identical on %s", schema.name, key, target)
            return ApplyResult(node=target, action=ApplyAction.NOOP)

        conflict = self.detect_conflict(schema, existing, data)
        if conflict is not None:
            logger.warning(
                "Conflict on %s[%s] -> %s: %s", schema.name, key, target, conflict.type.value
            )
            return ApplyResult(
                node=target,
                action=ApplyAction.CONFLICT,
                conflict=conflict,
                target_data=jsonable(existing),
            )

        action = self._update_changed(session, schema, key, existing, data)
        logger.debug("Updated %s[%s] -> %s", schema.name, key, target)
        return ApplyResult(node=target, action=action)

    @staticmethod
    def _insert(session: Session, schema: TableSchema, data: Dict[str, Any]) -> ApplyAction:
        session.connection().execute(insert(schema.table).values(**data))
        return ApplyAction.INSERTED

    @staticmethod
    def _update_changed(
        session: Session,
        schema: TableSchema,
        key: Any,
        existing: Dict[str, Any],
        data: Dict[str, Any],
    ) -> ApplyAction:
        changed = {
            k: v for k, v in data.items()
            if k != schema.primary_key and comparable(existing.get(k)) != comparable(v)
        }
        if not changed:
            return ApplyAction.NOOP
        table = schema.table
        session.connection().execute(
            update(table).where(table.c[schema.primary_key] == key).values(**changed)
        )
        return ApplyAction.UPDATED

    @staticmethod
    def _soft_delete(
        session: Session,
        prepared: PreparedChange,
        target: str,
        existing: Optional[Dict[str, Any]],
    ) -> ApplyResult:
        schema, key = prepared.schema, prepared.key
        if existing is None:
            logger.warning("Delete skipped, %s[%s] not found on %s", schema.name, key, target)
            return ApplyResult(node=target, action=ApplyAction.NOOP)
        if existing.get(DELETED_FIELD):
            return ApplyResult(node=target, action=ApplyAction.NOOP)
        table = schema.table
        session.connection().execute(
            update(table)
            .where(table.c[schema.primary_key] == key)
            .values({DELETED_FIELD: 1})
        )
        logger.debug("Soft-deleted %s[%s] -> %s", schema.name, key, target)
        return ApplyResult(node=target, action=ApplyAction.DELETED)
