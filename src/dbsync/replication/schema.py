"""
Schema registry for replicated tables.

Maps each tracked table name to its primary key, the set of fields that may
be replicated, required-field defaults, and which fields hold dates or
timestamps. Field lists and column types come from the SQLModel table
declarations in dbsync.models.catalog so the registry cannot drift from the
schema that nodes are bootstrapped with.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple, Type

from sqlalchemy import Date, DateTime, Table
from sqlmodel import SQLModel

from dbsync.models.catalog import Book, BorrowRecord, Category, ReaderProfile, SystemUser

logger = logging.getLogger(__name__)

# Metadata keys added by capture triggers; never business data.
SYSTEM_FIELDS = frozenset({"master_db", "timestamp", "primary_key"})

# Secrets that must never leave the originating node.
EXCLUDED_FIELDS = frozenset({"password_enc"})

# Ignored when deciding whether two rows hold the same data.
TIMESTAMP_FIELDS = frozenset({"created_at", "updated_at", "created_time", "last_updated_time"})
BOOKKEEPING_FIELDS = frozenset({"sync_version", "sync_status", "last_sync_time"})

VERSION_FIELD = "sync_version"
MODIFIED_FIELD = "last_updated_time"
ORIGIN_FIELD = "db_source"
DELETED_FIELD = "is_deleted"

_NULL_IDS = {"", "null", "none", "undefined"}

# A default is computed from (record_id, data collected so far).
DefaultFn = Callable[[Any, Dict[str, Any]], Any]


class InvalidChangeError(ValueError):
    """A change-log payload that can never be applied (validation failure)."""


def _const(value: Any) -> DefaultFn:
    return lambda record_id, data: value


def _register_date(record_id: Any, data: Dict[str, Any]) -> date:
    created = data.get("created_time")
    if isinstance(created, datetime):
        return created.date()
    return datetime.utcnow().date()


def _expire_date(record_id: Any, data: Dict[str, Any]) -> date:
    registered = data.get("register_date") or _register_date(record_id, data)
    return registered + timedelta(days=365)


@dataclass(frozen=True)
class TableSchema:
    name: str
    model: Type[SQLModel]
    primary_key: str
    defaults: Dict[str, DefaultFn] = field(default_factory=dict)
    required: Tuple[str, ...] = ()

    @property
    def table(self) -> Table:
        return self.model.__table__

    @property
    def fields(self) -> Tuple[str, ...]:
        return tuple(self.table.columns.keys())

    @property
    def date_fields(self) -> FrozenSet[str]:
        return frozenset(
            c.name for c in self.table.columns
            if isinstance(c.type, Date) and not isinstance(c.type, DateTime)
        )

    @property
    def timestamp_fields(self) -> FrozenSet[str]:
        return frozenset(c.name for c in self.table.columns if isinstance(c.type, DateTime))

    def coerce_key(self, record_id: Any) -> Any:
        """Convert a change-log record id to the primary key's Python type."""
        if record_id is None or str(record_id).strip().lower() in _NULL_IDS:
            raise InvalidChangeError(f"{self.name}: record id {record_id!r} is not usable")
        try:
            python_type = self.table.columns[self.primary_key].type.python_type
        except NotImplementedError:
            return record_id
        try:
            return python_type(record_id)
        except (TypeError, ValueError):
            raise InvalidChangeError(
                f"{self.name}: record id {record_id!r} is not a valid {python_type.__name__}"
            )

    def reduce(self, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Keep only replicable fields, normalizing dates and timestamps."""
        if not isinstance(data, dict):
            return {}
        allowed = set(self.fields) - SYSTEM_FIELDS - EXCLUDED_FIELDS
        return {
            key: self.normalize(key, value)
            for key, value in data.items()
            if key in allowed
        }

    def normalize(self, field_name: str, value: Any) -> Any:
        if value is None:
            return None
        if field_name in self.date_fields:
            return _to_date(field_name, value)
        if field_name in self.timestamp_fields:
            return _to_datetime(field_name, value)
        return value

    def backfill(self, record_id: Any, data: Dict[str, Any]) -> Dict[str, Any]:
        """Fill absent required fields with deterministic defaults."""
        filled = dict(data)
        for name, default in self.defaults.items():
            if filled.get(name) in (None, ""):
                filled[name] = default(record_id, filled)
        return filled

    def missing_required(self, data: Dict[str, Any]) -> List[str]:
        return [name for name in self.required if data.get(name) in (None, "")]

    def core_fields(self, data: Dict[str, Any]) -> List[str]:
        """Business fields used for idempotency and conflict comparison."""
        ignored = TIMESTAMP_FIELDS | BOOKKEEPING_FIELDS | EXCLUDED_FIELDS | {ORIGIN_FIELD}
        return [k for k in data if k not in ignored]


def _to_date(field_name: str, value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return _parse_datetime(value).date()
        except ValueError:
            logger.warning("Unparseable date %s=%r kept as-is", field_name, value)
    return value


def _to_datetime(field_name: str, value: Any) -> Any:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = _parse_datetime(value)
        except ValueError:
            logger.warning("Unparseable timestamp %s=%r kept as-is", field_name, value)
            return value
    else:
        return value
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed.replace(microsecond=0)


def _parse_datetime(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def comparable(value: Any) -> Any:
    """Canonical form for equality checks across drivers and JSON snapshots."""
    if isinstance(value, datetime):
        return value.replace(microsecond=0).isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bool):
        return int(value)
    return value


TABLES: Dict[str, TableSchema] = {
    schema.name: schema
    for schema in (
        TableSchema(
            name="system_users",
            model=SystemUser,
            primary_key="user_id",
            defaults={
                # Locked-account marker: matches no password hash.
                "password": _const("!"),
                "status": _const("active"),
                "role": _const("reader"),
            },
            required=("username",),
        ),
        TableSchema(
            name="categories",
            model=Category,
            primary_key="category_id",
            required=("category_name",),
        ),
        TableSchema(
            name="reader_profiles",
            model=ReaderProfile,
            primary_key="profile_id",
            defaults={
                "register_date": _register_date,
                "expire_date": _expire_date,
                "membership_type": _const("standard"),
                "max_borrow": _const(5),
                "card_number": lambda record_id, data: f"TEMP{record_id}",
            },
            required=("user_id",),
        ),
        TableSchema(
            name="books",
            model=Book,
            primary_key="book_id",
            defaults={
                "isbn": lambda record_id, data: f"AUTO{str(record_id).zfill(14)}",
                "status": _const("available"),
                "category_id": _const(1),
            },
            required=("title",),
        ),
        TableSchema(
            name="borrow_records",
            model=BorrowRecord,
            primary_key="record_id",
            required=("reader_id", "book_id", "borrow_date", "due_date"),
        ),
    )
}


def get_schema(table_name: str) -> TableSchema:
    try:
        return TABLES[table_name]
    except KeyError:
        raise InvalidChangeError(f"table {table_name!r} is not replicated")


def tracked_tables() -> Iterable[str]:
    return TABLES.keys()
