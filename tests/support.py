"""Helpers shared by unit and integration tests."""
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import insert

from dbsync.db.engine import ReplicaPool
from dbsync.replication.applier import RecordApplier
from dbsync.replication.change_log import ChangeLogStore
from dbsync.replication.schema import get_schema


def seed_row(pool: ReplicaPool, node: str, model, **values: Any) -> None:
    """Insert a row directly on one node (no change log)."""
    with pool.engine(node).begin() as conn:
        conn.execute(insert(model.__table__).values(**values))


def book(book_id: int = 7, **overrides: Any) -> Dict[str, Any]:
    row = {
        "book_id": book_id,
        "title": "Dune",
        "author": "Frank Herbert",
        "isbn": "9780441013593",
        "status": "available",
        "category_id": 1,
        "sync_version": 1,
        "db_source": "n1",
        "created_time": datetime(2024, 1, 1, 9, 0, 0),
        "last_updated_time": datetime(2024, 1, 1, 9, 0, 0),
    }
    row.update(overrides)
    return row


def append_change(pool: ReplicaPool, table_name: str, record_id: Any, operation: str,
                  change_data: Dict[str, Any], source_node: str = "n1", primary: str = "n1") -> int:
    with pool.session(primary) as session:
        return ChangeLogStore.append(session, table_name, record_id, operation, change_data, source_node)


def fetch(pool: ReplicaPool, node: str, table_name: str, record_id: Any):
    schema = get_schema(table_name)
    return RecordApplier(pool).fetch_row(schema, schema.coerce_key(record_id), node)
