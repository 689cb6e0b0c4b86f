"""
Schema migrations for replica nodes.

Tracked tables may predate replication (created by the CRUD application
before sync was enabled). Each migration is idempotent: replication columns
are only added where absent.

Called from ReplicaPool.create_all() after SQLModel.metadata.create_all()
so fresh nodes and existing databases are both handled.
"""
from sqlalchemy import inspect, text

from dbsync.replication.schema import TABLES

# Column name -> DDL fragment accepted by SQLite and MySQL-family nodes.
REPLICATION_COLUMNS = {
    "is_deleted": "INTEGER NOT NULL DEFAULT 0",
    "created_time": "DATETIME",
    "last_updated_time": "DATETIME",
    "sync_version": "INTEGER NOT NULL DEFAULT 1",
    "db_source": "VARCHAR(50)",
}


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times: checks column existence before altering.
    Tables missing entirely are left to create_all().

    Args:
        engine: SQLAlchemy engine for one replica node.
    """
    existing_tables = set(inspect(engine).get_table_names())
    with engine.connect() as conn:
        for table in TABLES:
            if table not in existing_tables:
                continue
            for column, col_type in REPLICATION_COLUMNS.items():
                _add_column_if_missing(conn, table, column, col_type)
        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name.
        column: Column name to add.
        col_type: Column type and constraints, e.g. "INTEGER NOT NULL DEFAULT 0".
    """
    existing_columns = {c["name"] for c in inspect(conn).get_columns(table)}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
