"""Change log model: one row per captured mutation awaiting replication."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class Operation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SyncStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    CONFLICT_PENDING = "conflict_pending"  # waits for an operator, never retried
    RESOLVED = "resolved"  # closed by conflict resolution


# Statuses the worker is allowed to pick up.
RETRYABLE_STATUSES = (SyncStatus.PENDING, SyncStatus.FAILED)

# Statuses retention cleanup may delete.
TERMINAL_STATUSES = (SyncStatus.SUCCESS, SyncStatus.FAILED, SyncStatus.RESOLVED)


class ChangeLogEntry(SQLModel, table=True):
    """A captured INSERT/UPDATE/DELETE on a tracked table."""

    __tablename__ = "sync_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    table_name: str = Field(index=True)
    record_id: str = Field(index=True)
    operation: Operation
    change_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    source_node: str
    sync_status: SyncStatus = Field(default=SyncStatus.PENDING, index=True)
    retry_count: int = 0
    last_retry_time: Optional[datetime] = None
    error_message: Optional[str] = None
    synced_nodes: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
