"""Conflict records and their resolution lifecycle."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class ConflictType(str, Enum):
    VERSION = "version"  # target version counter is ahead
    CONCURRENT = "concurrent"  # target modified later than the incoming row
    DATA_MISMATCH = "data_mismatch"  # core fields differ and origins differ


class ResolveStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class ResolveAction(str, Enum):
    USE_SOURCE = "use_source"
    USE_TARGET = "use_target"
    MANUAL_MERGE = "manual_merge"
    IGNORE = "ignore"


class ConflictRecord(SQLModel, table=True):
    """
    A detected divergence between the replicated row and a target node.

    At most one PENDING record exists per (table_name, record_id, target_node);
    re-detections refresh the open record.
    """

    __tablename__ = "conflict_records"

    id: Optional[int] = Field(default=None, primary_key=True)
    change_log_id: Optional[int] = Field(default=None, index=True)
    table_name: str = Field(index=True)
    record_id: str = Field(index=True)
    conflict_type: ConflictType
    source_node: str
    source_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    target_node: str
    target_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    detected_at: datetime = Field(default_factory=datetime.utcnow)
    resolve_status: ResolveStatus = Field(default=ResolveStatus.PENDING, index=True)
    resolve_action: Optional[ResolveAction] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    notes: Optional[str] = None
