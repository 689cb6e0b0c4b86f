"""Primary designation state, persisted as JSON so it survives restarts."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SwitchStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class DesignationState(str, Enum):
    STABLE = "stable"
    SWITCHING = "switching"
    FAILED = "failed"


class SwitchRecord(BaseModel):
    """One attempted change of primary, successful or not."""

    id: str
    from_node: str
    to_node: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    reason: str = "manual switch"
    operator: str = "system"
    force: bool = False
    skip_consistency_check: bool = False
    consistency_report: Optional[Dict[str, Any]] = None
    status: SwitchStatus = SwitchStatus.IN_PROGRESS
    error: Optional[str] = None
    finished_at: Optional[datetime] = None


class PrimaryDesignation(BaseModel):
    current_primary: str
    last_switch_time: Optional[datetime] = None
    history: List[SwitchRecord] = Field(default_factory=list)
