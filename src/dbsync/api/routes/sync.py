"""Replication routes: status, change log, conflicts, config."""
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from dbsync.models.change_log import Operation, SyncStatus
from dbsync.models.conflict import ConflictRecord, ResolveAction
from dbsync.replication.change_log import ChangeLogStore, LogFilter, Page
from dbsync.runtime import Runtime, get_runtime

router = APIRouter()


class ResolveRequest(BaseModel):
    action: ResolveAction
    manual_data: Optional[Dict[str, Any]] = None
    resolved_by: Optional[str] = None
    notes: Optional[str] = None


class BatchResolveRequest(BaseModel):
    conflict_ids: List[int] = Field(min_length=1)
    action: ResolveAction
    resolved_by: Optional[str] = None
    notes: Optional[str] = None


class ConfigUpdate(BaseModel):
    enabled: Optional[bool] = None
    interval_seconds: Optional[int] = None
    batch_size: Optional[int] = None
    max_retries: Optional[int] = None
    soft_deadline_seconds: Optional[float] = None
    retry_backoff_seconds: Optional[int] = None


def _page(page: Page) -> Dict[str, Any]:
    return {
        "items": [item.model_dump() for item in page.items],
        "total": page.total,
        "page": page.page,
        "limit": page.limit,
    }


@router.get("/status")
def sync_status(runtime: Runtime = Depends(get_runtime)):
    """Queue counts, open conflicts, node connectivity and the last tick."""
    return runtime.worker.status()


@router.get("/stats")
def sync_stats(days: int = 7, runtime: Runtime = Depends(get_runtime)):
    return {"days": days, "stats": runtime.worker.stats(days=days)}


@router.get("/logs")
def list_logs(
    table_name: Optional[str] = None,
    operation: Optional[Operation] = None,
    status: Optional[SyncStatus] = None,
    source_node: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = 1,
    limit: int = 20,
    runtime: Runtime = Depends(get_runtime),
):
    """Change-log entries, newest first."""
    filters = LogFilter(table_name, operation, status, source_node, start, end)
    with runtime.pool.session(runtime.designation.current_primary) as session:
        return _page(ChangeLogStore.list_logs(session, filters, page=page, limit=limit))


@router.delete("/logs/cleanup")
def cleanup_logs(
    days: int = 30,
    status: Literal["success", "failed", "resolved", "all"] = "all",
    runtime: Runtime = Depends(get_runtime),
):
    with runtime.pool.session(runtime.designation.current_primary) as session:
        deleted = ChangeLogStore.cleanup(session, days=days, status=status)
    return {"deleted": deleted, "days": days, "status": status}


@router.get("/conflicts")
def list_conflicts(
    table_name: Optional[str] = None,
    status: Optional[str] = "pending",
    page: int = 1,
    limit: int = 20,
    runtime: Runtime = Depends(get_runtime),
):
    """Conflicts, newest first. status=all lists every status."""
    status = None if status == "all" else status
    return _page(runtime.resolver.list_conflicts(table_name, status, page=page, limit=limit))


@router.get("/conflicts/{conflict_id}", response_model=ConflictRecord)
def get_conflict(conflict_id: int, runtime: Runtime = Depends(get_runtime)):
    return runtime.resolver.get_conflict(conflict_id)


@router.post("/conflicts/batch-resolve")
def batch_resolve(request: BatchResolveRequest, runtime: Runtime = Depends(get_runtime)):
    result = runtime.resolver.batch_resolve(
        request.conflict_ids, request.action, notes=request.notes, resolved_by=request.resolved_by
    )
    return asdict(result)


@router.post("/conflicts/{conflict_id}/resolve", response_model=ConflictRecord)
def resolve_conflict(
    conflict_id: int,
    request: ResolveRequest,
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.resolver.resolve(
        conflict_id,
        request.action,
        manual_data=request.manual_data,
        resolved_by=request.resolved_by,
        notes=request.notes,
    )


@router.post("/trigger")
async def trigger_sync(runtime: Runtime = Depends(get_runtime)):
    """Run one tick now and return its report."""
    report = await runtime.worker.run_once()
    if report is None:
        raise HTTPException(status_code=409, detail="A sync tick is already running")
    return asdict(report)


@router.get("/config")
def get_config(runtime: Runtime = Depends(get_runtime)):
    return runtime.worker.get_config()


@router.put("/config")
def update_config(update: ConfigUpdate, runtime: Runtime = Depends(get_runtime)):
    return runtime.worker.update_config(**update.model_dump(exclude_none=True))
