"""Primary designation routes: health, consistency, switch, rollback."""
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from dbsync.runtime import Runtime, get_runtime

router = APIRouter()


class SwitchRequest(BaseModel):
    target: str
    force: bool = False
    skip_consistency_check: bool = False
    reason: str = "manual switch"
    operator: str = "system"


class RollbackRequest(BaseModel):
    operator: str = "system"


class ConsistencyRequest(BaseModel):
    source: Optional[str] = None  # defaults to the current primary
    target: str


class PreCheckRequest(BaseModel):
    target: str


@router.get("/overview")
async def overview(runtime: Runtime = Depends(get_runtime)):
    return await runtime.designation.overview()


@router.get("/current")
def current(runtime: Runtime = Depends(get_runtime)):
    return runtime.designation.current()


@router.get("/health")
async def health(node: Optional[str] = None, runtime: Runtime = Depends(get_runtime)):
    return await runtime.designation.health_check(node)


@router.post("/validate-consistency")
async def validate_consistency(request: ConsistencyRequest, runtime: Runtime = Depends(get_runtime)):
    source = request.source or runtime.designation.current_primary
    return await runtime.designation.consistency_check(source, request.target)


@router.post("/trigger-sync")
async def trigger_sync(runtime: Runtime = Depends(get_runtime)):
    report = await runtime.designation.trigger_sync()
    if report is None:
        raise HTTPException(status_code=409, detail="A sync tick is already running")
    return asdict(report)


@router.post("/pre-check")
async def pre_check(request: PreCheckRequest, runtime: Runtime = Depends(get_runtime)):
    return await runtime.designation.pre_check(request.target)


@router.post("/switch")
async def switch(request: SwitchRequest, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.designation.switch(
        request.target,
        force=request.force,
        skip_consistency_check=request.skip_consistency_check,
        reason=request.reason,
        operator=request.operator,
    )
    return asdict(result)


@router.post("/rollback")
async def rollback(request: RollbackRequest, runtime: Runtime = Depends(get_runtime)):
    return asdict(await runtime.designation.rollback(operator=request.operator))


@router.get("/history")
def history(limit: int = 10, runtime: Runtime = Depends(get_runtime)):
    return runtime.designation.history(limit)
