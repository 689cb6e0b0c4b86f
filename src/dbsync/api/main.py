"""FastAPI application factory."""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dbsync.api.routes import primary as primary_routes, sync as sync_routes
from dbsync.replication.conflicts import ConflictNotFoundError
from dbsync.replication.primary import SwitchInProgressError, SwitchPreconditionError


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    app = FastAPI(
        title="dbsync API",
        description="Replication status, conflict resolution and primary failover",
        version="0.1.0",
    )

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(primary_routes.router, prefix="/primary", tags=["primary"])

    @app.exception_handler(ConflictNotFoundError)
    async def conflict_not_found(request: Request, exc: ConflictNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(SwitchPreconditionError)
    async def switch_refused(request: Request, exc: SwitchPreconditionError):
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "precondition": exc.precondition},
        )

    @app.exception_handler(SwitchInProgressError)
    async def switch_in_progress(request: Request, exc: SwitchInProgressError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def bad_request(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    return app


# Module-level app instance for uvicorn
app = create_app()
