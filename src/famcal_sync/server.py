import asyncio
import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel

from .config import Settings
from .errors import AlreadyResolvedError, ConflictNotFoundError, InvalidEventError
from .models import (
    ConflictResolution, EventFields, SyncConflict, SyncDirection, SyncResult, SyncStatus
)
from .scheduler import SyncScheduler
from .sync_engine import SyncOrchestrator

logger = logging.getLogger(__name__)


class ResolveRequest(BaseModel):
    resolution: ConflictResolution
    merged: Optional[EventFields] = None


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[SyncOrchestrator] = None,
    scheduler: Optional[SyncScheduler] = None,
    run_scheduler: bool = True
) -> FastAPI:
    """Build the HTTP API.

    Args:
        settings: Application settings (loaded from the environment if omitted)
        orchestrator: Orchestrator to serve (built from settings if omitted)
        scheduler: Scheduler to serve (built around the orchestrator if omitted)
        run_scheduler: Whether to tick in the background while the app runs
    """
    app = FastAPI(title="FamCal Sync Server", version="1.0")

    @app.on_event("startup")
    async def on_startup():
        app.state.settings = settings or Settings()
        app.state.orchestrator = orchestrator or SyncOrchestrator.from_settings(app.state.settings)
        app.state.scheduler = scheduler or SyncScheduler.from_settings(app.state.orchestrator)
        if run_scheduler:
            app.state.scheduler.start()

    @app.on_event("shutdown")
    async def on_shutdown():
        sched: SyncScheduler = app.state.scheduler
        try:
            await asyncio.wait_for(sched.stop(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning("Scheduler did not stop within 5s")
        await app.state.orchestrator.close()

    def _scheduler(request: Request) -> SyncScheduler:
        return request.app.state.scheduler

    def _orchestrator(request: Request) -> SyncOrchestrator:
        return request.app.state.orchestrator

    @app.get("/health")
    async def health(request: Request):
        sched = _scheduler(request)
        return {
            "ok": True,
            "app": request.app.state.settings.app_name,
            "interval_seconds": sched.poll_interval_seconds,
        }

    @app.post("/users/{user_id}/sync", response_model=SyncResult)
    async def trigger_sync(user_id: str, request: Request, direction: Optional[SyncDirection] = None):
        result = await _scheduler(request).perform_sync(user_id, direction)
        if result is None:
            raise HTTPException(status_code=409, detail="sync already in progress")
        return result

    @app.get("/users/{user_id}/status", response_model=SyncStatus)
    async def sync_status(user_id: str, request: Request):
        return _scheduler(request).status(user_id)

    @app.get("/users/{user_id}/conflicts", response_model=List[SyncConflict])
    async def pending_conflicts(user_id: str, request: Request):
        return _orchestrator(request).get_pending_conflicts(user_id)

    @app.post("/users/{user_id}/conflicts/{conflict_id}/resolve")
    async def resolve_conflict(user_id: str, conflict_id: UUID, body: ResolveRequest, request: Request):
        try:
            applied = await _scheduler(request).resolve_conflict(
                user_id, conflict_id, body.resolution, merged=body.merged
            )
        except ConflictNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except AlreadyResolvedError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except InvalidEventError as e:
            raise HTTPException(status_code=400, detail=str(e))

        if applied is None:
            raise HTTPException(status_code=409, detail="sync already in progress")
        if not applied:
            raise HTTPException(status_code=502, detail="failed to apply resolution; conflict left pending")
        return {"resolved": True, "resolution": body.resolution.value}

    @app.patch("/users/{user_id}/preferences")
    async def update_preferences(user_id: str, body: Dict[str, Any], request: Request):
        orch = _orchestrator(request)
        if not orch.update_sync_preferences(user_id, body):
            raise HTTPException(status_code=400, detail="invalid preferences")
        return orch.get_sync_preferences(user_id)

    @app.post("/users/{user_id}/events/{event_id}/sync", response_model=SyncResult)
    async def sync_event(
        user_id: str,
        event_id: UUID,
        request: Request,
        direction: Optional[SyncDirection] = None
    ):
        result = await _scheduler(request).sync_event(user_id, event_id, direction)
        if result is None:
            raise HTTPException(status_code=409, detail="sync already in progress")
        return result

    @app.get("/stats")
    async def sync_statistics(request: Request, days: int = Query(30, ge=1, le=365)):
        return _orchestrator(request).get_sync_statistics(days)

    return app


app = create_app()
