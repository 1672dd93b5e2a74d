"""Thin HTTP route layer over the sync core."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import Settings
from .models import RemoteEvent
from .services import AuthenticationError
from .sync_engine import SyncOrchestrator, SyncRequestError, build_window

logger = logging.getLogger(__name__)

app = FastAPI(title="calmirror", version="1.0")


class SyncRequest(BaseModel):
    owner_id: str
    calendar_ids: List[str] = Field(default_factory=list)
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    force_full_sync: bool = False


class BulkLoadRequest(BaseModel):
    owner_id: str
    events: List[RemoteEvent] = Field(default_factory=list)


@app.on_event("startup")
async def on_startup():
    settings = Settings()
    settings.ensure_directories()
    app.state.settings = settings
    app.state.orchestrator = SyncOrchestrator(settings)
    await app.state.orchestrator.initialize()


@app.on_event("shutdown")
async def on_shutdown():
    orchestrator: Optional[SyncOrchestrator] = getattr(app.state, 'orchestrator', None)
    if orchestrator is not None:
        await orchestrator.cleanup()


def _orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


@app.get("/health")
async def health():
    return {"ok": True}


@app.post("/sync")
async def sync(body: SyncRequest, request: Request):
    orchestrator = _orchestrator(request)
    try:
        window = build_window(body.start, body.end)
        report = await orchestrator.sync_calendars(
            body.owner_id, body.calendar_ids, window=window, force_full_sync=body.force_full_sync
        )
    except SyncRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AuthenticationError as e:
        partial = getattr(e, 'report', None)
        return JSONResponse(
            status_code=401,
            content={
                'detail': str(e),
                'report': partial.to_response() if partial is not None else None,
            },
        )
    return report.to_response()


@app.post("/cursors/{calendar_id}/reset")
async def reset_cursor(calendar_id: str, owner_id: str, request: Request):
    cursor = _orchestrator(request).reset_cursor(owner_id, calendar_id)
    return cursor.model_dump(mode='json')


@app.get("/locations/resolve")
async def resolve_location(text: str, request: Request, create: bool = False):
    matches = _orchestrator(request).resolve_location(text, create_missing=create)
    return {'matches': [match.model_dump(mode='json') for match in matches]}


@app.post("/events/bulk")
async def bulk_load(body: BulkLoadRequest, request: Request):
    result = _orchestrator(request).bulk_load(body.owner_id, body.events)
    return {
        'persistedCount': result.persisted_count,
        'skipped': result.skipped,
        'unmatched': result.unmatched,
        'storageIds': result.storage_ids,
    }


def warm_cache(orchestrator: SyncOrchestrator, owner_id: str, events: List[RemoteEvent]) -> None:
    """Background cache warm-up; failures are logged, never raised to the client."""
    try:
        result = orchestrator.bulk_load(owner_id, events)
        logger.info(f"Cache warm-up for {owner_id} wrote {result.persisted_count} event(s)")
    except Exception as e:
        logger.error(f"Cache warm-up for {owner_id} failed: {e}")


@app.post("/events/cache", status_code=202)
async def queue_cache_warmup(body: BulkLoadRequest, request: Request, background_tasks: BackgroundTasks):
    background_tasks.add_task(warm_cache, _orchestrator(request), body.owner_id, body.events)
    return {'queued': len(body.events)}
