from typing import Annotated
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from epg_indexer.config import settings
from epg_indexer.database import get_db
from epg_indexer.schemas import (
    AutoMapRequest,
    AutoMapResponse,
    EpgChannelNames,
    EpgSourceCreate,
    EpgSourceCreated,
    EpgSourceResponse,
    RefreshStatusResponse,
    RefreshTriggerResponse,
)
from epg_indexer.services import (
    IndexStore,
    auto_map_channels,
    epg_scheduler,
    get_refresh_coordinator,
    start_background_refresh,
)
from epg_indexer.services.db_service import (
    DuplicateSourceError,
    add_epg_source,
    assign_channel_epg,
    list_channels,
    list_epg_sources,
    load_refresh_sources,
)
from epg_indexer.services.index_store import sanitize_source_key
from epg_indexer.services.refresh_coordinator import RefreshCoordinator


logger = logging.getLogger(__name__)

main_router = APIRouter()


def get_index_store() -> IndexStore:
    """Index store dependency bound to the configured EPG directory"""
    return IndexStore(settings.epg_dir)


DbSession = Annotated[AsyncSession, Depends(get_db)]
Store = Annotated[IndexStore, Depends(get_index_store)]
Coordinator = Annotated[RefreshCoordinator, Depends(get_refresh_coordinator)]


@main_router.get("/")
async def root() -> dict:
    """Root endpoint with service information"""
    next_run = epg_scheduler.get_next_run_time()

    return {
        "service": "EPG Indexer",
        "version": "0.1.0",
        "next_scheduled_refresh": next_run.isoformat() if next_run else None,
        "endpoints": {
            "status": "/epg/status - Refresh progress",
            "refresh": "/epg/refresh - Trigger EPG refresh (POST)",
            "sources": "/epg/sources - List or add EPG sources",
            "channels": "/epg/channels - Combined id -> names index",
            "merged": "/epg/merged.xml - Merged XMLTV document",
            "automap": "/mapping/auto - Auto-map channels to EPG ids (POST)",
            "health": "/health - Health check"
        }
    }


@main_router.get("/health")
async def health_check(coordinator: Coordinator) -> dict:
    """Health check endpoint"""
    next_run = epg_scheduler.get_next_run_time()
    return {
        "status": "ok",
        "scheduler_running": epg_scheduler.scheduler.running if epg_scheduler.scheduler else False,
        "refresh_running": coordinator.is_running(),
        "next_refresh": next_run.isoformat() if next_run else None
    }


@main_router.get("/epg/status", response_model=RefreshStatusResponse)
async def refresh_status(coordinator: Coordinator) -> RefreshStatusResponse:
    """Current EPG refresh progress, for polling"""
    status = coordinator.snapshot()
    return RefreshStatusResponse(
        running=status.running,
        phase=status.phase,
        current=status.current,
        total=status.total,
        lastRun=status.last_run,
        lastError=status.last_error,
    )


@main_router.get("/epg/channels", response_model=list[EpgChannelNames])
async def epg_channels(store: Store) -> list[EpgChannelNames]:
    """Combined identifier -> names index, for suggestion lists"""
    id_names = await store.read_combined_id_names()
    return [EpgChannelNames(id=channel_id, names=names) for channel_id, names in id_names.items()]


@main_router.get("/epg/sources", response_model=list[EpgSourceResponse])
async def epg_sources(db: DbSession, store: Store) -> list[EpgSourceResponse]:
    """Configured EPG sources with download state"""
    rows = await list_epg_sources(db)
    meta = await store.read_cache_meta()

    sources = []
    for row in rows:
        key = sanitize_source_key(row.name)
        entry = meta.get(key)
        sources.append(
            EpgSourceResponse(
                id=row.id,
                name=row.name,
                url=row.url,
                status="active" if store.has_raw(key) else "pending",
                updatedAt=entry.updated_at if entry else None,
            )
        )
    return sources


@main_router.post("/epg/sources", response_model=EpgSourceCreated)
async def create_epg_source(
    request: EpgSourceCreate,
    db: DbSession,
    store: Store,
    coordinator: Coordinator,
) -> EpgSourceCreated:
    """
    Add an EPG source and refresh all sources in the background
    """
    try:
        row = await add_epg_source(db, request.name, request.url)
        await db.commit()
    except DuplicateSourceError as exc:
        await db.rollback()
        raise HTTPException(status_code=409, detail=str(exc))

    sources = await load_refresh_sources(db)
    task = start_background_refresh(sources, coordinator, store)
    return EpgSourceCreated(id=row.id, name=row.name, refreshing=task is not None)


@main_router.post("/epg/refresh", response_model=RefreshTriggerResponse)
async def trigger_refresh(
    db: DbSession,
    store: Store,
    coordinator: Coordinator,
) -> RefreshTriggerResponse:
    """
    Start an EPG refresh in the background

    Progress is reported by /epg/status.
    """
    logger.info("Manual EPG refresh triggered via API")
    sources = await load_refresh_sources(db)
    task = start_background_refresh(sources, coordinator, store)

    if task is None:
        return RefreshTriggerResponse(started=False, message="EPG refresh already in progress")
    return RefreshTriggerResponse(started=True, message=f"Refreshing {len(sources)} source(s)")


@main_router.post("/mapping/auto", response_model=AutoMapResponse)
async def auto_map(
    request: AutoMapRequest,
    db: DbSession,
    store: Store,
) -> AutoMapResponse:
    """
    Assign EPG ids to unmapped channels by display-name similarity
    """
    id_names = await store.read_combined_id_names()
    channels = await list_channels(db, request.source)

    async def assign(channel_id: int, tvg_id: str, epg_source: str | None) -> None:
        await assign_channel_epg(db, channel_id, tvg_id, epg_source)

    result = await auto_map_channels(
        channels,
        id_names,
        min_score=request.min_score,
        dry_run=request.dry_run,
        label=request.epg_source,
        assign=assign,
    )
    if not request.dry_run:
        await db.commit()

    return AutoMapResponse(
        updated=result.updated,
        skipped=result.skipped,
        minScore=result.min_score,
        sample=[sample.to_dict() for sample in result.samples],
    )


@main_router.get("/epg/merged.xml")
async def merged_document(store: Store) -> FileResponse:
    """Merged XMLTV document, served verbatim"""
    if not store.merged_path.exists():
        raise HTTPException(status_code=404, detail="Merged EPG not built yet")
    return FileResponse(store.merged_path, media_type="application/xml")
