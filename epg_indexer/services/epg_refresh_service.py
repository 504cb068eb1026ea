"""
EPG Refresh Service

Coordinates conditional download, indexing, index combination and document
merging for every configured EPG source.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from uuid import uuid4

import httpx

from epg_indexer.config import settings
from epg_indexer.errors import StructuralOrchestrationError
from epg_indexer.services.fetch_types import (
    EpgSource,
    FetchCacheEntry,
    ProgressEvent,
    RefreshResult,
    SourceResult,
)
from epg_indexer.services.index_store import IndexStore, combine_indexes, sanitize_source_key
from epg_indexer.services.refresh_coordinator import RefreshCoordinator, get_refresh_coordinator
from epg_indexer.services.xmltv_index_service import index_file
from epg_indexer.services.xmltv_merge_service import write_merged_document
from epg_indexer.utils.file_operations import (
    cleanup_temp_file,
    fetch_with_cache,
    sanitize_url_for_logging,
    write_stream_atomic,
)


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]

# Keeps fire-and-forget refresh tasks referenced until they finish
_background_tasks: set[asyncio.Task] = set()


def _now_ms() -> int:
    return int(time.time() * 1000)


class EPGRefreshPipeline:
    """Runs one refresh cycle over a fixed list of sources."""

    def __init__(
        self,
        sources: Sequence[EpgSource],
        store: IndexStore,
        client: httpx.AsyncClient,
        *,
        max_concurrency: int | None = None,
        on_progress: ProgressCallback | None = None,
        fetch_timeout: float | None = None,
        fetch_attempts: int | None = None,
        fetch_backoff: float | None = None,
        read_chunk_size: int | None = None,
    ) -> None:
        self.sources = list(sources)
        self.total_sources = len(self.sources)
        self.store = store
        self.client = client
        self._concurrency = max(1, max_concurrency or settings.epg_refresh_concurrency)
        self._on_progress = on_progress
        self._fetch_timeout = fetch_timeout or settings.epg_fetch_timeout_sec
        self._fetch_attempts = fetch_attempts or settings.epg_fetch_max_attempts
        self._fetch_backoff = fetch_backoff if fetch_backoff is not None else settings.epg_fetch_backoff_sec
        self._chunk_size = read_chunk_size or settings.epg_read_chunk_size

    def _emit(self, event: ProgressEvent) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(event)
        except Exception as exc:
            logger.warning("Progress callback failed for %s: %s", event, exc)

    async def run(self) -> RefreshResult:
        meta = await self.store.read_cache_meta()
        results = await self._collect_sources(meta)
        changed_any = any(result.changed for result in results)

        try:
            await self.store.write_cache_meta(meta)
        except OSError as exc:
            raise StructuralOrchestrationError(f"Failed to write cache metadata: {exc}") from exc

        try:
            await combine_indexes(self.store, self.sources)
        except OSError as exc:
            raise StructuralOrchestrationError(f"Failed to write combined index: {exc}") from exc

        if changed_any or not self.store.merged_path.exists():
            self._emit(ProgressEvent(phase="merge"))
            raw_files = [
                self.store.raw_path(sanitize_source_key(source.name)) for source in self.sources
            ]
            try:
                await write_merged_document(raw_files, self.store.merged_path)
            except OSError as exc:
                raise StructuralOrchestrationError(f"Failed to write merged document: {exc}") from exc
        else:
            logger.info("No source changed and merged document exists - skipping merge")

        return RefreshResult(changed=changed_any, results=results)

    async def _collect_sources(self, meta: dict[str, FetchCacheEntry]) -> list[SourceResult]:
        if not self.sources:
            logger.warning("No EPG sources configured - skipping downloads")
            return []

        collected: list[tuple[int, SourceResult]] = []
        cursor = 0

        async def worker(worker_id: int) -> None:
            nonlocal cursor
            # Claiming the next index never awaits, so workers cannot take the same source
            while cursor < self.total_sources:
                cursor += 1
                index = cursor
                source = self.sources[index - 1]
                logger.debug("Worker %s picked source %s/%s", worker_id, index, self.total_sources)
                self._emit(
                    ProgressEvent(
                        phase="download",
                        index=index,
                        total=self.total_sources,
                        name=source.name,
                    )
                )
                result = await self._process_source(index, source, meta)
                collected.append((index, result))

        workers = min(self._concurrency, self.total_sources)
        await asyncio.gather(*(worker(worker_id) for worker_id in range(1, workers + 1)))

        collected.sort(key=lambda item: item[0])
        return [result for _, result in collected]

    async def _process_source(
        self,
        index: int,
        source: EpgSource,
        meta: dict[str, FetchCacheEntry],
    ) -> SourceResult:
        key = sanitize_source_key(source.name)
        raw_file = self.store.raw_path(key)
        prefix = f"[Source {index}/{self.total_sources}]"
        sanitized_url = sanitize_url_for_logging(source.url)
        staging_file = raw_file.with_name(f".{raw_file.name}.{uuid4().hex}.download")

        logger.info("%s Fetching %s: %s", prefix, source.name, sanitized_url)
        started = time.perf_counter()

        try:
            async with fetch_with_cache(
                self.client,
                source.url,
                meta.get(key),
                timeout=self._fetch_timeout,
                max_attempts=self._fetch_attempts,
                backoff=self._fetch_backoff,
                user_agent=settings.epg_user_agent,
            ) as response:
                if response.status == 304:
                    logger.info("%s %s unchanged (304)", prefix, source.name)
                    return SourceResult(name=source.name, file=str(raw_file), changed=False)

                size = await write_stream_atomic(staging_file, response.stream)
                etag, last_modified = response.etag, response.last_modified

            logger.info("%s Downloaded %.2f MB", prefix, size / 1024 / 1024)

            self._emit(ProgressEvent(phase="index", name=source.name))
            identity_index = await index_file(staging_file, self._chunk_size)

            # Only a fully indexed document replaces the previous one
            await self.store.promote_source(key, staging_file, identity_index)
            meta[key] = FetchCacheEntry(
                etag=etag,
                last_modified=last_modified,
                updated_at=_now_ms(),
            )
        except Exception as exc:
            logger.error(
                "%s Failed to refresh %s (%s): %s",
                prefix,
                source.name,
                sanitized_url,
                exc,
                exc_info=True,
            )
            return SourceResult(name=source.name, file=str(raw_file), error=str(exc))
        finally:
            cleanup_temp_file(staging_file)

        logger.info(
            "%s %s indexed in %.2fs: %s ids, %s names",
            prefix,
            source.name,
            time.perf_counter() - started,
            len(identity_index.id_to_names),
            len(identity_index.name_to_id),
        )
        return SourceResult(name=source.name, file=str(raw_file), changed=True)


async def _run_claimed_refresh(
    sources: list[EpgSource],
    coordinator: RefreshCoordinator,
    store: IndexStore | None,
    *,
    client: httpx.AsyncClient | None = None,
    max_concurrency: int | None = None,
    fetch_backoff: float | None = None,
) -> RefreshResult:
    """
    Run a refresh whose slot was already claimed with `try_begin()`.

    The coordinator is resolved on every exit path, including failures while
    preparing the store or the HTTP client.
    """
    error: str | None = None
    owns_client = client is None
    try:
        store = store or IndexStore(settings.epg_dir)
        if client is None:
            client = httpx.AsyncClient(follow_redirects=True)

        logger.info("EPG refresh started for %s source(s)", len(sources))
        try:
            pipeline = EPGRefreshPipeline(
                sources,
                store,
                client,
                max_concurrency=max_concurrency,
                on_progress=coordinator.on_progress,
                fetch_backoff=fetch_backoff,
            )
            result = await pipeline.run()
        finally:
            if owns_client and client is not None:
                await client.aclose()
    except StructuralOrchestrationError as exc:
        error = str(exc)
        logger.error("EPG refresh failed: %s", exc, exc_info=True)
        raise
    except asyncio.CancelledError:
        error = "EPG refresh cancelled"
        logger.warning(error)
        raise
    except Exception as exc:
        error = str(exc) or type(exc).__name__
        logger.error("Unexpected error during EPG refresh: %s", exc, exc_info=True)
        raise StructuralOrchestrationError(error) from exc
    finally:
        coordinator.finish(error=error)

    failures = sum(1 for item in result.results if item.status == "error")
    logger.info(
        "EPG refresh completed: %s source(s), %s changed, %s failed",
        len(result.results),
        sum(1 for item in result.results if item.changed),
        failures,
    )
    return result


async def refresh_epg(
    sources: Sequence[EpgSource],
    coordinator: RefreshCoordinator | None = None,
    store: IndexStore | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    max_concurrency: int | None = None,
    fetch_backoff: float | None = None,
) -> RefreshResult:
    """
    Main entry point for EPG refreshes with single-flight protection.

    A call made while another refresh is running returns immediately with
    `skipped=True` and changes nothing.

    Returns:
        RefreshResult with one entry per source

    Raises:
        StructuralOrchestrationError: If the refresh failed outside per-source processing
    """
    coordinator = coordinator or get_refresh_coordinator()
    sources = list(sources)

    if not coordinator.try_begin(len(sources)):
        return RefreshResult(skipped=True)

    return await _run_claimed_refresh(
        sources,
        coordinator,
        store,
        client=client,
        max_concurrency=max_concurrency,
        fetch_backoff=fetch_backoff,
    )


def start_background_refresh(
    sources: Sequence[EpgSource],
    coordinator: RefreshCoordinator | None = None,
    store: IndexStore | None = None,
) -> asyncio.Task | None:
    """
    Fire-and-forget refresh; progress is observable through the coordinator.

    The single-flight slot is claimed before the task is created, so a second
    call made before the first task gets to run is already refused.

    Returns:
        The scheduled task, or None if a refresh is already running
    """
    coordinator = coordinator or get_refresh_coordinator()
    sources = list(sources)

    if not coordinator.try_begin(len(sources)):
        logger.info("EPG refresh already running - background request ignored")
        return None

    async def _run() -> None:
        try:
            await _run_claimed_refresh(sources, coordinator, store)
        except StructuralOrchestrationError as exc:
            logger.error("Background EPG refresh failed: %s", exc)

    try:
        task = asyncio.create_task(_run(), name="epg-refresh")
    except RuntimeError as exc:
        coordinator.finish(error=str(exc))
        raise
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
