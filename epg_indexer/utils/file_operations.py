"""
File and download utilities

This module handles conditional downloads with retry logic and atomic
file writes for every artifact the refresh pipeline persists.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import AsyncIterable, AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import aiofiles
import httpx

from epg_indexer.errors import TransientFetchError

if TYPE_CHECKING:
    from epg_indexer.services.fetch_types import FetchCacheEntry


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FetchResponse:
    """Result of a conditional GET; `stream` is only set for status 200."""
    status: int
    stream: AsyncIterator[bytes] | None = None
    etag: str | None = None
    last_modified: str | None = None


def build_conditional_headers(
    cache_entry: FetchCacheEntry | None,
    user_agent: str,
) -> dict[str, str]:
    """Build request headers, adding validators remembered from the last fetch."""
    headers = {
        "Accept": "*/*",
        "Accept-Encoding": "gzip, deflate, br",
        "User-Agent": user_agent,
    }
    if cache_entry is not None:
        if cache_entry.etag:
            headers["If-None-Match"] = cache_entry.etag
        if cache_entry.last_modified:
            headers["If-Modified-Since"] = cache_entry.last_modified
    return headers


@asynccontextmanager
async def fetch_with_cache(
    client: httpx.AsyncClient,
    url: str,
    cache_entry: FetchCacheEntry | None = None,
    *,
    timeout: float = 30.0,
    max_attempts: int = 3,
    backoff: float = 0.8,
    user_agent: str = "EPGIndexer/EPG",
) -> AsyncIterator[FetchResponse]:
    """
    Conditionally GET a URL with exponential backoff retry logic

    Every failure (connection error, timeout, non-2xx other than 304) is retried.
    The body is exposed as a stream of already-decoded bytes: httpx undoes
    gzip, deflate and br content encodings.

    Args:
        client: Shared HTTP client
        url: URL to download from
        cache_entry: Validators from the previous successful fetch
        timeout: HTTP timeout in seconds for each attempt
        max_attempts: Maximum number of attempts
        backoff: Base delay in seconds, doubled after every failed attempt

    Yields:
        FetchResponse with status 304 (no body) or 200 (decoded stream)

    Raises:
        TransientFetchError: If every attempt failed
    """
    headers = build_conditional_headers(cache_entry, user_agent)
    safe_url = sanitize_url_for_logging(url)
    last_error: TransientFetchError | None = None

    for attempt in range(max_attempts):
        try:
            request = client.build_request("GET", url, headers=headers, timeout=timeout)
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            last_error = TransientFetchError(f"{type(e).__name__}: {e}", url=url)
        else:
            if response.status_code == 304:
                await response.aclose()
                logger.info(f"Not modified (304): {safe_url}")
                yield FetchResponse(status=304)
                return

            if not response.is_success:
                await response.aclose()
                last_error = TransientFetchError(
                    f"HTTP {response.status_code}",
                    url=url,
                    status_code=response.status_code,
                )
            else:
                try:
                    yield FetchResponse(
                        status=200,
                        stream=response.aiter_bytes(),
                        etag=response.headers.get("etag"),
                        last_modified=response.headers.get("last-modified"),
                    )
                finally:
                    await response.aclose()
                return

        if attempt < max_attempts - 1:
            wait_time = backoff * (2 ** attempt)
            logger.warning(
                f"Fetch attempt {attempt + 1}/{max_attempts} for {safe_url} failed ({last_error}). "
                f"Retrying in {wait_time:.1f}s..."
            )
            await asyncio.sleep(wait_time)
        else:
            logger.error(f"Fetch failed after {max_attempts} attempts: {safe_url} ({last_error})")

    if last_error:
        raise last_error

    raise TransientFetchError(f"Failed to fetch {safe_url}: no attempts made", url=url)


def sanitize_url_for_logging(url: str) -> str:
    """Remove credentials from URL for safe logging."""
    if "://" not in url:
        return url
    try:
        protocol, rest = url.split("://", 1)
        if "@" in rest.split("/", 1)[0]:
            rest = rest.split("@", 1)[1]
            return f"{protocol}://***:***@{rest}"
        return url
    except (ValueError, IndexError):
        return url


def _temp_path_for(target: Path) -> Path:
    return target.with_name(f".{target.name}.{uuid4().hex}.tmp")


async def write_stream_atomic(target: Path, chunks: AsyncIterable[bytes]) -> int:
    """
    Write a byte stream to `target` via a temporary file and rename.

    The previous content of `target` stays in place if the stream fails.

    Returns:
        Number of bytes written
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_file = _temp_path_for(target)
    written = 0
    try:
        async with aiofiles.open(temp_file, "wb") as f:
            async for chunk in chunks:
                await f.write(chunk)
                written += len(chunk)
        os.replace(temp_file, target)
    except BaseException:
        cleanup_temp_file(temp_file)
        raise
    return written


async def stage_text(target: Path, content: str) -> Path:
    """
    Write text (UTF-8) next to `target` under a temporary name.

    Returns:
        The temporary path; the caller renames it onto `target`
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_file = _temp_path_for(target)
    try:
        async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
            await f.write(content)
    except BaseException:
        cleanup_temp_file(temp_file)
        raise
    return temp_file


async def stage_json(target: Path, payload: Any) -> Path:
    """Serialize `payload` as JSON into a temporary file next to `target`."""
    return await stage_text(target, json.dumps(payload, ensure_ascii=False))


async def write_text_atomic(target: Path, content: str) -> None:
    """Write text to `target` atomically (UTF-8)."""
    temp_file = await stage_text(target, content)
    try:
        os.replace(temp_file, target)
    except BaseException:
        cleanup_temp_file(temp_file)
        raise


async def write_json_atomic(target: Path, payload: Any) -> None:
    """Serialize `payload` as JSON and write it atomically."""
    await write_text_atomic(target, json.dumps(payload, ensure_ascii=False))


async def read_json(path: Path, default: Any = None) -> Any:
    """
    Read a JSON file.

    Returns:
        Parsed content, or `default` if the file does not exist

    Raises:
        ValueError: If the file exists but is not valid JSON
    """
    if not path.exists():
        return default
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        content = await f.read()
    return json.loads(content)


def cleanup_temp_file(file_path: Path) -> bool:
    """
    Safely delete a temporary file

    Args:
        file_path: Path to file to delete

    Returns:
        True if deleted successfully, False otherwise
    """
    if not file_path or not file_path.exists():
        return False

    try:
        file_path.unlink()
        logger.debug(f"Cleaned up temporary file: {file_path}")
        return True
    except (OSError, PermissionError) as e:
        logger.warning(f"Failed to delete temporary file {file_path}: {e}")
        return False
