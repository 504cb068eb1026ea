"""
Shared fixtures for EPG Indexer tests.
"""
import asyncio
import os
import tempfile

# Settings are read at import time; keep test artifacts out of the working tree
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="epg-indexer-tests-"))

import pytest

from epg_indexer.services.fetch_types import EpgSource, FetchCacheEntry
from epg_indexer.services.index_store import IndexStore, sanitize_source_key
from epg_indexer.services.refresh_coordinator import RefreshCoordinator


def make_xmltv(channels=(), programmes=()) -> str:
    """
    Build a small XMLTV document.

    channels: iterable of (id, [display names])
    programmes: iterable of (channel id, title)
    """
    parts = ['<?xml version="1.0" encoding="UTF-8"?>\n<tv generator-info-name="test">\n']
    for channel_id, names in channels:
        parts.append(f'  <channel id="{channel_id}">\n')
        for name in names:
            parts.append(f"    <display-name>{name}</display-name>\n")
        parts.append("  </channel>\n")
    for channel_id, title in programmes:
        parts.append(
            f'  <programme start="20250101000000 +0000" stop="20250101010000 +0000" channel="{channel_id}">\n'
            f"    <title>{title}</title>\n"
            "  </programme>\n"
        )
    parts.append("</tv>\n")
    return "".join(parts)


async def aiter_chunks(data: bytes, size: int = 7):
    """Yield `data` in small pieces to exercise chunk boundaries."""
    for start in range(0, len(data), size):
        yield data[start:start + size]


def seed_source(store: IndexStore, source: EpgSource, document: str, etag: str | None = None) -> None:
    """Put a previously refreshed source on disk: raw file, index and cache entry."""
    from epg_indexer.services.xmltv_index_service import index_file

    key = sanitize_source_key(source.name)
    store.raw_path(key).write_text(document, encoding="utf-8")

    async def _seed():
        index = await index_file(store.raw_path(key))
        await store.write_source_index(key, index)
        meta = await store.read_cache_meta()
        meta[key] = FetchCacheEntry(etag=etag, last_modified=None, updated_at=1)
        await store.write_cache_meta(meta)

    asyncio.run(_seed())


@pytest.fixture
def store(tmp_path) -> IndexStore:
    return IndexStore(tmp_path / "epg")


@pytest.fixture
def coordinator() -> RefreshCoordinator:
    return RefreshCoordinator()
