"""
Per-source index store and index combiner

Every configured source owns a handful of files under the EPG directory, all
named after its sanitized key:

    <key>.xml           raw XMLTV document as last downloaded
    <key>.index.json    lowercased name -> identifier
    <key>.idnames.json  identifier -> lowercased names

Shared files: meta.json (conditional-request metadata for every source),
name_index.json / id_names.json (combined index) and merged.xml.
"""
from __future__ import annotations

import logging
import os
import re
from collections.abc import Sequence
from pathlib import Path

from epg_indexer.errors import MalformedDocumentError
from epg_indexer.services.fetch_types import (
    CombinedIndex,
    EpgSource,
    FetchCacheEntry,
    SourceIdentityIndex,
)
from epg_indexer.services.xmltv_index_service import DEFAULT_CHUNK_SIZE, index_file
from epg_indexer.utils.data_merging import merge_id_names, merge_name_index
from epg_indexer.utils.file_operations import (
    cleanup_temp_file,
    read_json,
    stage_json,
    write_json_atomic,
)


logger = logging.getLogger(__name__)

META_FILE = "meta.json"
MERGED_FILE = "merged.xml"
NAME_INDEX_FILE = "name_index.json"
ID_NAMES_FILE = "id_names.json"

# Placeholder entry for channels that should carry an EPG id without guide data
DUMMY_CHANNEL_ID = "DUMMY_CH"
DUMMY_CHANNEL_NAME = "dummy channel"

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_source_key(name: str) -> str:
    """
    Turn a source name into a filesystem-safe key.

    Every character outside [A-Za-z0-9_-] becomes '_', so "My EPG" and "My_EPG"
    share one key (and therefore one set of cache and index files).
    """
    return _UNSAFE_KEY_CHARS.sub("_", name)


class IndexStore:
    """File-backed storage for cache metadata, per-source and combined indexes."""

    def __init__(self, epg_dir: Path | str) -> None:
        self.epg_dir = Path(epg_dir)
        self.epg_dir.mkdir(parents=True, exist_ok=True)

    @property
    def meta_path(self) -> Path:
        return self.epg_dir / META_FILE

    @property
    def merged_path(self) -> Path:
        return self.epg_dir / MERGED_FILE

    @property
    def name_index_path(self) -> Path:
        return self.epg_dir / NAME_INDEX_FILE

    @property
    def id_names_path(self) -> Path:
        return self.epg_dir / ID_NAMES_FILE

    def raw_path(self, key: str) -> Path:
        return self.epg_dir / f"{key}.xml"

    def name_index_path_for(self, key: str) -> Path:
        return self.epg_dir / f"{key}.index.json"

    def id_names_path_for(self, key: str) -> Path:
        return self.epg_dir / f"{key}.idnames.json"

    def has_raw(self, key: str) -> bool:
        return self.raw_path(key).exists()

    async def read_cache_meta(self) -> dict[str, FetchCacheEntry]:
        """Load cache metadata for all sources; a missing or corrupt file yields {}."""
        try:
            payload = await read_json(self.meta_path, default={})
        except ValueError as exc:
            logger.warning("Ignoring unreadable cache metadata %s: %s", self.meta_path, exc)
            return {}
        if not isinstance(payload, dict):
            return {}
        return {key: FetchCacheEntry.from_dict(value) for key, value in payload.items()}

    async def write_cache_meta(self, meta: dict[str, FetchCacheEntry]) -> None:
        await write_json_atomic(
            self.meta_path,
            {key: entry.to_dict() for key, entry in meta.items()},
        )

    async def write_source_index(self, key: str, index: SourceIdentityIndex) -> None:
        """Persist both halves of a source index, each replacing the previous file."""
        await write_json_atomic(self.name_index_path_for(key), index.name_to_id)
        await write_json_atomic(self.id_names_path_for(key), index.id_to_names)
        logger.debug(
            "Stored index for %s: %s ids, %s names",
            key,
            len(index.id_to_names),
            len(index.name_to_id),
        )

    async def promote_source(self, key: str, staged_raw: Path, index: SourceIdentityIndex) -> None:
        """
        Move a freshly indexed raw document into place together with its index.

        Both index files are fully written under temporary names before
        anything is renamed. If staging fails, the previous raw document and
        index pair stay as they were.
        """
        targets = (
            (self.name_index_path_for(key), index.name_to_id),
            (self.id_names_path_for(key), index.id_to_names),
        )
        staged: list[tuple[Path, Path]] = []
        try:
            for target, payload in targets:
                staged.append((await stage_json(target, payload), target))
        except BaseException:
            for temp_file, _ in staged:
                cleanup_temp_file(temp_file)
            raise

        for temp_file, target in staged:
            os.replace(temp_file, target)
        os.replace(staged_raw, self.raw_path(key))
        logger.debug(
            "Promoted %s: %s ids, %s names",
            key,
            len(index.id_to_names),
            len(index.name_to_id),
        )

    async def read_source_index(self, key: str) -> SourceIdentityIndex | None:
        """
        Load a persisted source index.

        Returns:
            The index, or None if neither file exists

        Raises:
            ValueError: If a file exists but is not valid JSON
        """
        name_to_id = await read_json(self.name_index_path_for(key))
        id_to_names = await read_json(self.id_names_path_for(key))
        if name_to_id is None and id_to_names is None:
            return None
        return SourceIdentityIndex(
            name_to_id=name_to_id or {},
            id_to_names=id_to_names or {},
        )

    async def write_combined(self, index: CombinedIndex) -> None:
        await write_json_atomic(self.name_index_path, index.name_to_id)
        await write_json_atomic(self.id_names_path, index.id_to_names)

    async def read_combined_name_index(self) -> dict[str, str]:
        try:
            return await read_json(self.name_index_path, default={})
        except ValueError as exc:
            logger.warning("Combined name index unreadable: %s", exc)
            return {}

    async def read_combined_id_names(self) -> dict[str, list[str]]:
        try:
            return await read_json(self.id_names_path, default={})
        except ValueError as exc:
            logger.warning("Combined id index unreadable: %s", exc)
            return {}


def _with_placeholder(combined: CombinedIndex) -> CombinedIndex:
    combined.name_to_id[DUMMY_CHANNEL_NAME] = DUMMY_CHANNEL_ID
    combined.id_to_names.setdefault(DUMMY_CHANNEL_ID, [DUMMY_CHANNEL_NAME])
    return combined


async def combine_indexes(store: IndexStore, sources: Sequence[EpgSource]) -> CombinedIndex:
    """
    Combine every persisted source index into the combined index.

    Sources are visited in list order; the first source to claim a name keeps
    it. Index files from earlier runs count even if the source did not change
    this cycle. The result replaces the previous combined files in full.
    """
    combined = CombinedIndex()

    for source in sources:
        key = sanitize_source_key(source.name)
        try:
            index = await store.read_source_index(key)
        except (ValueError, OSError) as exc:
            logger.warning("Skipping unreadable index for source %s: %s", source.name, exc)
            continue
        if index is None:
            logger.debug("No index on disk yet for source %s", source.name)
            continue

        added_names = merge_name_index(combined.name_to_id, index.name_to_id)
        added_ids = merge_id_names(combined.id_to_names, index.id_to_names)
        logger.debug(
            "Combined source %s: +%s names, +%s ids",
            source.name,
            added_names,
            added_ids,
        )

    _with_placeholder(combined)
    await store.write_combined(combined)

    logger.info(
        "Combined index written: %s ids, %s names",
        len(combined.id_to_names),
        len(combined.name_to_id),
    )
    return combined


async def rebuild_from_directory(
    store: IndexStore,
    chunk_size: int | None = None,
) -> CombinedIndex | None:
    """
    Re-index every raw document in the EPG directory and rewrite the combined index.

    Used to recover the combined index without network access. Files are
    visited in name order; `.xml.gz` dumps are decompressed on the fly.
    Documents that fail to parse are logged and skipped.

    Returns:
        The new combined index, or None if no channel id could be indexed
        (every document failed or none exists). In that case the combined files on disk are left untouched.
    """
    files = sorted(
        path
        for path in store.epg_dir.iterdir()
        if path.is_file()
        and path.name != MERGED_FILE
        and (path.name.endswith(".xml") or path.name.endswith(".xml.gz"))
    )

    combined = CombinedIndex()
    indexed = 0
    for path in files:
        try:
            index = await index_file(path, chunk_size or DEFAULT_CHUNK_SIZE)
        except (MalformedDocumentError, OSError) as exc:
            logger.error("Failed to index %s: %s", path.name, exc)
            continue
        merge_name_index(combined.name_to_id, index.name_to_id)
        merge_id_names(combined.id_to_names, index.id_to_names)
        indexed += 1

    if not combined.id_to_names:
        logger.error("No channel ids indexed from %s; combined index left unchanged", store.epg_dir)
        return None

    _with_placeholder(combined)
    await store.write_combined(combined)
    logger.info("Re-indexed %s of %s file(s): %s ids", indexed, len(files), len(combined.id_to_names))
    return combined


__all__ = [
    "DUMMY_CHANNEL_ID",
    "DUMMY_CHANNEL_NAME",
    "IndexStore",
    "combine_indexes",
    "rebuild_from_directory",
    "sanitize_source_key",
]
