"""
Textual XMLTV merge

Builds the combined guide by collecting the <channel> and <programme> blocks
of every raw source document as plain text. Blocks are deduplicated by exact
string equality only: a channel repeated byte-for-byte across feeds appears
once, a reformatted copy of the same channel appears twice.
"""
import logging
import re
from collections.abc import Iterable
from pathlib import Path

import aiofiles

from epg_indexer.utils.file_operations import write_text_atomic


logger = logging.getLogger(__name__)

CHANNEL_PATTERN = re.compile(r"<channel\b.*?</channel>", re.DOTALL)
PROGRAMME_PATTERN = re.compile(r"<programme\b.*?</programme>", re.DOTALL)


async def merge_documents(paths: Iterable[Path]) -> str:
    """
    Merge raw XMLTV documents into one document.

    Missing files are skipped. Channel blocks come first, then programme
    blocks, each in first-seen order.

    Args:
        paths: Raw per-source document paths, in source order

    Returns:
        The merged document text wrapped in <tv>...</tv>
    """
    channels: dict[str, None] = {}
    programmes: dict[str, None] = {}

    for path in paths:
        if not path.exists():
            logger.debug("Skipping missing document %s", path)
            continue

        async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
            content = await f.read()

        before_channels, before_programmes = len(channels), len(programmes)
        for match in CHANNEL_PATTERN.finditer(content):
            channels.setdefault(match.group(0), None)
        for match in PROGRAMME_PATTERN.finditer(content):
            programmes.setdefault(match.group(0), None)

        logger.debug(
            "Merged %s: +%s channels, +%s programmes",
            path.name,
            len(channels) - before_channels,
            len(programmes) - before_programmes,
        )

    logger.info(f"Merge summary - Channels: {len(channels)}, Programs: {len(programmes)}")
    return "<tv>" + "".join(channels) + "".join(programmes) + "</tv>"


async def write_merged_document(paths: Iterable[Path], target: Path) -> int:
    """
    Merge raw documents and atomically replace `target`.

    Returns:
        Size of the merged document in characters
    """
    merged = await merge_documents(paths)
    await write_text_atomic(target, merged)
    logger.info(f"Merged document written to {target} ({len(merged) / 1024 / 1024:.2f} MB)")
    return len(merged)
