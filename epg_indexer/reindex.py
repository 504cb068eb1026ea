"""
Offline re-index

Rebuilds the combined name/id index from the raw XMLTV documents already in
the EPG directory, without downloading anything. Useful after restoring a
backup or dropping `.xml.gz` dumps into the directory by hand.

    epg-indexer-reindex [--epg-dir DIR]
"""
import argparse
import asyncio
import logging
import sys

from epg_indexer.config import settings, setup_logging
from epg_indexer.services.index_store import IndexStore, rebuild_from_directory


logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rebuild the combined EPG index from files on disk")
    parser.add_argument(
        "--epg-dir",
        default=settings.epg_dir,
        help="Directory holding raw XMLTV documents (default: %(default)s)",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=settings.epg_read_chunk_size,
        help="Bytes read per chunk while indexing (default: %(default)s)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging()

    store = IndexStore(args.epg_dir)
    combined = asyncio.run(rebuild_from_directory(store, args.chunk_size))

    if combined is None:
        logger.error("No EPG documents indexed in %s", args.epg_dir)
        return 2

    logger.info("OK: %s ids", len(combined.id_to_names))
    return 0


if __name__ == "__main__":
    sys.exit(main())
