"""
Streaming identity indexer for XMLTV documents

Extracts channel identifier -> display name lookups from an XMLTV byte stream
without building the whole document tree. Guide feeds are routinely hundreds of
megabytes, so the parser is fed chunk by chunk and processed elements are
discarded as soon as they close.
"""
from __future__ import annotations

import logging
import zlib
from collections.abc import AsyncIterable, AsyncIterator
from enum import Enum, auto
from pathlib import Path

import aiofiles
from lxml import etree  # type: ignore

from epg_indexer.errors import MalformedDocumentError
from epg_indexer.services.fetch_types import SourceIdentityIndex


logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


class IndexerState(Enum):
    OUTSIDE = auto()
    IN_CHANNEL = auto()
    IN_DISPLAY_NAME = auto()
    IN_PROGRAMME = auto()
    IN_TITLE = auto()


def _local_name(element: etree._Element) -> str | None:
    tag = element.tag
    if not isinstance(tag, str):
        return None
    return tag.rsplit("}", 1)[-1]


def _element_text(element: etree._Element) -> str:
    return "".join(element.itertext()).strip().lower()


class IdentityIndexBuilder:
    """
    Push-fed XMLTV tokenizer driving an explicit state machine.

    Feed raw bytes with `feed()`; call `close()` once the stream ends to obtain
    the finished SourceIdentityIndex. Any tokenizer failure raises
    MalformedDocumentError and the builder must be discarded.
    """

    def __init__(self) -> None:
        self._parser = etree.XMLPullParser(
            events=("start", "end"),
            resolve_entities=False,
            no_network=True,
            huge_tree=True,
            remove_comments=True,
            remove_pis=True,
        )
        # id -> insertion-ordered set of lowercased names
        self._names_by_id: dict[str, dict[str, None]] = {}
        self._state = IndexerState.OUTSIDE
        self._channel_id: str | None = None
        self._programme_id: str | None = None
        self._title_seen = False
        self._closed = False

    @property
    def state(self) -> IndexerState:
        return self._state

    def feed(self, chunk: bytes) -> None:
        """Tokenize the next chunk of the document."""
        if self._closed:
            raise RuntimeError("IdentityIndexBuilder is already closed")
        try:
            self._parser.feed(chunk)
            self._drain()
        except etree.XMLSyntaxError as exc:
            raise MalformedDocumentError(f"Malformed XMLTV document: {exc}") from exc

    def close(self) -> SourceIdentityIndex:
        """Finish tokenizing and build the name/id lookups."""
        self._closed = True
        try:
            self._parser.close()
            self._drain()
        except etree.XMLSyntaxError as exc:
            raise MalformedDocumentError(f"Malformed XMLTV document: {exc}") from exc
        return self._build_index()

    def _drain(self) -> None:
        for event, element in self._parser.read_events():
            if event == "start":
                self._on_start(element)
            else:
                self._on_end(element)

    def _register(self, channel_id: str) -> dict[str, None]:
        return self._names_by_id.setdefault(channel_id, {})

    def _on_start(self, element: etree._Element) -> None:
        name = _local_name(element)

        if self._state is IndexerState.OUTSIDE:
            if name == "channel":
                self._state = IndexerState.IN_CHANNEL
                self._channel_id = element.get("id") or None
                if self._channel_id:
                    self._register(self._channel_id)
            elif name == "programme":
                self._state = IndexerState.IN_PROGRAMME
                self._programme_id = element.get("channel") or None
                self._title_seen = False
                # Register the id even if no <channel> ever describes it
                if self._programme_id:
                    self._register(self._programme_id)

        elif self._state is IndexerState.IN_CHANNEL and name == "display-name":
            self._state = IndexerState.IN_DISPLAY_NAME

        elif self._state is IndexerState.IN_PROGRAMME and name == "title":
            self._state = IndexerState.IN_TITLE

    def _on_end(self, element: etree._Element) -> None:
        name = _local_name(element)

        if self._state is IndexerState.IN_DISPLAY_NAME and name == "display-name":
            text = _element_text(element)
            if text and self._channel_id:
                self._register(self._channel_id)[text] = None
            self._state = IndexerState.IN_CHANNEL

        elif self._state is IndexerState.IN_CHANNEL and name == "channel":
            self._state = IndexerState.OUTSIDE
            self._channel_id = None
            self._release(element)

        elif self._state is IndexerState.IN_TITLE and name == "title":
            if not self._title_seen and self._programme_id:
                text = _element_text(element)
                names = self._register(self._programme_id)
                # Titles are a last resort: display names always take precedence
                if text and not names:
                    names[text] = None
            self._title_seen = True
            self._state = IndexerState.IN_PROGRAMME

        elif self._state is IndexerState.IN_PROGRAMME and name == "programme":
            self._state = IndexerState.OUTSIDE
            self._programme_id = None
            self._title_seen = False
            self._release(element)

    @staticmethod
    def _release(element: etree._Element) -> None:
        element.clear()
        parent = element.getparent()
        if parent is None:
            return
        while element.getprevious() is not None:
            del parent[0]

    def _build_index(self) -> SourceIdentityIndex:
        id_to_names = {
            channel_id: list(names) for channel_id, names in self._names_by_id.items()
        }
        name_to_id: dict[str, str] = {}
        for channel_id, names in id_to_names.items():
            for name in names:
                name_to_id.setdefault(name, channel_id)
        return SourceIdentityIndex(name_to_id=name_to_id, id_to_names=id_to_names)


async def build_identity_index(chunks: AsyncIterable[bytes]) -> SourceIdentityIndex:
    """
    Build a SourceIdentityIndex from an XMLTV byte stream.

    Args:
        chunks: Async iterable of raw (already content-decoded) document bytes

    Returns:
        SourceIdentityIndex with name->id and id->names lookups

    Raises:
        MalformedDocumentError: If the document cannot be tokenized
    """
    builder = IdentityIndexBuilder()
    async for chunk in chunks:
        if chunk:
            builder.feed(chunk)
    index = builder.close()
    logger.debug(
        "Identity index built: %s ids, %s names",
        len(index.id_to_names),
        len(index.name_to_id),
    )
    return index


async def iter_file_chunks(
    file_path: Path,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> AsyncIterator[bytes]:
    """Yield the bytes of a file, gunzipping `.gz` files on the fly."""
    decompressor = zlib.decompressobj(zlib.MAX_WBITS | 16) if file_path.suffix == ".gz" else None

    async with aiofiles.open(file_path, "rb") as f:
        while True:
            chunk = await f.read(chunk_size)
            if not chunk:
                break
            if decompressor is None:
                yield chunk
                continue
            try:
                data = decompressor.decompress(chunk)
            except zlib.error as exc:
                raise MalformedDocumentError(f"Corrupt gzip file {file_path}: {exc}") from exc
            if data:
                yield data

    if decompressor is not None:
        tail = decompressor.flush()
        if tail:
            yield tail


async def index_file(
    file_path: Path | str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> SourceIdentityIndex:
    """
    Stream an XMLTV file from disk through the identity indexer.

    Args:
        file_path: Path to an `.xml` or `.xml.gz` document
        chunk_size: Bytes read per chunk

    Returns:
        SourceIdentityIndex for the document

    Raises:
        MalformedDocumentError: If the document cannot be tokenized
        FileNotFoundError: If the file doesn't exist
    """
    if isinstance(file_path, str):
        file_path = Path(file_path)

    logger.info(f"Indexing XMLTV file: {file_path}")
    logger.debug(f"  File size: {file_path.stat().st_size / 1024 / 1024:.2f} MB")

    index = await build_identity_index(iter_file_chunks(file_path, chunk_size))

    logger.info(
        f"Indexing complete for {file_path.name}: "
        f"{len(index.id_to_names)} ids, {len(index.name_to_id)} names"
    )
    return index
