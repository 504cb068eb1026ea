"""
Database operations for EPG sources and channels

This module contains the queries the refresh pipeline and the auto-mapper
need from the channel-management tables.
"""
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from epg_indexer.models import Channel, EpgSourceRow
from epg_indexer.services.automap_service import MappableChannel
from epg_indexer.services.fetch_types import EpgSource


logger = logging.getLogger(__name__)


class DuplicateSourceError(ValueError):
    """Raised when an EPG source name is already taken"""
    pass


async def list_epg_sources(db: AsyncSession) -> list[EpgSourceRow]:
    """Return all configured EPG sources in creation order."""
    result = await db.execute(select(EpgSourceRow).order_by(EpgSourceRow.id))
    return list(result.scalars().all())


async def load_refresh_sources(db: AsyncSession) -> list[EpgSource]:
    """Return configured sources as refresh inputs."""
    rows = await list_epg_sources(db)
    return [EpgSource(name=row.name, url=row.url) for row in rows]


async def add_epg_source(db: AsyncSession, name: str, url: str) -> EpgSourceRow:
    """
    Insert a new EPG source.

    Raises:
        DuplicateSourceError: If a source with the same name exists
    """
    row = EpgSourceRow(name=name, url=url)
    db.add(row)
    try:
        await db.flush()
    except IntegrityError as exc:
        raise DuplicateSourceError(f"EPG source '{name}' already exists") from exc

    logger.info("Added EPG source %s (id=%s)", name, row.id)
    return row


async def list_channels(db: AsyncSession, source_type: str | None = None) -> list[MappableChannel]:
    """
    Return channels ordered by name, optionally limited to one source type.
    """
    stmt = select(Channel).order_by(Channel.name)
    if source_type:
        stmt = stmt.where(Channel.source_type == source_type)

    result = await db.execute(stmt)
    return [
        MappableChannel(
            id=row.id,
            name=row.name,
            tvg_id=row.tvg_id,
            epg_source=row.epg_source,
        )
        for row in result.scalars().all()
    ]


async def assign_channel_epg(
    db: AsyncSession,
    channel_id: int,
    tvg_id: str,
    epg_source: str | None,
) -> None:
    """Persist an EPG identifier and source label onto a channel."""
    await db.execute(
        update(Channel)
        .where(Channel.id == channel_id)
        .values(tvg_id=tvg_id, epg_source=epg_source)
    )
    logger.debug("Assigned %s (%s) to channel %s", tvg_id, epg_source, channel_id)
