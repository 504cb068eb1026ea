"""
SQLAlchemy ORM Models for EPG Indexer

This module defines the tables shared with the channel-management layer:
configured EPG sources and the channels the auto-mapper assigns ids to.
"""
from datetime import datetime, timezone
from sqlalchemy import String, DateTime, Index, Integer
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models"""
    pass


class EpgSourceRow(Base):
    """A remote XMLTV feed to refresh"""
    __tablename__ = "epg_sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    url: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    def __repr__(self) -> str:
        return f"<EpgSourceRow(id={self.id}, name={self.name})>"


class Channel(Base):
    """Channel whose EPG identifier may be assigned by the auto-mapper"""
    __tablename__ = "channels"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    source_type: Mapped[str | None] = mapped_column(String, nullable=True)
    tvg_id: Mapped[str | None] = mapped_column(String, nullable=True)
    epg_source: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("idx_channels_source_type", "source_type"),
    )

    def __repr__(self) -> str:
        return f"<Channel(id={self.id}, name={self.name}, tvg_id={self.tvg_id})>"
