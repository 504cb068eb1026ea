"""
Shared dataclasses used across the EPG refresh pipeline.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


RefreshPhase = Literal["start", "download", "index", "merge", "idle"]


@dataclass(frozen=True, slots=True)
class EpgSource:
    """A remote XMLTV feed configured by the channel-management layer."""
    name: str
    url: str


@dataclass(slots=True)
class FetchCacheEntry:
    """Conditional-request metadata remembered for one source."""
    etag: str | None = None
    last_modified: str | None = None
    updated_at: int | None = None  # epoch milliseconds

    @classmethod
    def from_dict(cls, payload: dict | None) -> FetchCacheEntry:
        payload = payload or {}
        return cls(
            etag=payload.get("etag"),
            last_modified=payload.get("lastModified"),
            updated_at=payload.get("updatedAt"),
        )

    def to_dict(self) -> dict:
        return {
            "etag": self.etag,
            "lastModified": self.last_modified,
            "updatedAt": self.updated_at,
        }


@dataclass(slots=True)
class SourceIdentityIndex:
    """Lowercased display name <-> channel identifier lookups for one document."""
    name_to_id: dict[str, str] = field(default_factory=dict)
    id_to_names: dict[str, list[str]] = field(default_factory=dict)


# The combined index has the same shape as a per-source one
CombinedIndex = SourceIdentityIndex


@dataclass(slots=True)
class SourceResult:
    """Outcome of refreshing a single source."""
    name: str
    file: str
    changed: bool = False
    error: str | None = None

    @property
    def status(self) -> Literal["unchanged", "changed", "error"]:
        if self.error is not None:
            return "error"
        return "changed" if self.changed else "unchanged"

    def to_dict(self) -> dict:
        payload = {
            "name": self.name,
            "file": self.file,
            "status": self.status,
            "changed": self.changed,
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class RefreshResult:
    """Outcome of one orchestrated refresh."""
    changed: bool = False
    results: list[SourceResult] = field(default_factory=list)
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "changed": self.changed,
            "skipped": self.skipped,
            "files": [result.to_dict() for result in self.results],
        }


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Progress notification emitted by refresh workers."""
    phase: RefreshPhase
    index: int | None = None
    total: int | None = None
    name: str | None = None


__all__ = [
    "CombinedIndex",
    "EpgSource",
    "FetchCacheEntry",
    "ProgressEvent",
    "RefreshPhase",
    "RefreshResult",
    "SourceIdentityIndex",
    "SourceResult",
]
