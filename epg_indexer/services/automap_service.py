"""
Auto-Mapping Service

Proposes an EPG identifier for every channel that has none, by comparing the
channel's display name with every name in the combined id -> names index.
"""
from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field


logger = logging.getLogger(__name__)

MAX_SAMPLES = 10
PREFIX_BONUS = 0.1

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")

AssignCallback = Callable[[int, str, str | None], Awaitable[None]]


@dataclass(slots=True)
class MappableChannel:
    """The slice of a channel row the matcher needs."""
    id: int
    name: str
    tvg_id: str | None = None
    epg_source: str | None = None


@dataclass(slots=True)
class MatchSample:
    channel: str
    match: str
    tvg_id: str
    score: float

    def to_dict(self) -> dict:
        return {
            "channel": self.channel,
            "match": self.match,
            "tvg_id": self.tvg_id,
            "score": self.score,
        }


@dataclass(slots=True)
class AutoMapResult:
    updated: int = 0
    skipped: int = 0
    min_score: float = 0.0
    samples: list[MatchSample] = field(default_factory=list)


def normalize_name(value: str | None) -> str:
    """Lowercase, strip diacritics and punctuation, collapse whitespace."""
    text = unicodedata.normalize("NFKD", str(value or "").lower())
    text = "".join(char for char in text if not unicodedata.combining(char))
    text = _NON_WORD.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def _word_set(normalized: str) -> set[str]:
    return {word for word in normalized.split(" ") if word}


def similarity(a: str | None, b: str | None) -> float:
    """
    Word-set Jaccard similarity plus a prefix bonus, capped at 1.0.

    Returns 0 when either name has no words after normalization.
    """
    norm_a, norm_b = normalize_name(a), normalize_name(b)
    words_a, words_b = _word_set(norm_a), _word_set(norm_b)
    if not words_a or not words_b:
        return 0.0

    shared = len(words_a & words_b)
    jaccard = shared / (len(words_a) + len(words_b) - shared)
    bonus = PREFIX_BONUS if norm_b.startswith(norm_a) or norm_a.startswith(norm_b) else 0.0
    return min(1.0, jaccard + bonus)


def find_best_match(
    channel_name: str,
    id_to_names: Mapping[str, Sequence[str]],
) -> tuple[str | None, str | None, float]:
    """
    Score a channel name against every candidate name.

    Returns:
        (identifier, matched name, score); ties keep the first candidate found
    """
    best_id: str | None = None
    best_name: str | None = None
    best_score = 0.0

    for channel_id, names in id_to_names.items():
        for candidate in names or ():
            score = similarity(channel_name, candidate)
            if score > best_score:
                best_id, best_name, best_score = channel_id, candidate, score

    return best_id, best_name, best_score


async def auto_map_channels(
    channels: Iterable[MappableChannel],
    id_to_names: Mapping[str, Sequence[str]],
    *,
    min_score: float,
    dry_run: bool = False,
    label: str | None = None,
    assign: AssignCallback | None = None,
) -> AutoMapResult:
    """
    Assign EPG identifiers to unmapped channels.

    Channels that already carry an identifier are counted as skipped and never
    scored. Unless `dry_run` is set, every accepted match is persisted through
    `assign(channel_id, tvg_id, label or channel.epg_source)`.

    Args:
        channels: Channels to consider
        id_to_names: Combined identifier -> names index
        min_score: Minimum similarity for a match to be accepted
        dry_run: Report matches without persisting them
        label: EPG source label recorded with each assignment
        assign: Persistence callback (required unless dry_run)

    Returns:
        AutoMapResult with counters and up to ten sample matches
    """
    if not dry_run and assign is None:
        raise ValueError("assign callback is required unless dry_run is set")

    result = AutoMapResult(min_score=min_score)

    for channel in channels:
        if channel.tvg_id:
            result.skipped += 1
            continue

        best_id, best_name, best_score = find_best_match(channel.name, id_to_names)

        if best_id is None or best_score < min_score:
            result.skipped += 1
            continue

        if not dry_run:
            await assign(channel.id, best_id, label or channel.epg_source or None)

        result.updated += 1
        if len(result.samples) < MAX_SAMPLES:
            result.samples.append(
                MatchSample(
                    channel=channel.name,
                    match=best_name or "",
                    tvg_id=best_id,
                    score=round(best_score, 3),
                )
            )

    logger.info(
        "Auto-mapping %s: %s updated, %s skipped (min_score=%.2f)",
        "dry run" if dry_run else "applied",
        result.updated,
        result.skipped,
        min_score,
    )
    return result
