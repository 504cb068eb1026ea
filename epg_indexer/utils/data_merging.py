"""
Data merging utilities

This module handles merging of per-source identity indexes into one combined index.
"""
import logging
from collections.abc import Mapping, MutableMapping, Sequence


logger = logging.getLogger(__name__)


def merge_name_index(
    combined: MutableMapping[str, str],
    name_to_id: Mapping[str, str],
) -> int:
    """
    Merge a name -> id mapping into the combined mapping.

    Names already claimed by an earlier source keep their identifier.

    Args:
        combined: Combined name -> id mapping (modified in place)
        name_to_id: Mapping contributed by the next source

    Returns:
        Number of names newly added
    """
    added = 0
    for name, channel_id in name_to_id.items():
        if name in combined:
            if combined[name] != channel_id:
                logger.debug(
                    "Name %r already mapped to %s, ignoring %s",
                    name,
                    combined[name],
                    channel_id,
                )
            continue
        combined[name] = channel_id
        added += 1
    return added


def merge_id_names(
    combined: MutableMapping[str, list[str]],
    id_to_names: Mapping[str, Sequence[str]],
) -> int:
    """
    Union an id -> names mapping into the combined mapping.

    Name lists are deduplicated by exact string, keeping first-seen order.

    Args:
        combined: Combined id -> names mapping (modified in place)
        id_to_names: Mapping contributed by the next source

    Returns:
        Number of identifiers not previously present
    """
    new_ids = 0
    for channel_id, names in id_to_names.items():
        existing = combined.get(channel_id)
        if existing is None:
            existing = combined[channel_id] = []
            new_ids += 1
        for name in names:
            if name not in existing:
                existing.append(name)
    return new_ids
