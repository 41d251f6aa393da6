"""Merge engine for shiny records.

Reconciles a player's authoritative shiny records (from the store) with
secondary records fetched from ShinyBoard:

- secondary records are bucketed by species, keeping arrival order
- each local record takes the oldest unused secondary record of its species
- only configured fields are copied; configured-off fields are stripped
- no record is ever added, removed or renumbered

Everything here is pure: inputs are never mutated and no I/O happens.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .naming import normalize_species

FIELDS_TO_MERGE: Tuple[str, ...] = (
    "ivs",
    "nature",
    "location",
    "encounter_method",
    "date_caught",
    "encounter_count",
    "nickname",
)

# Superset of FIELDS_TO_MERGE; anything listed here but not merged in a run
# is removed from local records.
ALL_MERGEABLE_FIELDS: Tuple[str, ...] = FIELDS_TO_MERGE + ("variant",)

SPECIES_KEY = "pokemon_name"

# Never stripped or overwritten, whatever the field lists say.
PROTECTED_FIELDS = frozenset({"Pokemon"})


@dataclass(frozen=True)
class MergeStats:
    """Counters describing one player's merge pass."""

    local: int = 0
    secondary: int = 0
    matched: int = 0
    unmatched_local: int = 0
    leftover_secondary: int = 0


def group_by_species(secondary_records: Iterable[Mapping[str, Any]]) -> Dict[str, Deque[Mapping[str, Any]]]:
    """Bucket secondary records by normalized species, preserving arrival order.

    Records without a species name are dropped.
    """
    buckets: Dict[str, Deque[Mapping[str, Any]]] = {}
    for record in secondary_records:
        if not isinstance(record, Mapping):
            continue
        species = normalize_species(record.get(SPECIES_KEY))
        if not species:
            continue
        buckets.setdefault(species, deque()).append(record)
    return buckets


def fields_to_strip(
    mergeable_fields: Sequence[str],
    all_mergeable_fields: Sequence[str] = ALL_MERGEABLE_FIELDS,
) -> List[str]:
    """Return the mergeable fields that are switched off for this run."""
    enabled = set(mergeable_fields)
    return [
        field
        for field in all_mergeable_fields
        if field not in enabled and field not in PROTECTED_FIELDS
    ]


def extract_fields(secondary_record: Mapping[str, Any], mergeable_fields: Sequence[str]) -> Dict[str, Any]:
    """Pick the configured fields that are actually present on ``secondary_record``."""
    return {
        field: secondary_record[field]
        for field in mergeable_fields
        if field in secondary_record and field not in PROTECTED_FIELDS
    }


def merge_player_with_stats(
    record: Optional[Mapping[str, Any]],
    secondary_records: Sequence[Mapping[str, Any]],
    mergeable_fields: Sequence[str],
    all_mergeable_fields: Sequence[str] = ALL_MERGEABLE_FIELDS,
) -> Tuple[Optional[Mapping[str, Any]], MergeStats]:
    """Merge one player's record and report what happened.

    Returns ``(updated_record, stats)``. When ``record`` is not a mapping or
    has no ``shinies`` mapping, the input is returned as-is with empty stats.
    """
    if not isinstance(record, Mapping) or not isinstance(record.get("shinies"), Mapping):
        return record, MergeStats(secondary=len(secondary_records or ()))

    secondary_records = secondary_records or ()
    buckets = group_by_species(secondary_records)
    strip = fields_to_strip(mergeable_fields, all_mergeable_fields)

    merged_shinies: Dict[Any, Any] = {}
    matched = 0
    for shiny_id, shiny in record["shinies"].items():
        if not isinstance(shiny, Mapping):
            # Not a record we know how to patch; keep it verbatim.
            merged_shinies[shiny_id] = shiny
            continue

        working = {key: value for key, value in shiny.items() if key not in strip}

        bucket = buckets.get(normalize_species(shiny.get("Pokemon")))
        if bucket:
            match = bucket.popleft()
            working.update(extract_fields(match, mergeable_fields))
            matched += 1

        merged_shinies[shiny_id] = working

    stats = MergeStats(
        local=len(merged_shinies),
        secondary=len(secondary_records),
        matched=matched,
        unmatched_local=len(merged_shinies) - matched,
        leftover_secondary=sum(len(bucket) for bucket in buckets.values()),
    )
    updated = dict(record)
    updated["shinies"] = merged_shinies
    return updated, stats


def merge_player(
    record: Optional[Mapping[str, Any]],
    secondary_records: Sequence[Mapping[str, Any]],
    mergeable_fields: Sequence[str],
    all_mergeable_fields: Sequence[str] = ALL_MERGEABLE_FIELDS,
) -> Optional[Mapping[str, Any]]:
    """Overlay secondary data onto one player's shiny records.

    Species are paired first-in first-out: the Nth local record of a species
    (in the store's key order) receives the Nth secondary record of that
    species (in fetch order). Surplus secondary records are ignored; surplus
    local records only get the strip step.
    """
    updated, _ = merge_player_with_stats(
        record, secondary_records, mergeable_fields, all_mergeable_fields
    )
    return updated


def recalc_shiny_count(record: Optional[Mapping[str, Any]]) -> int:
    """Count shinies that have not been sold (``Sold != "Yes"``)."""
    shinies = (record or {}).get("shinies")
    if not isinstance(shinies, Mapping):
        return 0
    return sum(
        1
        for shiny in shinies.values()
        if not (isinstance(shiny, Mapping) and shiny.get("Sold") == "Yes")
    )
