"""Frequency consensus over the raw tags stored for one seed."""

from collections import Counter
from typing import Iterable, Optional

from palette_tagging.schemas.schemas import (
    CATEGORICAL_FIELDS,
    LEGACY_DOMINANT_COLORS_KEY,
    TAG_ARRAY_FIELDS,
    ColorDescription,
    TagSummary,
)


def _array_values(payload: dict, field: str) -> list:
    values = payload.get(field)
    if values is None and field == "dominant_colors":
        values = payload.get(LEGACY_DOMINANT_COLORS_KEY)
    if isinstance(values, str):
        return [values]
    return values or []


def aggregate_tags(
    payloads: Iterable[Optional[dict]],
    seed: str,
    color_description: ColorDescription,
    source_prompt_version: str,
) -> TagSummary:
    """
    Count categorical values and tag occurrences across valid provider payloads.

    ``None`` payloads (failed provider calls) are ignored entirely.
    """
    categorical = {field: Counter() for field in CATEGORICAL_FIELDS}
    tags = {field: Counter() for field in TAG_ARRAY_FIELDS}
    total = 0

    for payload in payloads:
        if not payload:
            continue
        total += 1
        for field in CATEGORICAL_FIELDS:
            value = payload.get(field)
            if value:
                categorical[field][value] += 1
        for field in TAG_ARRAY_FIELDS:
            for tag in _array_values(payload, field):
                if tag:
                    tags[field][tag] += 1

    return TagSummary(
        seed=seed,
        source_prompt_version=source_prompt_version,
        color_description=color_description,
        total_valid_responses=total,
        categorical={field: dict(counter.most_common()) for field, counter in categorical.items()},
        tags={field: dict(counter.most_common()) for field, counter in tags.items()},
    )


def format_frequencies(counts: dict[str, int], total: int) -> str:
    """Render counts as "value: count/total" pairs, most frequent first."""
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return ", ".join(f"{value}: {count}/{total}" for value, count in ranked)
