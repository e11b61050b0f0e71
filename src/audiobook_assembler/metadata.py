"""Album-level metadata resolution under first-non-empty precedence."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from loguru import logger

from .models import MergedMetadata, ProbeResult

log = logger.bind(stage="metadata")

MERGED_FIELDS = ("album", "artist", "composer", "date")


def first_tag(results: Iterable[ProbeResult], key: str) -> str:
    """Return the first non-blank value of a tag, or an empty string."""
    for result in results:
        value = (result.tags.get(key) or "").strip()
        if value:
            return value
    return ""


def merge_metadata(
    results: Sequence[ProbeResult],
    cover_candidates: Iterable[bytes | None] = (),
) -> MergedMetadata:
    """Resolve album, artist, composer, date and cover across all inputs.

    Each field takes the first non-empty value in the order given, so the
    first file wins. cover_candidates is consumed lazily and stops at the
    first non-None entry, which lets callers pass a generator of extractions.
    """
    fields = {key: first_tag(results, key) for key in MERGED_FIELDS}

    cover = None
    for candidate in cover_candidates:
        if candidate is not None:
            cover = candidate
            break

    merged = MergedMetadata(cover=cover, **fields)
    log.debug(
        f"Merged metadata: album={merged.album!r} artist={merged.artist!r} "
        f"composer={merged.composer!r} date={merged.date!r} cover={cover is not None}"
    )
    return merged
