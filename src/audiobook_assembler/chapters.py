"""Chapter timeline and FFMETADATA1 document generation.

build_timeline turns probed files (already in playback order) into
contiguous millisecond chapters; render_metadata_document writes them plus
the album-level tags in the format ffmpeg reads via -map_metadata.
"""

from __future__ import annotations

from collections.abc import Sequence

from .models import ChapterEntry, MergedMetadata, ProbeResult
from .sanitize import escape_metadata_value


def sort_key(result: ProbeResult) -> tuple[str, str]:
    """Case-sensitive file name, then full path as a tie-breaker."""
    return (result.source.name, str(result.source))


def chapter_title(result: ProbeResult) -> str:
    """The file's title tag, or its file stem when the tag is missing or blank."""
    title = (result.tags.get("title") or "").strip()
    return title or result.source.stem


def build_timeline(entries: Sequence[ProbeResult]) -> list[ChapterEntry]:
    """Compute contiguous chapters in the given order (no re-sorting)."""
    chapters: list[ChapterEntry] = []
    cumulative_ms = 0
    for entry in entries:
        end_ms = cumulative_ms + entry.duration_ms
        chapters.append(ChapterEntry(cumulative_ms, end_ms, chapter_title(entry)))
        cumulative_ms = end_ms
    return chapters


def render_metadata_document(
    metadata: MergedMetadata, chapters: Sequence[ChapterEntry]
) -> str:
    lines = [";FFMETADATA1"]
    if metadata.album:
        lines.append(f"title={escape_metadata_value(metadata.album)}")
        lines.append(f"album={escape_metadata_value(metadata.album)}")
    if metadata.artist:
        lines.append(f"artist={escape_metadata_value(metadata.artist)}")
    if metadata.composer:
        lines.append(f"composer={escape_metadata_value(metadata.composer)}")
    if metadata.date:
        lines.append(f"date={escape_metadata_value(metadata.date)}")
    lines.append("")

    for chapter in chapters:
        lines.extend(
            [
                "[CHAPTER]",
                "TIMEBASE=1/1000",
                f"START={chapter.start_ms}",
                f"END={chapter.end_ms}",
                f"TITLE={escape_metadata_value(chapter.title)}",
                "",
            ]
        )

    return "\n".join(lines) + "\n"
