"""Filename sanitization and escaping for engine input files."""

import re
from pathlib import Path

from loguru import logger

log = logger.bind(stage="sanitize")

# Characters with special meaning in ffmpeg's FFMETADATA1 format
_METADATA_SPECIAL = re.compile(r"([=;#\\\n])")


def sanitize_filename(filename: str) -> str:
    """Sanitize a filename component (not a full path).

    Replaces unsafe chars with underscores, removes leading dots,
    collapses repeated underscores, truncates to 255 bytes preserving extension.
    """
    log.debug(f"sanitize_filename(filename='{filename}')")

    # Replace unsafe characters
    sanitized = re.sub(r'[/\\:"*?<>|;]+', '_', filename)
    # Remove leading dots/underscores
    sanitized = re.sub(r'^[._]+', '', sanitized)
    # Remove trailing dots/underscores
    sanitized = re.sub(r'[._]+$', '', sanitized)
    # Collapse repeated underscores
    sanitized = re.sub(r'__+', '_', sanitized)

    # Truncate to 255 bytes preserving extension
    original_len = len(sanitized.encode('utf-8'))
    if original_len > 255:
        p = Path(sanitized)
        ext = p.suffix
        stem = p.stem
        if ext:
            while len((stem + ext).encode('utf-8')) > 255 and stem:
                stem = stem[:-1]
            sanitized = stem + ext
        else:
            while len(sanitized.encode('utf-8')) > 255 and sanitized:
                sanitized = sanitized[:-1]
        log.debug(f"Truncated filename from {original_len} to {len(sanitized.encode('utf-8'))} bytes: '{sanitized}'")

    return sanitized


def output_name(album: str, default: str = "output", suffix: str = ".m4b") -> str:
    """Build the assembled container's file name from the album title."""
    stem = sanitize_filename(album.strip()) if album else ""
    return f"{stem or default}{suffix}"


def escape_concat_path(path: str) -> str:
    """Escape a path for a single-quoted concat demuxer entry.

    The demuxer has no escape inside quotes, so each ' closes the quote,
    emits an escaped quote, and reopens: O'Brien -> O'\\''Brien.
    """
    return path.replace("'", "'\\''")


def escape_metadata_value(value: str) -> str:
    """Backslash-escape '=', ';', '#', '\\' and newlines for FFMETADATA1."""
    return _METADATA_SPECIAL.sub(r"\\\1", value)
