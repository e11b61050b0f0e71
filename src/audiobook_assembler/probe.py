"""Audio file inspection through the engine's probe mode."""

from __future__ import annotations

import json
import threading
import uuid
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from .errors import ArtifactError, ProbeError
from .models import ProbeResult

if TYPE_CHECKING:
    from .engine import Engine

log = logger.bind(stage="probe")


def _scratch(prefix: str, suffix: str) -> str:
    """Per-call scratch name so concurrent probes never collide."""
    return f"{prefix}-{uuid.uuid4().hex}{suffix}"


def _discard(engine: Engine, scratch: str) -> None:
    """Delete a scratch artifact without masking the error in flight."""
    try:
        if engine.has_artifact(scratch):
            engine.delete_artifact(scratch)
    except ArtifactError as e:
        log.warning(f"Failed to remove scratch artifact {scratch}: {e}")


def probe(
    engine: Engine,
    file: Path,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> ProbeResult:
    """Probe one file for its duration and tags.

    Asks the engine for streams plus stream/format tags as JSON written to a
    scratch artifact, parses it, and always deletes the scratch artifact.
    Raises ProbeError on a non-zero status or unparseable output.
    """
    scratch = _scratch("probe", ".json")
    try:
        result = engine.probe(
            [
                str(file),
                "-loglevel", "error",
                "-show_streams",
                "-show_entries", "format=duration:stream_tags:format_tags",
                "-of", "json",
                "-o", scratch,
            ],
            timeout=timeout,
            cancel=cancel,
        )
        if result.returncode != 0:
            raise ProbeError("ffprobe", result.returncode, (result.stderr or "").strip())
        try:
            raw = engine.read_artifact(scratch, encoding="utf-8")
        except ArtifactError as e:
            raise ProbeError("ffprobe", result.returncode, f"no probe output: {e}") from e
        return parse_probe_output(file, raw)
    finally:
        _discard(engine, scratch)


def parse_probe_output(file: Path, raw: str) -> ProbeResult:
    """Build a ProbeResult from ffprobe JSON output.

    Duration comes from the first audio stream, falling back to the
    container duration. Tag keys are lowercased; format tags win over the
    audio stream's tags (FLAC/Ogg keep their tags on the stream).
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProbeError("ffprobe", 0, f"unparseable output for {file.name}: {e}") from e
    if not isinstance(data, dict):
        raise ProbeError("ffprobe", 0, f"unexpected output for {file.name}")

    streams = data.get("streams") or []
    fmt = data.get("format") or {}
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
    if audio is None:
        raise ProbeError("ffprobe", 0, f"no audio stream in {file.name}")

    duration_ms = _duration_ms(audio.get("duration"))
    if duration_ms is None:
        duration_ms = _duration_ms(fmt.get("duration"))
    if duration_ms is None:
        raise ProbeError("ffprobe", 0, f"no duration reported for {file.name}")

    tags: dict[str, str] = {}
    for source in (audio.get("tags") or {}, fmt.get("tags") or {}):
        for key, value in source.items():
            tags[key.lower()] = str(value)

    has_cover = any(
        s.get("codec_type") == "video"
        and (s.get("disposition") or {}).get("attached_pic") == 1
        for s in streams
    )

    log.debug(f"Probed {file.name}: {duration_ms}ms, {len(tags)} tags, cover={has_cover}")
    return ProbeResult(source=file, duration_ms=duration_ms, tags=tags, has_cover=has_cover)


def _duration_ms(value) -> int | None:
    if value in (None, "", "N/A"):
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds < 0:
        return None
    return round(seconds * 1000)


def extract_cover(
    engine: Engine,
    file: Path,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> bytes | None:
    """Copy the embedded picture out of a file. Returns None if there is none."""
    scratch = _scratch("cover", ".jpg")
    try:
        result = engine.transform(
            ["-loglevel", "error", "-i", str(file), "-an", "-vcodec", "copy", scratch],
            timeout=timeout,
            cancel=cancel,
        )
        if result.returncode != 0 or not engine.has_artifact(scratch):
            log.debug(f"No cover in {file.name}")
            return None
        data = engine.read_artifact(scratch)
        log.debug(f"Cover found in {file.name} ({len(data)} bytes)")
        return data or None
    finally:
        _discard(engine, scratch)


def duration_to_timestamp(seconds: float) -> str:
    """Convert seconds to HH:MM:SS."""
    total = int(seconds)
    h = total // 3600
    m = (total % 3600) // 60
    s = total % 60
    return f"{h:02d}:{m:02d}:{s:02d}"
