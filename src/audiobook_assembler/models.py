"""Core enums, constants, and record types for the audiobook assembler.

Enums:
    Stage          -- Assembly stage (probing through done, plus failed).
    UnitStatus     -- Outcome of one pool work unit (success, failed).
    FileStatus     -- Outcome of one batch file (converted, skipped, dry_run, failed).
    ErrorCategory  -- Error classification for log messages (transient, permanent).
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from types import MappingProxyType
from typing import Any


class Stage(StrEnum):
    PROBING = "probing"
    CONCATENATING = "concatenating"
    MUXING = "muxing"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


class UnitStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


class FileStatus(StrEnum):
    CONVERTED = "converted"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"
    FAILED = "failed"

    @property
    def symbol(self) -> str:
        """Single progress character printed by the batch CLI."""
        return _STATUS_SYMBOLS[self]


_STATUS_SYMBOLS: dict[FileStatus, str] = {
    FileStatus.CONVERTED: ".",
    FileStatus.SKIPPED: "_",
    FileStatus.DRY_RUN: "~",
    FileStatus.FAILED: "x",
}


class ErrorCategory(StrEnum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


# Input extensions picked up by the batch converter
BATCH_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".mp3",
        ".m4a",
        ".aac",
        ".aiff",
        ".flac",
        ".m4b",
        ".m4r",
    }
)


@dataclass(frozen=True)
class ProbeResult:
    """Duration and tags of one probed input file. Never mutated."""

    source: Path
    duration_ms: int
    tags: Mapping[str, str] = field(default_factory=dict)
    has_cover: bool = False

    def __post_init__(self) -> None:
        if self.duration_ms < 0:
            raise ValueError(f"duration_ms must be non-negative, got {self.duration_ms}")
        # Freeze the tag mapping so callers can't mutate a shared result
        object.__setattr__(self, "tags", MappingProxyType(dict(self.tags)))

    @property
    def name(self) -> str:
        return self.source.name


@dataclass(frozen=True)
class ChapterEntry:
    start_ms: int
    end_ms: int
    title: str

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms


@dataclass(frozen=True)
class MergedMetadata:
    """Album-level fields resolved across all inputs (empty string = absent)."""

    album: str = ""
    artist: str = ""
    composer: str = ""
    date: str = ""
    cover: bytes | None = None


@dataclass(frozen=True)
class EncodeOptions:
    """Encoder parameters for the concatenation step.

    bit_rate is in kbit/s, bit_depth in bits (16 -> sample format s16).
    legacy_device_compat disables AAC perceptual noise substitution, which
    some older players decode badly.
    """

    codec: str | None = None
    sample_rate: int | None = None
    bit_rate: int | None = None
    bit_depth: int | None = None
    legacy_device_compat: bool = False


@dataclass
class PipelineJob:
    """Mutable session state for one assembly run."""

    inputs: list[Path]
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    stage: Stage = Stage.PROBING
    artifacts: list[str] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)

    def scratch(self, suffix: str) -> str:
        """Return a job-unique scratch artifact name and remember it for cleanup."""
        name = f"{self.job_id}-{suffix}"
        if name not in self.artifacts:
            self.artifacts.append(name)
        return name


@dataclass(frozen=True)
class AssembledBook:
    """Finished audiobook container held in memory."""

    name: str
    data: bytes


@dataclass(frozen=True)
class WorkUnit:
    """Named nullary operation run by the concurrency pool."""

    name: str
    run: Callable[[], Any]


@dataclass
class UnitOutcome:
    name: str
    status: UnitStatus
    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status == UnitStatus.SUCCESS


@dataclass
class PoolResult:
    """Every per-unit outcome of one pool run, in completion order."""

    outcomes: list[UnitOutcome] = field(default_factory=list)
    peak_in_flight: int = 0
    cancelled: bool = False

    @property
    def succeeded(self) -> list[UnitOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> list[UnitOutcome]:
        return [o for o in self.outcomes if not o.ok]


@dataclass
class FileOutcome:
    source: Path
    output: Path
    status: FileStatus
    command: list[str] = field(default_factory=list)
    error: str = ""


@dataclass
class BatchReport:
    """Result summary from a batch tree conversion."""

    outcomes: list[FileOutcome] = field(default_factory=list)
    cancelled: bool = False

    def count(self, status: FileStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def converted(self) -> int:
        return self.count(FileStatus.CONVERTED)

    @property
    def skipped(self) -> int:
        return self.count(FileStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self.count(FileStatus.FAILED)

    @property
    def total(self) -> int:
        return len(self.outcomes)
