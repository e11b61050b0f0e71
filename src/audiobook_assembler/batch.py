"""Batch transcode of a directory tree, mirrored into an output tree.

Each audio file under the input root becomes one pool work unit: skip if
the mirrored output exists (unless forced), probe, then transcode with
embedded artwork copied through. Per-file failures are recorded in the
report and never stop the batch.
"""

from __future__ import annotations

import functools
import os
import threading
import uuid
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from .errors import CancelledError, EncodeError, ValidationError, categorize_exit_code
from .models import BATCH_EXTENSIONS, BatchReport, FileOutcome, FileStatus, WorkUnit
from .pool import run_pool
from .probe import probe

if TYPE_CHECKING:
    from .config import PipelineConfig
    from .engine import Engine
    from .models import ProbeResult

log = logger.bind(stage="batch")


def find_audio_files(
    root: Path, extensions: frozenset[str] = BATCH_EXTENSIONS
) -> Iterator[Path]:
    """Yield matching audio files under root, lazily and in sorted order per directory."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            if Path(name).suffix.lower() in extensions:
                yield Path(dirpath) / name


def mirror_path(source: Path, input_root: Path, output_root: Path, extension: str) -> Path:
    """Output path with the same relative location and the target extension."""
    relative = source.relative_to(input_root)
    return (output_root / relative).with_suffix(extension)


class BatchConverter:
    """Transcode every audio file in a tree through the concurrency pool.

    Attributes:
        engine: Open engine shared by all units
        config: Batch codec, bitrate, extension and concurrency settings
        cancel: Optional event; stops admission of further files
    """

    def __init__(
        self,
        engine: Engine,
        config: PipelineConfig,
        cancel: threading.Event | None = None,
    ) -> None:
        self.engine = engine
        self.config = config
        self.cancel = cancel

    def concurrency_limit(self) -> int:
        """Configured limit, forced to 1 for engines that can't run calls concurrently."""
        limit = self.config.resolved_batch_concurrency()
        if not self.engine.concurrent_safe and limit > 1:
            log.warning(
                f"Engine is not safe for concurrent calls, using 1 worker instead of {limit}"
            )
            return 1
        return limit

    def convert_tree(
        self,
        input_root: Path,
        output_root: Path,
        force: bool = False,
        dry_run: bool = False,
        on_outcome: Callable[[FileOutcome], None] | None = None,
    ) -> BatchReport:
        """Convert all audio files under input_root into output_root.

        Returns:
            BatchReport with one FileOutcome per file admitted and not cancelled

        Raises:
            ValidationError: If input_root is not a directory
        """
        input_root = Path(input_root)
        output_root = Path(output_root)
        if not input_root.is_dir():
            raise ValidationError(f"Input directory does not exist: {input_root}")
        if not dry_run:
            output_root.mkdir(parents=True, exist_ok=True)

        log.debug(f"input={input_root} output={output_root} force={force} dry_run={dry_run}")

        report_lock = threading.Lock()
        report = BatchReport()

        def _record(outcome: FileOutcome) -> FileOutcome:
            with report_lock:
                report.outcomes.append(outcome)
            if on_outcome is not None:
                on_outcome(outcome)
            return outcome

        def _units() -> Iterator[WorkUnit]:
            # Mirrored target -> first source mapped to it (track.mp3 and track.flac collide)
            claimed: dict[Path, Path] = {}
            for source in find_audio_files(input_root):
                output = mirror_path(source, input_root, output_root, self.config.batch_extension)
                name = str(source.relative_to(input_root))
                if output in claimed:
                    error = f"Output {output} already claimed by {claimed[output]}"
                    log.error(f"Not converting {source}: {error}")
                    outcome = FileOutcome(source, output, FileStatus.FAILED, error=error)
                    yield WorkUnit(name, functools.partial(_record, outcome))
                    continue
                claimed[output] = source
                yield WorkUnit(
                    name,
                    functools.partial(
                        self._convert_file_safe, source, output, force, dry_run, _record
                    ),
                )

        result = run_pool(_units(), self.concurrency_limit(), self.cancel)
        report.cancelled = result.cancelled or (
            self.cancel is not None and self.cancel.is_set()
        )

        log.info(
            f"Batch complete: {report.converted} converted, {report.skipped} skipped, "
            f"{report.failed} failed, {report.total} total"
        )
        return report

    def _convert_file_safe(
        self,
        source: Path,
        output: Path,
        force: bool,
        dry_run: bool,
        record: Callable[[FileOutcome], FileOutcome],
    ) -> FileOutcome | None:
        """Wrapper for convert_file that turns any error into a failed outcome.

        A unit cut short by cancellation is discarded, not counted as failed.
        """
        try:
            outcome = self.convert_file(source, output, force=force, dry_run=dry_run)
        except CancelledError:
            log.debug(f"Cancelled: {source}")
            return None
        except Exception as e:
            log.error(f"Error converting {source.name}: {e}")
            outcome = FileOutcome(source, output, FileStatus.FAILED, error=str(e))
        return record(outcome)

    def convert_file(
        self,
        source: Path,
        output: Path,
        force: bool = False,
        dry_run: bool = False,
    ) -> FileOutcome:
        """Transcode one file to its mirrored output path.

        Raises:
            ProbeError: If the source cannot be probed
            EncodeError: If the transcode returns a non-zero status
        """
        if output.exists() and not force:
            log.debug(f"Skip (exists): {output}")
            return FileOutcome(source, output, FileStatus.SKIPPED)

        info = probe(self.engine, source, cancel=self.cancel)
        command = self.build_command(source, output, info)

        if dry_run:
            log.info(f"[DRY-RUN] Would convert: {source}")
            return FileOutcome(source, output, FileStatus.DRY_RUN, command=command)

        output.parent.mkdir(parents=True, exist_ok=True)
        # Target path only ever holds a complete file (skip check relies on it)
        partial = output.with_name(f".{output.stem}.{uuid.uuid4().hex}.partial{output.suffix}")
        args = command[:-1] + [str(partial)]
        try:
            result = self.engine.transform(args, cancel=self.cancel)
            if result.returncode != 0:
                stderr = (result.stderr or "").strip()[-500:]
                category = categorize_exit_code(result.returncode)
                log.error(f"ffmpeg failed for {source.name} ({category.value}): {stderr}")
                raise EncodeError("ffmpeg", result.returncode, stderr)
            os.replace(partial, output)
        finally:
            partial.unlink(missing_ok=True)

        log.debug(f"Converted: {source} -> {output}")
        return FileOutcome(source, output, FileStatus.CONVERTED, command=command)

    def build_command(self, source: Path, output: Path, info: ProbeResult) -> list[str]:
        """Transcode arguments; album_artist, when present, replaces artist."""
        cmd = [
            "-i", str(source.absolute()),
            # encoding
            "-codec:a", self.config.batch_codec,
            "-b:a", f"{self.config.batch_bitrate}k",
            "-map_metadata", "0",
            # cover
            "-c:v", "copy",
            "-loglevel", "error",
        ]
        album_artist = (info.tags.get("album_artist") or "").strip()
        if album_artist:
            cmd += ["-metadata", f"artist={album_artist}"]
        cmd.append(str(output.absolute()))
        return cmd
