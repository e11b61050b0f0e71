"""Assemble several audio files into one chaptered M4B audiobook.

Stages run strictly in order, each consuming the previous stage's output:

    probing        -- probe every input, sort by file name, build the
                      chapter timeline and merge album metadata + cover
    concatenating  -- write the concat manifest and re-encode all inputs
                      into one intermediate audio stream
    muxing         -- combine audio, cover (attached picture) and the
                      FFMETADATA1 document into the final container
    finalizing     -- read the container back as an in-memory blob

Every scratch artifact a run creates is recorded on its PipelineJob and
deleted in a finally block, whether the run succeeds, fails, or is
cancelled.
"""

from __future__ import annotations

import functools
import threading
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from .chapters import build_timeline, render_metadata_document, sort_key
from .errors import (
    ArtifactError,
    AssemblyError,
    CancelledError,
    EncodeError,
    PipelineError,
    ProbeError,
    ValidationError,
    categorize_exit_code,
    raise_if_cancelled,
)
from .metadata import merge_metadata
from .models import (
    AssembledBook,
    ChapterEntry,
    EncodeOptions,
    MergedMetadata,
    PipelineJob,
    ProbeResult,
    Stage,
    WorkUnit,
)
from .pool import run_pool
from .probe import duration_to_timestamp, extract_cover, probe
from .sanitize import escape_concat_path, output_name

if TYPE_CHECKING:
    from .config import PipelineConfig
    from .engine import Engine

log = logger.bind(stage="assembly")

# Engine log lines attached to an AssemblyError
DIAGNOSTIC_TAIL = 20


def build_concat_manifest(paths: Sequence[Path]) -> str:
    """ffmpeg concat demuxer list, one quoted `file '...'` line per input."""
    lines = [f"file '{escape_concat_path(str(path))}'" for path in paths]
    return "\n".join(lines) + "\n"


def encode_args(options: EncodeOptions) -> list[str]:
    """Encoder flags for the concatenation step."""
    args: list[str] = []
    if options.codec:
        args += ["-codec:a", options.codec]
    if options.sample_rate:
        args += ["-ar", str(options.sample_rate)]
    if options.bit_rate:
        args += ["-b:a", f"{options.bit_rate}k"]
    if options.bit_depth:
        args += ["-sample_fmt", f"s{options.bit_depth}"]
    if options.legacy_device_compat:
        args += ["-aac_pns", "0"]
    return args


def _image_suffix(data: bytes) -> str:
    if data.startswith(b"\x89PNG"):
        return ".png"
    return ".jpg"


class AssemblyPipeline:
    """Build one audiobook container from an ordered set of input files.

    Attributes:
        engine: Open engine used for every probe/transform and artifact
        config: Assembler configuration (probe concurrency, default name)
        cancel: Optional event checked at every suspension point
        job: State of the most recent run, kept for inspection
    """

    def __init__(
        self,
        engine: Engine,
        config: PipelineConfig,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> None:
        self.engine = engine
        self.config = config
        self.cancel = cancel
        self.timeout = timeout
        self.job: PipelineJob | None = None

    def assemble(
        self,
        files: Sequence[Path | str],
        cover_override: bytes | Path | str | None = None,
        options: EncodeOptions | None = None,
    ) -> AssembledBook:
        """Run all stages and return the finished container.

        Raises:
            ValidationError: If no input files were given
            AssemblyError: If any stage fails (names the stage and cause)
            CancelledError: If the cancel event was set during the run
        """
        if not files:
            raise ValidationError("No input files to assemble")

        options = options or self.config.encode_options()
        job = PipelineJob(inputs=[Path(f) for f in files])
        self.job = job

        def _collect(event: dict) -> None:
            job.diagnostics.append(event.get("message", ""))

        self.engine.on("log", _collect)
        log.info(f"Assembling {len(job.inputs)} files (job={job.job_id})")
        try:
            self._enter(job, Stage.PROBING)
            entries, metadata, chapters = self._probe_inputs(job, cover_override)

            self._enter(job, Stage.CONCATENATING)
            audio = self._concatenate(job, options)

            self._enter(job, Stage.MUXING)
            container = self._mux(job, audio, metadata, chapters)

            self._enter(job, Stage.FINALIZING)
            book = self._finalize(container, metadata)

            job.stage = Stage.DONE
            log.info(f"Assembled {book.name} ({len(book.data):,} bytes, {len(chapters)} chapters)")
            return book
        except CancelledError:
            log.warning(f"Assembly cancelled while {job.stage.value}")
            job.stage = Stage.FAILED
            raise
        except Exception as e:
            failed_stage = job.stage
            job.stage = Stage.FAILED
            log.error(f"Assembly failed while {failed_stage.value}: {e}")
            raise AssemblyError(failed_stage, e, job.diagnostics[-DIAGNOSTIC_TAIL:]) from e
        finally:
            self.engine.off("log", _collect)
            self._cleanup(job)

    def _enter(self, job: PipelineJob, stage: Stage) -> None:
        raise_if_cancelled(self.cancel, stage.value)
        job.stage = stage
        log.debug(f"Stage: {stage.value} (job={job.job_id})")

    def _probe_inputs(
        self, job: PipelineJob, cover_override: bytes | Path | str | None
    ) -> tuple[list[ProbeResult], MergedMetadata, list[ChapterEntry]]:
        limit = self.config.probe_concurrency if self.engine.concurrent_safe else 1
        units = (
            WorkUnit(
                str(path),
                functools.partial(probe, self.engine, path, self.timeout, self.cancel),
            )
            for path in job.inputs
        )
        result = run_pool(units, max(1, limit), self.cancel)
        if result.cancelled:
            raise CancelledError("Cancelled during probing")

        failures = sorted(result.failed, key=lambda o: o.name)
        if failures:
            for failure in failures:
                log.error(f"Probe failed for {failure.name}: {failure.error}")
            error = failures[0].error
            if isinstance(error, PipelineError):
                raise error
            raise ProbeError("ffprobe", 1, f"{failures[0].name}: {error}") from error

        entries = sorted((o.value for o in result.succeeded), key=sort_key)
        job.inputs = [entry.source for entry in entries]

        chapters = build_timeline(entries)
        metadata = merge_metadata(entries, self._cover_candidates(cover_override, entries))
        total_ms = chapters[-1].end_ms if chapters else 0
        log.info(
            f"Probed {len(entries)} files, total {duration_to_timestamp(total_ms / 1000)}"
        )
        return entries, metadata, chapters

    def _cover_candidates(
        self, cover_override: bytes | Path | str | None, entries: Sequence[ProbeResult]
    ) -> Iterator[bytes | None]:
        """Override first, then embedded pictures in playback order (lazily)."""
        if cover_override is not None:
            if isinstance(cover_override, bytes):
                yield cover_override
            else:
                yield Path(cover_override).read_bytes()
        for entry in entries:
            if entry.has_cover:
                yield extract_cover(self.engine, entry.source, self.timeout, self.cancel)

    def _concatenate(self, job: PipelineJob, options: EncodeOptions) -> str:
        manifest = job.scratch("list.txt")
        self.engine.write_artifact(
            manifest, build_concat_manifest([p.absolute() for p in job.inputs])
        )
        log.debug(f"Wrote {len(job.inputs)} entries to {manifest}")

        audio = job.scratch("audio.m4a")
        self._transform(
            [
                "-f", "concat",
                "-safe", "0",
                "-i", manifest,
                "-map", "0:a",
                *encode_args(options),
                audio,
            ]
        )
        return audio

    def _mux(
        self,
        job: PipelineJob,
        audio: str,
        metadata: MergedMetadata,
        chapters: list[ChapterEntry],
    ) -> str:
        document = job.scratch("metadata.txt")
        self.engine.write_artifact(document, render_metadata_document(metadata, chapters))
        log.debug(f"Wrote {len(chapters)} chapters to {document}")

        inputs = ["-i", audio]
        maps = ["-map", "0:a"]
        if metadata.cover:
            cover = job.scratch(f"cover{_image_suffix(metadata.cover)}")
            self.engine.write_artifact(cover, metadata.cover)
            inputs += ["-i", cover]
            maps += [
                "-map", "1",
                "-disposition:v:0", "attached_pic",
                "-metadata:s:v", "title=Album cover",
                "-metadata:s:v", "comment=Cover (front)",
            ]
        metadata_index = str(len(inputs) // 2)
        inputs += ["-i", document]

        container = job.scratch("output.m4b")
        self._transform(
            [
                *inputs,
                *maps,
                "-c", "copy",
                "-map_metadata", metadata_index,
                "-map_chapters", metadata_index,
                container,
            ]
        )
        return container

    def _finalize(self, container: str, metadata: MergedMetadata) -> AssembledBook:
        data = self.engine.read_artifact(container)
        if not data:
            raise ArtifactError(f"Output container {container} is empty")
        return AssembledBook(
            name=output_name(metadata.album, default=self.config.default_output_name),
            data=data,
        )

    def _transform(self, args: list[str]) -> None:
        result = self.engine.transform(args, timeout=self.timeout, cancel=self.cancel)
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()[-500:]
            category = categorize_exit_code(result.returncode)
            log.error(f"ffmpeg failed ({category.value}, code {result.returncode}): {stderr}")
            raise EncodeError("ffmpeg", result.returncode, stderr)

    def _cleanup(self, job: PipelineJob) -> None:
        for name in job.artifacts:
            try:
                if self.engine.has_artifact(name):
                    self.engine.delete_artifact(name)
                    log.debug(f"Removed scratch artifact {name}")
            except PipelineError as e:
                log.warning(f"Failed to remove scratch artifact {name}: {e}")
