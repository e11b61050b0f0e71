"""Shared fixtures: an in-memory engine and isolated config."""

import json
import subprocess
import threading
from pathlib import Path

import pytest

from audiobook_assembler.config import PipelineConfig
from audiobook_assembler.engine import Engine
from audiobook_assembler.errors import ArtifactError, raise_if_cancelled

# Env vars that pydantic-settings reads -- cleaned so tests see actual defaults
_CONFIG_ENV_VARS = [
    "WORK_DIR", "LOG_DIR", "FFMPEG_BIN", "FFPROBE_BIN", "ENGINE_TIMEOUT",
    "BATCH_CONCURRENCY", "PROBE_CONCURRENCY", "BATCH_CODEC", "BATCH_BITRATE",
    "BATCH_EXTENSION", "CODEC", "SAMPLE_RATE", "BIT_RATE", "BIT_DEPTH",
    "LEGACY_DEVICE_COMPAT", "DEFAULT_OUTPUT_NAME", "DRY_RUN", "FORCE", "DEBUG",
    "LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in _CONFIG_ENV_VARS:
        monkeypatch.delenv(var, raising=False)


def ffprobe_json(
    duration: float | None,
    tags: dict | None = None,
    stream_tags: dict | None = None,
    cover: bool = False,
    format_duration: float | None = None,
) -> dict:
    """Build ffprobe -of json output for one file."""
    audio = {"index": 0, "codec_type": "audio", "codec_name": "mp3"}
    if duration is not None:
        audio["duration"] = f"{duration:.6f}"
    if stream_tags:
        audio["tags"] = stream_tags
    streams = [audio]
    if cover:
        streams.append(
            {
                "index": 1,
                "codec_type": "video",
                "codec_name": "mjpeg",
                "disposition": {"default": 0, "attached_pic": 1},
            }
        )
    fmt: dict = {}
    if tags:
        fmt["tags"] = tags
    if format_duration is not None:
        fmt["duration"] = f"{format_duration:.6f}"
    return {"streams": streams, "format": fmt}


class FakeEngine(Engine):
    """In-memory engine that answers probes from a table and fakes transforms.

    probes: file name -> ffprobe JSON dict (or raw string output)
    covers: file name -> embedded picture bytes
    fail:   invocation kind ("probe", "concat", "mux", "cover", "transcode")
            -> non-zero status to return
    """

    def __init__(
        self,
        probes: dict | None = None,
        covers: dict | None = None,
        fail: dict | None = None,
        concurrent_safe: bool = True,
    ) -> None:
        super().__init__()
        self.concurrent_safe = concurrent_safe
        self.probes = probes or {}
        self.covers = covers or {}
        self.fail = fail or {}
        self.mux_output: bytes | None = None
        self.artifacts: dict[str, bytes] = {}
        self.written: dict[str, bytes] = {}
        self.calls: list[tuple[str, list[str]]] = []
        self.opened = False
        self.closed = False
        self._lock = threading.Lock()

    def open(self) -> None:
        self.opened = True

    def close(self) -> None:
        self.closed = True

    def calls_of(self, kind: str) -> list[list[str]]:
        return [args for k, args in self.calls if k == kind]

    def probe(self, args, timeout=None, cancel=None):
        raise_if_cancelled(cancel)
        with self._lock:
            self.calls.append(("probe", list(args)))
        name = Path(args[0]).name
        out = args[args.index("-o") + 1]
        status = self.fail.get("probe", 0)
        if status or name not in self.probes:
            return subprocess.CompletedProcess(
                args, status or 1, "", f"{name}: Invalid data found when processing input"
            )
        payload = self.probes[name]
        raw = payload if isinstance(payload, str) else json.dumps(payload)
        with self._lock:
            self.artifacts[out] = raw.encode()
        return subprocess.CompletedProcess(args, 0, "", "")

    @staticmethod
    def _classify(args: list[str]) -> str:
        if "concat" in args:
            return "concat"
        if "-an" in args:
            return "cover"
        if "-map_chapters" in args:
            return "mux"
        return "transcode"

    def transform(self, args, timeout=None, cancel=None):
        raise_if_cancelled(cancel)
        kind = self._classify(args)
        with self._lock:
            self.calls.append((kind, list(args)))
        self.emit("log", {"type": "stderr", "message": f"{kind}: started"})
        output = args[-1]
        status = self.fail.get(kind, 0)
        if status:
            if kind in ("concat", "mux"):
                # partial output left behind, like a crashed ffmpeg
                self.artifacts[output] = b"partial"
            self.emit("log", {"type": "stderr", "message": f"{kind}: Conversion failed!"})
            return subprocess.CompletedProcess(args, status, "", f"{kind}: Conversion failed!")

        if kind == "cover":
            source = Path(args[args.index("-i") + 1]).name
            if source not in self.covers:
                return subprocess.CompletedProcess(args, 1, "", "Output file does not contain any stream")
            self.artifacts[output] = self.covers[source]
        elif kind == "concat":
            manifest = self.artifacts[args[args.index("-i") + 1]]
            self.artifacts[output] = b"AUDIO\n" + manifest
        elif kind == "mux":
            if self.mux_output is not None:
                self.artifacts[output] = self.mux_output
            else:
                self.artifacts[output] = b"M4B" + self.artifacts[args[1]]
        else:
            Path(output).write_bytes(b"transcoded")
        return subprocess.CompletedProcess(args, 0, "", "")

    def write_artifact(self, name, data):
        raw = data.encode() if isinstance(data, str) else bytes(data)
        with self._lock:
            self.artifacts[name] = raw
            self.written[name] = raw

    def read_artifact(self, name, encoding=None):
        try:
            raw = self.artifacts[name]
        except KeyError:
            raise ArtifactError(f"Failed to read artifact {name}: not found")
        return raw.decode(encoding) if encoding else raw

    def delete_artifact(self, name):
        with self._lock:
            if name not in self.artifacts:
                raise ArtifactError(f"Failed to delete artifact {name}: not found")
            del self.artifacts[name]

    def has_artifact(self, name):
        return name in self.artifacts

    def list_artifacts(self, directory="."):
        return sorted(self.artifacts)


@pytest.fixture
def config(tmp_path):
    return PipelineConfig(
        _env_file=None,
        work_dir=tmp_path / "work",
        log_dir=tmp_path / "logs",
    )
