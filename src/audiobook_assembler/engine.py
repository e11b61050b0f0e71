"""Media engine interface and the ffmpeg/ffprobe subprocess implementation.

The engine is the only thing that touches audio data. Callers hand it
argument lists and read/write scratch artifacts in its private working
namespace (a temp directory the subprocesses run in). Invocations report
a CompletedProcess whose returncode is the engine status (0 = success).

Log and progress output is delivered out of band to callbacks registered
with on("log", cb) / on("progress", cb).
"""

from __future__ import annotations

import re
import shutil
import subprocess
import tempfile
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any

from loguru import logger

from .errors import ArtifactError, EngineTimeoutError, PipelineError, raise_if_cancelled

log = logger.bind(stage="engine")

EVENTS = ("log", "progress")

_TIME_RE = re.compile(r"time=(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")


class Engine(ABC):
    """Abstract media engine with an explicit open/close lifecycle.

    concurrent_safe tells the pool whether several invocations may run
    against one instance at the same time.
    """

    concurrent_safe: bool = False

    def __init__(self) -> None:
        self._listeners: dict[str, list[Callable[[dict[str, Any]], None]]] = {
            event: [] for event in EVENTS
        }
        self._listener_lock = threading.Lock()

    def __enter__(self) -> Engine:
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def on(self, event: str, callback: Callable[[dict[str, Any]], None]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown engine event: {event}")
        with self._listener_lock:
            self._listeners[event].append(callback)

    def off(self, event: str, callback: Callable[[dict[str, Any]], None]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown engine event: {event}")
        with self._listener_lock:
            self._listeners[event] = [f for f in self._listeners[event] if f != callback]

    def emit(self, event: str, data: dict[str, Any]) -> None:
        with self._listener_lock:
            callbacks = list(self._listeners[event])
        for callback in callbacks:
            callback(data)

    @abstractmethod
    def open(self) -> None: ...

    @abstractmethod
    def close(self) -> None: ...

    @abstractmethod
    def probe(
        self,
        args: list[str],
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> subprocess.CompletedProcess: ...

    @abstractmethod
    def transform(
        self,
        args: list[str],
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> subprocess.CompletedProcess: ...

    @abstractmethod
    def write_artifact(self, name: str, data: bytes | str) -> None: ...

    @abstractmethod
    def read_artifact(self, name: str, encoding: str | None = None) -> bytes | str: ...

    @abstractmethod
    def delete_artifact(self, name: str) -> None: ...

    @abstractmethod
    def has_artifact(self, name: str) -> bool: ...

    @abstractmethod
    def list_artifacts(self, directory: str = ".") -> list[str]: ...


class FFmpegEngine(Engine):
    """Runs the ffmpeg/ffprobe binaries in a private temp working directory.

    Every invocation is its own process, so concurrent calls are safe as
    long as callers use distinct scratch names.
    """

    concurrent_safe = True

    def __init__(
        self,
        ffmpeg_bin: str = "ffmpeg",
        ffprobe_bin: str = "ffprobe",
        root: Path | None = None,
        default_timeout: float | None = None,
    ) -> None:
        super().__init__()
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.root = root
        self.default_timeout = default_timeout
        self._workspace: Path | None = None

    @classmethod
    def from_config(cls, config) -> FFmpegEngine:
        return cls(
            ffmpeg_bin=config.ffmpeg_bin,
            ffprobe_bin=config.ffprobe_bin,
            root=config.work_dir,
            default_timeout=config.engine_timeout,
        )

    @property
    def workspace(self) -> Path:
        if self._workspace is None:
            raise PipelineError("Engine is not open, call open() first")
        return self._workspace

    def open(self) -> None:
        if self._workspace is not None:
            return
        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)
        self._workspace = Path(tempfile.mkdtemp(prefix="engine-", dir=self.root))
        log.debug(f"Opened engine workspace {self._workspace}")

    def close(self) -> None:
        if self._workspace is None:
            return
        shutil.rmtree(self._workspace, ignore_errors=True)
        log.debug(f"Closed engine workspace {self._workspace}")
        self._workspace = None

    def probe(
        self,
        args: list[str],
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> subprocess.CompletedProcess:
        return self._invoke(self.ffprobe_bin, ["-hide_banner", *args], timeout, cancel)

    def transform(
        self,
        args: list[str],
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> subprocess.CompletedProcess:
        # -nostdin keeps ffmpeg from reading the terminal, -y overwrites outputs
        return self._invoke(
            self.ffmpeg_bin, ["-nostdin", "-y", "-hide_banner", *args], timeout, cancel
        )

    def _invoke(
        self,
        binary: str,
        args: list[str],
        timeout: float | None,
        cancel: threading.Event | None,
    ) -> subprocess.CompletedProcess:
        raise_if_cancelled(cancel, Path(binary).name)
        if timeout is None:
            timeout = self.default_timeout
        cmd = [binary, *args]
        log.debug(f"> {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                cwd=self.workspace,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            log.warning(f"{Path(binary).name} timed out after {timeout}s")
            raise EngineTimeoutError(Path(binary).name, timeout)
        except FileNotFoundError as e:
            log.error(f"Engine binary not found: {binary}")
            result = subprocess.CompletedProcess(cmd, 127, "", str(e))

        for line in (result.stderr or "").splitlines():
            self.emit("log", {"type": "stderr", "message": line})
            match = _TIME_RE.search(line)
            if match:
                h, m, s = match.groups()
                self.emit("progress", {"time": int(h) * 3600 + int(m) * 60 + float(s)})

        # A cancelled run's result is discarded even if the process finished
        raise_if_cancelled(cancel, Path(binary).name)
        return result

    def _resolve(self, name: str) -> Path:
        workspace = self.workspace.resolve()
        path = (workspace / name).resolve()
        if Path(name).is_absolute() or not path.is_relative_to(workspace):
            raise ArtifactError(f"Artifact name escapes the engine workspace: {name}")
        return path

    def write_artifact(self, name: str, data: bytes | str) -> None:
        path = self._resolve(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(data, str):
                # Undecodable file names round-trip as their original bytes
                data = data.encode("utf-8", errors="surrogateescape")
            path.write_bytes(data)
        except (OSError, UnicodeEncodeError) as e:
            raise ArtifactError(f"Failed to write artifact {name}: {e}") from e

    def read_artifact(self, name: str, encoding: str | None = None) -> bytes | str:
        path = self._resolve(name)
        try:
            if encoding is not None:
                return path.read_text(encoding=encoding)
            return path.read_bytes()
        except (OSError, UnicodeDecodeError) as e:
            raise ArtifactError(f"Failed to read artifact {name}: {e}") from e

    def delete_artifact(self, name: str) -> None:
        path = self._resolve(name)
        try:
            path.unlink()
        except OSError as e:
            raise ArtifactError(f"Failed to delete artifact {name}: {e}") from e

    def has_artifact(self, name: str) -> bool:
        return self._resolve(name).is_file()

    def list_artifacts(self, directory: str = ".") -> list[str]:
        path = self._resolve(directory)
        try:
            return sorted(p.name for p in path.iterdir())
        except OSError as e:
            raise ArtifactError(f"Failed to list artifacts in {directory}: {e}") from e
