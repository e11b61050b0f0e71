"""Assembler configuration via pydantic-settings (.env + env vars)."""

import os
import sys
import tempfile
from pathlib import Path

from loguru import logger
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError
from .models import EncodeOptions


def _default_root() -> Path:
    return Path(tempfile.gettempdir()) / "audiobook-assembler"


class PipelineConfig(BaseSettings):
    """All assembler configuration with layered resolution:
    .env file < environment variables < constructor kwargs.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # -- Directories --
    work_dir: Path = _default_root() / "work"
    log_dir: Path = _default_root() / "logs"

    # -- Engine --
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    engine_timeout: float | None = None  # seconds per invocation, None = no limit

    # -- Concurrency --
    batch_concurrency: int = 4  # 0 = auto (CPU-based)
    probe_concurrency: int = 1

    # -- Batch transcode --
    batch_codec: str = "aac"
    batch_bitrate: int = 256
    batch_extension: str = ".m4a"

    # -- Assembly encoding (empty/0 = let ffmpeg decide) --
    codec: str = ""
    sample_rate: int = 0
    bit_rate: int = 0
    bit_depth: int = 0
    legacy_device_compat: bool = False
    default_output_name: str = "output"

    # -- Behavior --
    dry_run: bool = False
    force: bool = False
    debug: bool = False
    log_level: str = "INFO"

    def encode_options(self) -> EncodeOptions:
        """Build the concat-stage encoder options from config values."""
        return EncodeOptions(
            codec=self.codec or None,
            sample_rate=self.sample_rate or None,
            bit_rate=self.bit_rate or None,
            bit_depth=self.bit_depth or None,
            legacy_device_compat=self.legacy_device_compat,
        )

    def resolved_batch_concurrency(self) -> int:
        """Return the batch pool limit, auto-sizing when set to 0."""
        if self.batch_concurrency > 0:
            return self.batch_concurrency
        cpu_count = os.cpu_count() or 1
        return max(1, min(8, cpu_count // 2))

    def validate_settings(self) -> None:
        """Reject values the pool, engine or batch converter can't use.

        Raises:
            ConfigError: Listing every invalid setting
        """
        problems = []
        if self.batch_concurrency < 0:
            problems.append(f"batch_concurrency must be >= 0, got {self.batch_concurrency}")
        if self.probe_concurrency < 1:
            problems.append(f"probe_concurrency must be >= 1, got {self.probe_concurrency}")
        if self.batch_bitrate <= 0:
            problems.append(f"batch_bitrate must be positive, got {self.batch_bitrate}")
        if not self.batch_extension.startswith(".") or len(self.batch_extension) < 2:
            problems.append(f"batch_extension must look like '.m4a', got {self.batch_extension!r}")
        if self.engine_timeout is not None and self.engine_timeout <= 0:
            problems.append(f"engine_timeout must be positive, got {self.engine_timeout}")
        for name in ("sample_rate", "bit_rate", "bit_depth"):
            if getattr(self, name) < 0:
                problems.append(f"{name} must be >= 0, got {getattr(self, name)}")
        if problems:
            raise ConfigError("Invalid configuration: " + "; ".join(problems))

    def ensure_dirs(self) -> None:
        """Create all required directories if they don't exist."""
        for d in (self.work_dir, self.log_dir):
            d.mkdir(parents=True, exist_ok=True)

    def setup_logging(self) -> None:
        """Configure loguru for the assembler."""
        logger.remove()  # Remove default stderr handler

        log_format = (
            "{time:YYYY-MM-DDTHH:mm:ssZ} | {level:<8} | "
            "{extra[stage]:<12} | {message}"
        )

        def _default_extra(record):
            record["extra"].setdefault("stage", "")
            return True

        level = "DEBUG" if self.debug else self.log_level.upper()
        logger.add(
            sys.stderr,
            format=log_format,
            level=level,
            filter=_default_extra,
        )

        self.log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(self.log_dir / "assembler.log"),
            format=log_format,
            level="DEBUG",
            rotation="10 MB",
            retention="30 days",
            filter=_default_extra,
        )
