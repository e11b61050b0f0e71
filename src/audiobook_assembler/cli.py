"""CLI entry points: batch tree conversion and single-book assembly."""

import sys
from pathlib import Path

import click
from loguru import logger

from .assembly import AssemblyPipeline
from .batch import BatchConverter
from .config import PipelineConfig
from .engine import FFmpegEngine
from .errors import AssemblyError, CancelledError, ConfigError, PipelineError, ValidationError
from .models import FileOutcome, FileStatus

log = logger.bind(stage="cli")

BATCH_USAGE = """
usage:
    audiobook-batch <input_dir> <output_dir> [options]

options:
    --dryRun  emulate what will happen
    --help    show this help message
    --debug   output extra debug information
    --force   overwrite existing files
"""


def _find_config_file() -> Path | None:
    """Look for .env next to the package or in cwd."""
    pkg_dir = Path(__file__).resolve().parent
    for candidate in [
        pkg_dir.parent.parent / ".env",  # dev: src/../.env
        Path.cwd() / ".env",
    ]:
        if candidate.is_file():
            return candidate
    return None


def _load_config(config_file: str | None, **kwargs) -> PipelineConfig:
    """Build config from .env < env vars < CLI kwargs (None values dropped)."""
    env_file = Path(config_file) if config_file else _find_config_file()
    overrides = {k: v for k, v in kwargs.items() if v is not None}
    config = PipelineConfig(_env_file=env_file, **overrides)  # type: ignore[arg-type]
    try:
        config.validate_settings()
    except ConfigError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)
    config.ensure_dirs()
    config.setup_logging()
    if env_file:
        log.debug(f"Loaded env from {env_file}")
    else:
        log.debug("No .env found")
    return config


def _print_outcome(outcome: FileOutcome) -> None:
    if outcome.status == FileStatus.DRY_RUN:
        click.echo(f"DRY-RUN: ffmpeg {' '.join(outcome.command)}")
        return
    click.echo(outcome.status.symbol, nl=False)
    if outcome.status == FileStatus.FAILED:
        click.echo(f"\n{outcome.source}: {outcome.error}", err=True)


@click.command(add_help_option=False)
@click.argument("input_dir", required=False)
@click.argument("output_dir", required=False)
@click.option("--dryRun", "--dry-run", "dry_run", is_flag=True, help="Emulate what will happen.")
@click.option("--help", "show_help", is_flag=True, help="Show this help message.")
@click.option("--debug", is_flag=True, help="Output extra debug information.")
@click.option("--force", is_flag=True, help="Overwrite existing files.")
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True),
    default=None,
    help="Path to .env file.",
)
def batch_main(
    input_dir: str | None,
    output_dir: str | None,
    dry_run: bool,
    show_help: bool,
    debug: bool,
    force: bool,
    config_file: str | None,
) -> None:
    """Transcode every audio file in a tree, mirroring it into an output tree."""
    if not input_dir or not output_dir or show_help:
        click.echo(BATCH_USAGE, err=True)
        sys.exit(1)

    config = _load_config(
        config_file,
        dry_run=dry_run or None,
        force=force or None,
        debug=debug or None,
    )
    source = Path(input_dir).resolve()
    dest = Path(output_dir).resolve()
    log.debug(f"input={source} output={dest}")

    try:
        with FFmpegEngine.from_config(config) as engine:
            converter = BatchConverter(engine, config)
            report = converter.convert_tree(
                source,
                dest,
                force=config.force,
                dry_run=config.dry_run,
                on_outcome=_print_outcome,
            )
    except ValidationError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted", err=True)
        sys.exit(130)

    click.echo("\ndone!")
    click.echo(
        f"{report.converted} converted, {report.skipped} skipped, "
        f"{report.failed} failed ({report.total} files)"
    )
    if report.failed:
        log.warning(f"Batch had {report.failed} failures out of {report.total}")


@click.command()
@click.argument(
    "files",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "-o",
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Directory to write the .m4b into.",
)
@click.option(
    "--cover",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Cover image (overrides embedded artwork).",
)
@click.option("--codec", default=None, help="Output audio codec (e.g. aac).")
@click.option("--sample-rate", type=int, default=None, help="Output sample rate in Hz.")
@click.option("--bit-rate", type=int, default=None, help="Output bit rate in kbit/s.")
@click.option("--bit-depth", type=int, default=None, help="Output sample format bits (16, 32).")
@click.option(
    "--legacy-device",
    is_flag=True,
    help="Disable AAC noise substitution for older players.",
)
@click.option("--force", is_flag=True, help="Overwrite an existing output file.")
@click.option("--debug", is_flag=True, help="Enable debug logging.")
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True),
    default=None,
    help="Path to .env file.",
)
def assemble_main(
    files: tuple[Path, ...],
    output_dir: Path,
    cover: Path | None,
    codec: str | None,
    sample_rate: int | None,
    bit_rate: int | None,
    bit_depth: int | None,
    legacy_device: bool,
    force: bool,
    debug: bool,
    config_file: str | None,
) -> None:
    """Combine audio files into a single chaptered M4B audiobook."""
    config = _load_config(
        config_file,
        codec=codec,
        sample_rate=sample_rate,
        bit_rate=bit_rate,
        bit_depth=bit_depth,
        legacy_device_compat=legacy_device or None,
        debug=debug or None,
    )

    click.echo(f"Assembling {len(files)} files...")
    try:
        with FFmpegEngine.from_config(config) as engine:
            pipeline = AssemblyPipeline(engine, config)
            book = pipeline.assemble(list(files), cover_override=cover)
    except AssemblyError as e:
        click.echo(f"ERROR: {e}", err=True)
        for line in e.diagnostics:
            click.echo(f"  {line}", err=True)
        sys.exit(1)
    except (ValidationError, CancelledError) as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)

    output_dir.mkdir(parents=True, exist_ok=True)
    target = output_dir / book.name
    if target.exists() and not force:
        click.echo(f"ERROR: {target} already exists (use --force to overwrite)", err=True)
        sys.exit(1)
    try:
        target.write_bytes(book.data)
    except OSError as e:
        raise PipelineError(f"Failed to write {target}: {e}") from e
    click.echo(f"Wrote {target} ({len(book.data):,} bytes)")
