"""Command-line interface for the video capture pipeline."""

from __future__ import annotations

import dataclasses
import json
import logging
import sys
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final, cast

import click

from .capture import CaptureSession, start_capture
from .compress import Compressor, FileRelocationFailed, copy_capture
from .config import (
    DEFAULT_COMPRESSION_LEVEL,
    MAX_COMPRESSION_LEVEL,
    Config,
    ConfigurationError,
    LoggingConfig,
    load_config,
)
from .frames import FrameEncodingError, encode_frame, read_frames
from .probe import CodecProber, ProbeError
from .process_runner import EncoderError, EncoderRunner, EncoderRuntimeError

PACKAGE_LOGGER: Final[str] = "video_capture"

# Attributes every LogRecord carries; anything else arrived through ``extra``.
STANDARD_RECORD_ATTRS: Final[frozenset[str]] = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
}

LOG_LEVELS: Final[list[str]] = ["debug", "info", "warning", "error", "critical"]


def component_name(logger_name: str) -> str:
    """Return the module part of a package logger name, e.g. ``capture``."""
    prefix = f"{PACKAGE_LOGGER}."
    if logger_name.startswith(prefix):
        return logger_name[len(prefix) :]
    return logger_name


def event_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Collect the structured fields passed to a log call through ``extra``."""
    return {
        key: value
        for key, value in vars(record).items()
        if key not in STANDARD_RECORD_ATTRS and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """Emit one JSON object per pipeline event.

    ``event`` is the log message, ``component`` the emitting module and
    ``thread`` the logging thread, which tells encoder reader and waiter
    threads apart. Structured ``extra`` values are nested under ``fields``.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "time": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname.lower(),
            "component": component_name(record.name),
            "event": record.getMessage(),
            "thread": record.threadName,
        }
        fields = event_fields(record)
        if fields:
            payload["fields"] = fields
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


class EventTextFormatter(logging.Formatter):
    """Human-readable event lines with ``key=value`` fields appended."""

    def __init__(self) -> None:
        super().__init__(
            "%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        fields = event_fields(record)
        if not fields:
            return line
        return line + " " + " ".join(f"{key}={value!r}" for key, value in fields.items())


def configure_logging(config: LoggingConfig) -> logging.Logger:
    """Route ``video_capture`` events to stderr.

    ``auto`` picks text on a terminal and JSON otherwise, so piped CLI runs
    produce machine-readable encoder events.
    """
    resolved_level = getattr(logging, config.level.upper(), logging.INFO)
    handler = logging.StreamHandler()
    resolved_format = config.format.lower()
    if resolved_format == "auto":
        stream = getattr(handler, "stream", sys.stderr)
        is_tty = bool(getattr(stream, "isatty", lambda: False)())
        resolved_format = "text" if is_tty else "json"

    formatter: logging.Formatter
    if resolved_format == "json":
        formatter = JsonFormatter()
    else:
        formatter = EventTextFormatter()

    handler.setFormatter(formatter)
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.handlers.clear()
    logger.setLevel(resolved_level)
    logger.propagate = False
    logger.addHandler(handler)
    logging.captureWarnings(True)
    return logger


def create_runner(config: Config) -> EncoderRunner:
    """Instantiate an EncoderRunner for the configured encoder executable."""
    return EncoderRunner(config.encoder, logger=logging.getLogger("video_capture.process_runner"))


def create_prober(config: Config, runner: EncoderRunner) -> CodecProber:
    """Build a CodecProber bound to ``runner`` with the configured timeout."""
    return CodecProber(runner, timeout=config.compression.probe_timeout)


def create_compressor(config: Config, runner: EncoderRunner) -> Compressor:
    """Build a Compressor bound to ``runner``.

    Args:
        config: Unified application configuration.
        runner: Runner used for both the probe and the compression encoder.

    Returns:
        Compressor: Compressor using the configured codec and preset.
    """
    return Compressor(
        runner,
        prober=create_prober(config, runner),
        config=config.compression,
        logger=logging.getLogger("video_capture.compress"),
    )


@click.group()
@click.option(
    "--ffmpeg-path",
    default=None,
    help="Encoder executable (overrides VIDEO_CAPTURE_FFMPEG_PATH)",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="info",
    show_default=True,
    help="Logging verbosity",
)
@click.option(
    "--log-format",
    type=click.Choice(["auto", "json", "text"], case_sensitive=False),
    default="auto",
    show_default=True,
    help="Logging output format",
)
@click.pass_context
def cli(ctx: click.Context, **options: Any) -> None:
    """Capture frame streams to video and compress finished captures."""
    logging_config = LoggingConfig(
        level=cast(str, options["log_level"]),
        format=cast(str, options["log_format"]),
    )
    configure_logging(logging_config)
    try:
        config = load_config(logging_config=logging_config)
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    ctx.obj = config.with_ffmpeg_path(cast(str | None, options["ffmpeg_path"]))


@cli.command()
@click.argument("source", type=click.Path(path_type=Path, exists=True))
@click.argument("output", type=click.Path(path_type=Path, dir_okay=False))
@click.option(
    "--fps",
    type=click.FloatRange(min=0, min_open=True),
    default=10.0,
    show_default=True,
    help="Rate at which frames are replayed into the capture",
)
@click.option(
    "--image-format",
    type=click.Choice(["png", "jpg"], case_sensitive=False),
    default="png",
    show_default=True,
    help="Image encoding used for frames sent to the encoder",
)
@click.option(
    "--compress",
    "compression_level",
    type=click.IntRange(0, MAX_COMPRESSION_LEVEL),
    default=None,
    help="Compress the capture afterwards with this constant rate factor",
)
@click.option(
    "--copy-to",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Also copy the finished capture to this path, replacing any existing file",
)
@click.pass_obj
def capture(config: Config, **options: Any) -> None:
    """Replay frames from SOURCE (a video or image directory) into a capture at OUTPUT."""
    logger = logging.getLogger("video_capture.main")
    source = cast(Path, options["source"])
    output = cast(Path, options["output"])
    interval = 1.0 / cast(float, options["fps"])
    extension = f".{cast(str, options['image_format']).lower()}"

    runner = create_runner(config)
    try:
        session = start_capture(
            output,
            runner=runner,
            config=config.capture,
            on_error=lambda error, _stdout, stderr: logger.error(
                "capture.encoder_failed", extra={"error": str(error), "stderr": stderr}
            ),
        )
    except EncoderError as exc:
        raise click.ClickException(str(exc)) from exc

    logger.info(
        "cli.capture",
        extra={"source": str(source), "output": str(output), "command": session.command_line},
    )
    try:
        _replay_frames(session, source, extension=extension, interval=interval)
    except FrameEncodingError as exc:
        _finish_capture(session)
        raise click.ClickException(str(exc)) from exc
    _finish_capture(session)

    click.echo(
        f"Captured {session.frames_written} frames to {output} "
        f"({session.skipped_frame_count} skipped)."
    )

    compression_level = cast(int | None, options["compression_level"])
    if compression_level is not None:
        _run_compression(config, runner, output, compression_level)

    copy_to = cast(Path | None, options["copy_to"])
    if copy_to is not None:
        _copy_finished_capture(output, copy_to)


def _replay_frames(
    session: CaptureSession, source: Path, *, extension: str, interval: float
) -> None:
    """Push frames from ``source`` into ``session`` at a fixed pace."""
    deadline = time.monotonic()
    for frame in read_frames(source):
        session.write_frame(encode_frame(frame, extension=extension))
        deadline += interval
        delay = deadline - time.monotonic()
        if delay > 0:
            time.sleep(delay)


def _copy_finished_capture(output: Path, destination: Path) -> None:
    try:
        copied = copy_capture(output, destination)
    except FileRelocationFailed as exc:
        raise click.ClickException(str(exc)) from exc
    if copied is None:
        click.echo(f"No capture file at {output}; nothing copied.")
    else:
        click.echo(f"Copied capture to {copied}.")


def _finish_capture(session: CaptureSession) -> None:
    try:
        session.end().result()
    except EncoderRuntimeError as exc:
        raise click.ClickException(f"Capture failed: {exc}") from exc


@cli.command("compress")
@click.argument("video", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option(
    "--level",
    type=click.IntRange(0, MAX_COMPRESSION_LEVEL),
    default=DEFAULT_COMPRESSION_LEVEL,
    show_default=True,
    help="Constant rate factor; higher values produce smaller files",
)
@click.pass_obj
def compress_command(config: Config, video: Path, level: int) -> None:
    """Compress VIDEO in place."""
    _run_compression(config, create_runner(config), video, level)


def _run_compression(config: Config, runner: EncoderRunner, video: Path, level: int) -> None:
    compressor = create_compressor(config, runner)
    interactive = sys.stderr.isatty()

    def on_progress(fraction: float) -> None:
        if interactive:
            click.echo(f"\rCompressing {video.name}: {fraction:6.1%}", nl=False, err=True)

    try:
        compressor.compress(video, level, on_progress).result()
    except (EncoderError, FileRelocationFailed) as exc:
        raise click.ClickException(f"Compression failed: {exc}") from exc
    finally:
        if interactive:
            click.echo("", err=True)
    click.echo(f"Compressed {video} (level {level}).")


@cli.command("probe")
@click.argument("video", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.pass_obj
def probe_command(config: Config, video: Path) -> None:
    """Print codec data for VIDEO as JSON."""
    prober = create_prober(config, create_runner(config))
    try:
        data = prober.probe(video).result()
    except ProbeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(dataclasses.asdict(data), indent=2))


if __name__ == "__main__":
    cli()
