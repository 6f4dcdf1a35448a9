"""Configuration models and utilities for the video capture pipeline."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import cast

from dotenv import find_dotenv, load_dotenv

_LOGGER = logging.getLogger(__name__)

ENV_FFMPEG_PATH = "VIDEO_CAPTURE_FFMPEG_PATH"
ENV_PROBE_TIMEOUT = "VIDEO_CAPTURE_PROBE_TIMEOUT"
ENV_HIGH_WATER_MARK = "VIDEO_CAPTURE_HIGH_WATER_MARK"
ENV_SUPPRESSION = "VIDEO_CAPTURE_SUPPRESSION"

DEFAULT_HIGH_WATER_MARK = 16 * 1024
DEFAULT_PROBE_TIMEOUT = 10.0
DEFAULT_COMPRESSION_LEVEL = 32
MAX_COMPRESSION_LEVEL = 51


class ConfigurationError(RuntimeError):
    """Raised when encoder configuration is missing or invalid."""


class SuppressionPolicy(str, Enum):
    """Which encoder failures are swallowed after a capture that received no frames."""

    ANY_ERROR = "any_error"
    END_OF_INPUT = "end_of_input"


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Structured logging configuration."""

    level: str = "info"
    format: str = "auto"


@dataclass(frozen=True, slots=True)
class EncoderConfig:
    """Location of the encoder executable shared by every subprocess we spawn."""

    ffmpeg_path: str = "ffmpeg"

    def __post_init__(self) -> None:
        """Reject an empty executable path."""
        if not self.ffmpeg_path:
            raise ConfigurationError("ffmpeg_path must not be empty")


@dataclass(frozen=True, slots=True)
class CaptureConfig:
    """Encoder settings for live frame capture.

    Args:
        input_format: Demuxer used for the frames written to the encoder's stdin.
        codec: Video codec of the raw capture file.
        preset: Encoder speed preset; capture favours speed over size.
        niceness: Scheduling niceness for the capture encoder, ``None`` to
            run at normal priority.
        high_water_mark: Buffered byte count at which the input sink starts
            reporting backpressure.
        suppression: Failure suppression policy applied when a session ends
            without ever receiving a frame.
    """

    input_format: str = "image2pipe"
    codec: str = "libx264"
    preset: str = "ultrafast"
    niceness: int | None = 20
    high_water_mark: int = DEFAULT_HIGH_WATER_MARK
    suppression: SuppressionPolicy = SuppressionPolicy.ANY_ERROR

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.high_water_mark <= 0:
            raise ConfigurationError("high_water_mark must be greater than 0")


@dataclass(frozen=True, slots=True)
class CompressionConfig:
    """Encoder settings for the post-capture compression pass."""

    codec: str = "libx264"
    preset: str = "fast"
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.probe_timeout <= 0:
            raise ConfigurationError("probe_timeout must be greater than 0")


@dataclass(frozen=True, slots=True)
class Config:
    """Unified application configuration."""

    encoder: EncoderConfig = field(default_factory=EncoderConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    compression: CompressionConfig = field(default_factory=CompressionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def with_ffmpeg_path(self, ffmpeg_path: str | None) -> Config:
        """Return a copy using ``ffmpeg_path`` when one is supplied."""
        if not ffmpeg_path:
            return self
        return replace(self, encoder=EncoderConfig(ffmpeg_path=ffmpeg_path))


def _parse_float(name: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _parse_suppression(raw: str) -> SuppressionPolicy:
    try:
        return SuppressionPolicy(raw.strip().lower())
    except ValueError as exc:
        choices = ", ".join(policy.value for policy in SuppressionPolicy)
        raise ConfigurationError(f"{ENV_SUPPRESSION} must be one of: {choices}") from exc


def load_config(
    *,
    dotenv_path: str | os.PathLike[str] | None = None,
    environ: Mapping[str, str | None] | None = None,
    logging_config: LoggingConfig | None = None,
) -> Config:
    """Build a :class:`Config` from the environment and optional ``.env`` file.

    Args:
        dotenv_path: Optional path to a dotenv file. When supplied, the file is
            loaded before reading environment variables; otherwise a ``.env``
            is searched for the way :func:`dotenv.find_dotenv` does.
        environ: Optional mapping used instead of :data:`os.environ`. Primarily
            intended for testing; no dotenv file is loaded when it is given.
        logging_config: Logging settings to embed in the result.

    Returns:
        Loaded configuration with validated values.

    Raises:
        ConfigurationError: When any variable holds an invalid value.
    """
    env: MutableMapping[str, str | None]
    if environ is not None:
        env = dict(environ)
    else:
        env = cast(MutableMapping[str, str | None], os.environ)
        if dotenv_path:
            resolved_path = find_dotenv(str(dotenv_path), raise_error_if_not_found=False)
        else:
            resolved_path = find_dotenv(raise_error_if_not_found=False, usecwd=True)
        if resolved_path:
            _LOGGER.debug("config.load_dotenv", extra={"path": resolved_path})
            load_dotenv(resolved_path, override=False)

    encoder = EncoderConfig()
    ffmpeg_path = env.get(ENV_FFMPEG_PATH)
    if ffmpeg_path:
        encoder = EncoderConfig(ffmpeg_path=ffmpeg_path)

    capture = CaptureConfig()
    high_water_mark = env.get(ENV_HIGH_WATER_MARK)
    if high_water_mark:
        capture = replace(
            capture, high_water_mark=_parse_int(ENV_HIGH_WATER_MARK, high_water_mark)
        )
    suppression = env.get(ENV_SUPPRESSION)
    if suppression:
        capture = replace(capture, suppression=_parse_suppression(suppression))

    compression = CompressionConfig()
    probe_timeout = env.get(ENV_PROBE_TIMEOUT)
    if probe_timeout:
        compression = replace(
            compression, probe_timeout=_parse_float(ENV_PROBE_TIMEOUT, probe_timeout)
        )

    return Config(
        encoder=encoder,
        capture=capture,
        compression=compression,
        logging=logging_config or LoggingConfig(),
    )


__all__ = [
    "DEFAULT_COMPRESSION_LEVEL",
    "DEFAULT_HIGH_WATER_MARK",
    "DEFAULT_PROBE_TIMEOUT",
    "ENV_FFMPEG_PATH",
    "ENV_HIGH_WATER_MARK",
    "ENV_PROBE_TIMEOUT",
    "ENV_SUPPRESSION",
    "MAX_COMPRESSION_LEVEL",
    "CaptureConfig",
    "CompressionConfig",
    "Config",
    "ConfigurationError",
    "EncoderConfig",
    "LoggingConfig",
    "SuppressionPolicy",
    "load_config",
]
