"""Typed data models and parsers for encoder diagnostics."""

from __future__ import annotations

import enum
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

_INPUT_PATTERN = re.compile(r"^Input #\d+, (?P<format>.+?), from '(?P<source>.*)':?$")
_DURATION_PATTERN = re.compile(r"^Duration: (?P<duration>[^,]+)")
_STREAM_PATTERN = re.compile(
    r"^Stream #\d+:\d+(?:\[\w+\])?(?:\([^)]*\))?: (?P<kind>Video|Audio): (?P<details>.+)$"
)
_OUTPUT_SECTION_PREFIXES = ("Output #", "Stream mapping:", "Press [q]")
_PROGRESS_PREFIXES = ("frame=", "size=")
_PROGRESS_FIELD_PATTERN = re.compile(r"(\w+)=\s*(\S+)")
_LEADING_NUMBER_PATTERN = re.compile(r"^[-+]?\d+(?:\.\d+)?")
_UNAVAILABLE = "N/A"


class SessionState(enum.Enum):
    """Lifecycle states of a capture session."""

    IDLE = "idle"
    CAPTURING = "capturing"
    ENDING = "ending"
    ENDED = "ended"
    ERRORED = "errored"


def parse_timemark(value: str | float) -> float:
    """Convert an encoder timemark into seconds.

    Args:
        value: Either a number of seconds or a ``[[HH:]MM:]SS[.ff]`` string as
            printed by ffmpeg in ``Duration:`` and ``time=`` fields.

    Returns:
        The timemark expressed in seconds.

    Raises:
        ValueError: If ``value`` is ``N/A`` or not a recognisable timemark.

    Examples:
        >>> parse_timemark("00:01:02.50")
        62.5
    """
    if isinstance(value, int | float):
        return float(value)
    text = value.strip()
    if not text or text == _UNAVAILABLE:
        raise ValueError(f"Timemark is not available: {value!r}")
    negative = text.startswith("-")
    parts = text.lstrip("-").split(":")
    if len(parts) > 3:
        raise ValueError(f"Invalid timemark: {value!r}")
    try:
        seconds = float(parts[-1])
        for multiplier, part in zip((60, 3600), reversed(parts[:-1]), strict=False):
            seconds += multiplier * int(part)
    except ValueError as exc:
        raise ValueError(f"Invalid timemark: {value!r}") from exc
    return -seconds if negative else seconds


def duration_to_milliseconds(duration: str | float) -> float:
    """Return ``duration`` in milliseconds; see :func:`parse_timemark`."""
    return parse_timemark(duration) * 1000


def _leading_number(value: str | None) -> float | None:
    if value is None:
        return None
    match = _LEADING_NUMBER_PATTERN.match(value)
    return float(match.group(0)) if match else None


@dataclass(frozen=True, slots=True)
class CodecData:
    """Structural metadata reported by the encoder for its input.

    Attributes:
        duration_seconds: Input duration, or ``None`` when the encoder reports
            ``N/A`` (piped input has no known duration).
        codec_name: Primary codec, the video codec when one exists.
        format_name: Demuxer name(s) of the input container.
        audio_codec: Audio codec, when the input has an audio stream.
        video_details: Comma separated video stream details after the codec.
    """

    duration_seconds: float | None
    codec_name: str
    format_name: str | None = None
    audio_codec: str | None = None
    video_details: tuple[str, ...] = ()

    @classmethod
    def from_stderr(cls, lines: Iterable[str]) -> CodecData | None:
        """Parse codec data out of the encoder's input banner, if present."""
        parser = CodecDataParser()
        for line in lines:
            if parser.feed(line):
                break
        return parser.build()


@dataclass(slots=True)
class CodecDataParser:
    """Incrementally collect input metadata from encoder stderr lines.

    :meth:`feed` returns ``True`` once the input section is complete, which is
    the point where the collected metadata can be reported.
    """

    format_name: str | None = None
    duration: str | None = None
    video_codec: str | None = None
    video_details: tuple[str, ...] = ()
    audio_codec: str | None = None
    _in_input: bool = field(default=False, repr=False)
    _seen_input: bool = field(default=False, repr=False)

    def feed(self, line: str) -> bool:
        text = line.strip()
        input_match = _INPUT_PATTERN.match(text)
        if input_match:
            self._in_input = True
            self._seen_input = True
            if self.format_name is None:
                self.format_name = input_match.group("format")
            return False
        if text.startswith(_OUTPUT_SECTION_PREFIXES) or text.startswith(_PROGRESS_PREFIXES):
            self._in_input = False
            return self._seen_input
        if not self._in_input:
            return False
        duration_match = _DURATION_PATTERN.match(text)
        if duration_match and self.duration is None:
            self.duration = duration_match.group("duration").strip()
            return False
        stream_match = _STREAM_PATTERN.match(text)
        if stream_match:
            details = [part.strip() for part in stream_match.group("details").split(",")]
            codec = details[0].split(" ")[0] if details and details[0] else None
            if stream_match.group("kind") == "Video" and self.video_codec is None:
                self.video_codec = codec
                self.video_details = tuple(details[1:])
            elif stream_match.group("kind") == "Audio" and self.audio_codec is None:
                self.audio_codec = codec
        return False

    @property
    def has_data(self) -> bool:
        """Whether any input metadata has been observed."""
        return self._seen_input

    def build(self) -> CodecData | None:
        """Return the collected :class:`CodecData`, or ``None`` if nothing was seen."""
        if not self._seen_input:
            return None
        duration_seconds: float | None
        try:
            duration_seconds = parse_timemark(self.duration) if self.duration else None
        except ValueError:
            duration_seconds = None
        return CodecData(
            duration_seconds=duration_seconds,
            codec_name=self.video_codec or self.audio_codec or "unknown",
            format_name=self.format_name,
            audio_codec=self.audio_codec,
            video_details=self.video_details,
        )


@dataclass(frozen=True, slots=True)
class ProgressSample:
    """One periodic progress report printed by the encoder.

    Attributes:
        timemark: Encoded playback position as printed by the encoder.
        frames: Frames processed so far.
        current_fps: Instantaneous encoding rate.
        current_kbps: Instantaneous output bitrate in kbit/s.
        target_size_kb: Output size so far in kilobytes.
    """

    timemark: str
    frames: int | None = None
    current_fps: float | None = None
    current_kbps: float | None = None
    target_size_kb: int | None = None

    @property
    def seconds(self) -> float:
        """The timemark in seconds."""
        return parse_timemark(self.timemark)

    @classmethod
    def from_stderr_line(cls, line: str) -> ProgressSample | None:
        """Parse a ``frame=… time=…`` status line; ``None`` for anything else."""
        text = line.strip()
        if not text.startswith(_PROGRESS_PREFIXES):
            return None
        fields = dict(_PROGRESS_FIELD_PATTERN.findall(text))
        timemark = fields.get("time")
        if not timemark or timemark == _UNAVAILABLE:
            return None
        frames = _leading_number(fields.get("frame"))
        size = _leading_number(fields.get("size") or fields.get("Lsize"))
        return cls(
            timemark=timemark,
            frames=int(frames) if frames is not None else None,
            current_fps=_leading_number(fields.get("fps")),
            current_kbps=_leading_number(fields.get("bitrate")),
            target_size_kb=int(size) if size is not None else None,
        )


__all__ = [
    "CodecData",
    "CodecDataParser",
    "ProgressSample",
    "SessionState",
    "duration_to_milliseconds",
    "parse_timemark",
]
