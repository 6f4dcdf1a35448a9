"""Live capture sessions piping frames into an encoder subprocess."""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, InvalidStateError
from datetime import UTC, datetime
from pathlib import Path

from .config import CaptureConfig, SuppressionPolicy
from .models import CodecData, SessionState
from .process_runner import (
    EncoderListeners,
    EncoderProcess,
    EncoderRunner,
    EncoderRuntimeError,
    SpawnFailed,
)

_LOGGER = logging.getLogger(__name__)
# Per-frame messages, extra verbose.
_FRAME_LOGGER = logging.getLogger(f"{__name__}.frames")

# Encoder complaints that mean "the input pipe closed without any data".
_EMPTY_INPUT_MARKERS = (
    "End of file",
    "Output file is empty",
    "Invalid data found when processing input",
    "could not find codec parameters",
)

CaptureErrorCallback = Callable[[EncoderRuntimeError, str, str], None]


class GateState(enum.Enum):
    """Whether the encoder input currently accepts frames."""

    OPEN = "open"
    BLOCKED = "blocked"


class BackpressureGate:
    """Two-state gate holding at most one pending drain subscription.

    Only the frame-writing path blocks the gate and only the sink's drain
    signal reopens it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = GateState.OPEN

    @property
    def state(self) -> GateState:
        with self._lock:
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state is GateState.OPEN

    def block(self, subscribe: Callable[[Callable[[], None]], None]) -> bool:
        """Close the gate and subscribe its reopening to the next drain.

        Returns:
            ``False`` when the gate was already blocked; no second waiter is
            registered in that case.
        """
        with self._lock:
            if self._state is GateState.BLOCKED:
                return False
            self._state = GateState.BLOCKED
        subscribe(self._open)
        return True

    def _open(self) -> None:
        with self._lock:
            self._state = GateState.OPEN
        _FRAME_LOGGER.debug("capture.input_drained")


class CaptureSession:
    """Own one live recording from the first frame to the encoder's exit.

    Frames are forwarded to the encoder strictly in call order. While the
    encoder input reports backpressure, newly written frames are dropped and
    counted rather than queued.
    """

    def __init__(
        self,
        output_path: Path | str,
        *,
        runner: EncoderRunner | None = None,
        config: CaptureConfig | None = None,
        on_error: CaptureErrorCallback | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Prepare a session; call :meth:`start` to spawn the encoder.

        Args:
            output_path: Destination of the raw capture file.
            runner: Runner used to spawn the capture encoder.
            config: Capture encoder settings.
            on_error: Invoked with ``(error, stdout, stderr)`` when the encoder
                fails and error reporting is not suppressed.
            logger: Optional logger; defaults to this module's logger.
        """
        self.output_path = Path(output_path)
        self.runner = runner or EncoderRunner()
        self.config = config or CaptureConfig()
        self.on_error = on_error
        self.logger = logger or _LOGGER
        self._lock = threading.Lock()
        self._state = SessionState.IDLE
        self._gate = BackpressureGate()
        self._has_written_any_frame = False
        self._suppress_error_reporting = False
        self._skipped_frame_count = 0
        self._frames_written = 0
        self._process: EncoderProcess | None = None
        self._started_at: datetime | None = None
        self._ended: Future[None] = Future()

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def has_written_any_frame(self) -> bool:
        with self._lock:
            return self._has_written_any_frame

    @property
    def suppress_error_reporting(self) -> bool:
        with self._lock:
            return self._suppress_error_reporting

    @property
    def wants_more_data(self) -> bool:
        return self._gate.is_open

    @property
    def skipped_frame_count(self) -> int:
        with self._lock:
            return self._skipped_frame_count

    @property
    def frames_written(self) -> int:
        with self._lock:
            return self._frames_written

    @property
    def started_at(self) -> datetime | None:
        """UTC time at which the encoder process was started."""
        return self._started_at

    @property
    def command_line(self) -> str | None:
        return self._process.command_line if self._process is not None else None

    @property
    def ended(self) -> Future[None]:
        """Future settled when the encoder exits; see :meth:`end`."""
        return self._ended

    def start(self) -> CaptureSession:
        """Spawn the capture encoder and begin accepting frames.

        Raises:
            SpawnFailed: If the encoder executable cannot be started.
        """
        with self._lock:
            if self._state is not SessionState.IDLE:
                raise RuntimeError("Capture session already started")
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                self._process = self.runner.spawn(
                    source=None,
                    output=self.output_path,
                    input_options=[
                        "-f",
                        self.config.input_format,
                        "-use_wallclock_as_timestamps",
                        "1",
                    ],
                    output_options=["-c:v", self.config.codec, "-preset", self.config.preset],
                    listeners=EncoderListeners(
                        on_start=self._handle_start,
                        on_stderr=self._handle_stderr,
                        on_codec_data=self._handle_codec_data,
                        on_error=self._handle_error,
                        on_end=self._handle_end,
                    ),
                    niceness=self.config.niceness,
                    high_water_mark=self.config.high_water_mark,
                )
            except SpawnFailed as exc:
                self._state = SessionState.ERRORED
                _settle(self._ended, error=exc)
                raise
            self._state = SessionState.CAPTURING
        return self

    def write_frame(self, frame: bytes) -> None:
        """Forward one encoded frame to the encoder, or drop it.

        Never blocks and never raises for encoder problems: frames written
        after :meth:`end` are ignored, and frames written while the encoder
        input is saturated are counted in :attr:`skipped_frame_count`.
        """
        with self._lock:
            if self._state is not SessionState.CAPTURING or self._process is None:
                _FRAME_LOGGER.debug("capture.frame_ignored", extra={"state": self._state.value})
                return

            self._has_written_any_frame = True

            if not self._gate.is_open:
                self._skipped_frame_count += 1
                _FRAME_LOGGER.debug(
                    "capture.frame_skipped", extra={"skipped": self._skipped_frame_count}
                )
                return

            _FRAME_LOGGER.debug("capture.frame_written", extra={"bytes": len(frame)})
            sink = self._process.stdin
            self._frames_written += 1
            if not sink.write(frame):
                self._gate.block(sink.once_drain)

    def end(self) -> Future[None]:
        """Stop accepting frames and close the encoder input.

        Safe to call repeatedly; every call returns the same future. The future
        resolves once the encoder has drained its input and exited, and fails
        with the encoder's error unless the session never received a frame.
        """
        with self._lock:
            if self._state is SessionState.CAPTURING and self._process is not None:
                self._state = SessionState.ENDING
                if not self._has_written_any_frame:
                    # An encoder closed without input fails with a benign end-of-file error.
                    self._suppress_error_reporting = True
                self.logger.debug(
                    "capture.ending",
                    extra={
                        "path": str(self.output_path),
                        "frames_written": self._frames_written,
                        "skipped": self._skipped_frame_count,
                        "suppress_errors": self._suppress_error_reporting,
                    },
                )
                self._process.stdin.end()
            elif self._state is SessionState.IDLE:
                self._state = SessionState.ENDED
                _settle(self._ended)
        return self._ended

    def _handle_start(self, command_line: str) -> None:
        self._started_at = datetime.now(UTC)
        self.logger.debug("capture.started", extra={"command": command_line})

    def _handle_stderr(self, line: str) -> None:
        self.logger.debug("capture.stderr", extra={"line": line})

    def _handle_codec_data(self, data: CodecData) -> None:
        self.logger.debug(
            "capture.codec_data",
            extra={"codec": data.codec_name, "format": data.format_name},
        )

    def _handle_end(self) -> None:
        with self._lock:
            self._state = SessionState.ENDED
            skipped = self._skipped_frame_count
            written = self._frames_written
        self.logger.debug(
            "capture.ended",
            extra={"path": str(self.output_path), "frames_written": written, "skipped": skipped},
        )
        _settle(self._ended)

    def _handle_error(self, error: EncoderRuntimeError, stdout: str, stderr: str) -> None:
        with self._lock:
            self._state = SessionState.ERRORED
            suppressed = self._suppress_error_reporting and self._is_suppressible(stderr)
        self.logger.debug(
            "capture.errored",
            extra={
                "error": str(error),
                "stdout": stdout,
                "stderr": stderr,
                "suppressed": suppressed,
            },
        )
        if suppressed:
            _settle(self._ended)
            return
        if self.on_error is not None:
            try:
                self.on_error(error, stdout, stderr)
            except Exception:
                self.logger.exception("capture.on_error_failed")
        _settle(self._ended, error=error)

    def _is_suppressible(self, stderr: str) -> bool:
        if self.config.suppression is SuppressionPolicy.ANY_ERROR:
            return True
        return any(marker in stderr for marker in _EMPTY_INPUT_MARKERS)


def _settle(future: Future[None], *, error: BaseException | None = None) -> None:
    try:
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(None)
    except InvalidStateError:
        pass


def start_capture(
    output_path: Path | str,
    *,
    on_error: CaptureErrorCallback | None = None,
    runner: EncoderRunner | None = None,
    config: CaptureConfig | None = None,
    logger: logging.Logger | None = None,
) -> CaptureSession:
    """Create and start a :class:`CaptureSession` writing to ``output_path``.

    Raises:
        SpawnFailed: If the encoder executable cannot be started.
    """
    session = CaptureSession(
        output_path, runner=runner, config=config, on_error=on_error, logger=logger
    )
    return session.start()


__all__ = [
    "BackpressureGate",
    "CaptureErrorCallback",
    "CaptureSession",
    "GateState",
    "start_capture",
]
