"""Second-pass compression of finished captures with progress reporting."""

from __future__ import annotations

import contextlib
import logging
import shutil
import threading
from collections.abc import Callable
from concurrent.futures import Future, InvalidStateError
from pathlib import Path

from .config import MAX_COMPRESSION_LEVEL, CompressionConfig
from .models import CodecData, ProgressSample
from .probe import CodecProber
from .process_runner import EncoderListeners, EncoderRunner, EncoderRuntimeError

_LOGGER = logging.getLogger(__name__)
_PART_SUFFIX = ".part"

ProgressCallback = Callable[[float], None]


class FileRelocationFailed(RuntimeError):
    """Raised when the compressed output cannot replace the original file."""


def temporary_path_for(path: Path) -> Path:
    """Return the sibling path compression writes to before the final rename."""
    return path.with_name(f"{path.stem}{_PART_SUFFIX}{path.suffix}")


class CompressionJob:
    """Progress bookkeeping for one compression call.

    Fractions are only reported once the total duration is known, are clamped
    to ``[0, 1]`` and never decrease. :meth:`finish` always reports exactly
    ``1.0``.
    """

    def __init__(
        self,
        input_path: Path,
        temp_path: Path,
        on_progress: ProgressCallback | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.input_path = input_path
        self.temp_path = temp_path
        self.on_progress = on_progress
        self.logger = logger or _LOGGER
        self._lock = threading.Lock()
        self._total_duration_seconds: float | None = None
        self._progress_fraction = 0.0

    @property
    def total_duration_seconds(self) -> float | None:
        with self._lock:
            return self._total_duration_seconds

    @property
    def progress_fraction(self) -> float:
        with self._lock:
            return self._progress_fraction

    def set_total_duration(self, seconds: float | None, *, source: str) -> None:
        """Record the total duration unless it is unusable or already known."""
        if seconds is None or seconds <= 0:
            return
        with self._lock:
            if self._total_duration_seconds is not None:
                return
            self._total_duration_seconds = seconds
        self.logger.debug(
            "compression.duration_known",
            extra={"path": str(self.input_path), "seconds": seconds, "source": source},
        )

    def accept_probe(self, future: Future[CodecData]) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self.logger.warning(
                "compression.probe_unavailable",
                extra={"path": str(self.input_path), "error": str(exc)},
            )
            return
        self.set_total_duration(future.result().duration_seconds, source="probe")

    def accept_codec_data(self, data: CodecData) -> None:
        self.set_total_duration(data.duration_seconds, source="encoder")

    def accept_progress(self, sample: ProgressSample) -> None:
        try:
            elapsed = sample.seconds
        except ValueError:
            return
        with self._lock:
            total = self._total_duration_seconds
            if not total:
                return
            fraction = min(1.0, max(0.0, elapsed / total))
            if fraction < self._progress_fraction:
                return
            self._progress_fraction = fraction
        self.logger.debug(
            "compression.progress",
            extra={"path": str(self.input_path), "timemark": sample.timemark, "fraction": fraction},
        )
        self._notify(fraction)

    def finish(self) -> None:
        with self._lock:
            self._progress_fraction = 1.0
        self._notify(1.0)

    def _notify(self, fraction: float) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(fraction)
        except Exception:
            self.logger.exception("compression.progress_callback_failed")


class Compressor:
    """Re-encode finished captures in place with a quality-controlled encoder pass."""

    def __init__(
        self,
        runner: EncoderRunner | None = None,
        *,
        prober: CodecProber | None = None,
        config: CompressionConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialise the compressor.

        Args:
            runner: Runner used to spawn the compression encoder.
            prober: Prober used to learn the source duration; defaults to one
                sharing ``runner`` with the configured probe timeout.
            config: Compression encoder settings.
            logger: Optional logger; defaults to this module's logger.
        """
        self.runner = runner or EncoderRunner()
        self.config = config or CompressionConfig()
        self.prober = prober or CodecProber(self.runner, timeout=self.config.probe_timeout)
        self.logger = logger or _LOGGER

    def compress(
        self,
        input_path: Path | str,
        compression_level: int,
        on_progress: ProgressCallback | None = None,
    ) -> Future[None]:
        """Compress ``input_path`` and atomically replace it with the result.

        Args:
            input_path: Raw capture to compress.
            compression_level: Constant rate factor passed to the encoder,
                0 (lossless) to 51 (smallest).
            on_progress: Called with fractions in ``[0, 1]`` from a background
                thread; the last call is always ``1.0``.

        Returns:
            A future resolving once the original file has been replaced. On
            failure it carries the encoder error or
            :class:`FileRelocationFailed`, and ``input_path`` is untouched.

        Raises:
            FileNotFoundError: If ``input_path`` does not exist.
            ValueError: If ``compression_level`` is out of range.
            SpawnFailed: If the encoder executable cannot be started.
        """
        source = Path(input_path)
        if not source.is_file():
            raise FileNotFoundError(f"Capture not found: {source}")
        if isinstance(compression_level, bool) or not isinstance(compression_level, int):
            raise ValueError("compression_level must be an integer")
        if not 0 <= compression_level <= MAX_COMPRESSION_LEVEL:
            raise ValueError(f"compression_level must be between 0 and {MAX_COMPRESSION_LEVEL}")

        temp_path = temporary_path_for(source)
        if temp_path.exists():
            temp_path.unlink()

        job = CompressionJob(source, temp_path, on_progress, logger=self.logger)
        future: Future[None] = Future()

        self.logger.debug(
            "compression.processing",
            extra={
                "path": str(source),
                "temp_path": str(temp_path),
                "compression_level": compression_level,
            },
        )

        def on_error(error: EncoderRuntimeError, stdout: str, stderr: str) -> None:
            self.logger.debug(
                "compression.errored",
                extra={"error": str(error), "stdout": stdout, "stderr": stderr},
            )
            with contextlib.suppress(FileNotFoundError):
                temp_path.unlink()
            _settle(future, error=error)

        def on_end() -> None:
            self.logger.debug("compression.ended", extra={"path": str(source)})
            job.finish()
            try:
                temp_path.replace(source)
            except OSError as exc:
                with contextlib.suppress(FileNotFoundError):
                    temp_path.unlink()
                relocation_error = FileRelocationFailed(
                    f"Failed to move {temp_path} over {source}: {exc}"
                )
                relocation_error.__cause__ = exc
                _settle(future, error=relocation_error)
                return
            _settle(future)

        self.runner.spawn(
            source=source,
            output=temp_path,
            output_options=[
                "-c:v",
                self.config.codec,
                "-preset",
                self.config.preset,
                "-crf",
                str(compression_level),
            ],
            listeners=EncoderListeners(
                on_start=lambda command: self.logger.debug(
                    "compression.started", extra={"command": command}
                ),
                on_stderr=lambda line: self.logger.debug(
                    "compression.stderr", extra={"line": line}
                ),
                on_codec_data=job.accept_codec_data,
                on_progress=job.accept_progress,
                on_error=on_error,
                on_end=on_end,
            ),
        )
        probe_future = self.prober.probe(source)
        probe_future.add_done_callback(job.accept_probe)
        future.add_done_callback(lambda _: probe_future.cancel())
        return future


def _settle(future: Future[None], *, error: BaseException | None = None) -> None:
    try:
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(None)
    except InvalidStateError:
        pass


def copy_capture(source: Path | str, destination: Path | str) -> Path | None:
    """Copy a finished capture to ``destination``, overwriting any existing file.

    The copy lands in a sibling temporary file first and is then renamed over
    ``destination``, so readers never see a partial file.

    Returns:
        The destination path, or ``None`` when ``source`` does not exist.

    Raises:
        FileRelocationFailed: If the copy or the final rename fails.
    """
    source = Path(source)
    destination = Path(destination)
    if not source.is_file():
        _LOGGER.debug("capture.copy_skipped", extra={"path": str(source), "reason": "missing"})
        return None

    temp_path = temporary_path_for(destination)
    _LOGGER.debug(
        "capture.copying",
        extra={"path": str(source), "destination": str(destination), "temp_path": str(temp_path)},
    )
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, temp_path)
        temp_path.replace(destination)
    except OSError as exc:
        with contextlib.suppress(FileNotFoundError):
            temp_path.unlink()
        if isinstance(exc, FileNotFoundError) and not source.exists():
            _LOGGER.debug(
                "capture.copy_skipped", extra={"path": str(source), "reason": "vanished"}
            )
            return None
        raise FileRelocationFailed(f"Failed to copy {source} to {destination}: {exc}") from exc
    _LOGGER.debug("capture.copied", extra={"destination": str(destination)})
    return destination


def compress(
    input_path: Path | str,
    compression_level: int,
    on_progress: ProgressCallback | None = None,
    *,
    runner: EncoderRunner | None = None,
    config: CompressionConfig | None = None,
) -> Future[None]:
    """Compress ``input_path`` in place with a one-off :class:`Compressor`."""
    return Compressor(runner, config=config).compress(input_path, compression_level, on_progress)


__all__ = [
    "CompressionJob",
    "Compressor",
    "FileRelocationFailed",
    "ProgressCallback",
    "compress",
    "copy_capture",
    "temporary_path_for",
]
