"""Codec probing: learn a source's duration and codec without producing output."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, InvalidStateError
from pathlib import Path

from .config import DEFAULT_PROBE_TIMEOUT
from .models import CodecData
from .process_runner import EncoderListeners, EncoderRunner, EncoderRuntimeError, SpawnFailed

_LOGGER = logging.getLogger(__name__)


class ProbeError(RuntimeError):
    """Base class for codec probe failures."""


class ProbeFailed(ProbeError):
    """Raised when the encoder fails before reporting codec data."""


class ProbeTimeout(ProbeError):
    """Raised when no codec data arrives within the probe timeout."""


class CodecProber:
    """Run the encoder in discard mode and resolve with the first codec data event."""

    def __init__(
        self,
        runner: EncoderRunner | None = None,
        *,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialise the prober.

        Args:
            runner: Runner used to spawn the probe encoder.
            timeout: Seconds to wait for codec data before failing with
                :class:`ProbeTimeout`.
            logger: Optional logger; defaults to this module's logger.
        """
        if timeout <= 0:
            raise ValueError("timeout must be greater than 0")
        self.runner = runner or EncoderRunner()
        self.timeout = timeout
        self.logger = logger or _LOGGER

    def probe(self, source: Path | str) -> Future[CodecData]:
        """Probe ``source`` once, without retrying.

        Returns:
            A future resolving with the source's :class:`CodecData`, or failing
            with :class:`ProbeFailed` or :class:`ProbeTimeout`. The encoder is
            terminated as soon as the future settles.
        """
        future: Future[CodecData] = Future()
        source_path = Path(source)

        def on_codec_data(data: CodecData) -> None:
            if _settle(future, result=data):
                self.logger.debug(
                    "probe.codec_data",
                    extra={
                        "path": str(source_path),
                        "duration_seconds": data.duration_seconds,
                        "codec": data.codec_name,
                    },
                )

        def on_error(error: EncoderRuntimeError, _stdout: str, _stderr: str) -> None:
            if _settle(future, error=ProbeFailed(f"Probing {source_path} failed: {error}")):
                self.logger.debug(
                    "probe.failed", extra={"path": str(source_path), "error": str(error)}
                )

        def on_end() -> None:
            _settle(
                future,
                error=ProbeFailed(f"Encoder exited without reporting codec data for {source_path}"),
            )

        def on_stderr(line: str) -> None:
            self.logger.debug("probe.stderr", extra={"line": line})

        try:
            process = self.runner.spawn(
                source=source_path,
                output=None,
                listeners=EncoderListeners(
                    on_stderr=on_stderr,
                    on_codec_data=on_codec_data,
                    on_error=on_error,
                    on_end=on_end,
                ),
            )
        except SpawnFailed as exc:
            error = ProbeFailed(str(exc))
            error.__cause__ = exc
            failed: Future[CodecData] = Future()
            failed.set_exception(error)
            return failed

        def on_timeout() -> None:
            if _settle(
                future,
                error=ProbeTimeout(
                    f"No codec data for {source_path} within {self.timeout:g} seconds"
                ),
            ):
                self.logger.warning(
                    "probe.timeout", extra={"path": str(source_path), "timeout": self.timeout}
                )

        timer = threading.Timer(self.timeout, on_timeout)
        timer.daemon = True
        timer.start()

        def on_settled(_future: Future[CodecData]) -> None:
            timer.cancel()
            process.kill()

        future.add_done_callback(on_settled)
        return future


def _settle(
    future: Future[CodecData],
    *,
    result: CodecData | None = None,
    error: BaseException | None = None,
) -> bool:
    """Resolve ``future`` unless it already settled; return whether this call won."""
    try:
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)  # type: ignore[arg-type]
    except InvalidStateError:
        return False
    return True


def probe(
    source: Path | str,
    *,
    runner: EncoderRunner | None = None,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
) -> Future[CodecData]:
    """Probe ``source`` with a one-off :class:`CodecProber`."""
    return CodecProber(runner, timeout=timeout).probe(source)


__all__ = ["CodecProber", "ProbeError", "ProbeFailed", "ProbeTimeout", "probe"]
