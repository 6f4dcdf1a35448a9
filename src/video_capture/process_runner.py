"""Encoder subprocess runner with event callbacks and a backpressured input sink."""

from __future__ import annotations

import contextlib
import logging
import os
import re
import shlex
import subprocess
import threading
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

from .config import DEFAULT_HIGH_WATER_MARK, EncoderConfig
from .models import CodecData, CodecDataParser, ProgressSample

PIPE_SOURCE = "pipe:0"
_STDERR_HISTORY = 100
_READ_CHUNK_SIZE = 8192
_LINE_SPLIT_PATTERN = re.compile(r"[\r\n]+")


class EncoderError(RuntimeError):
    """Base class for encoder subprocess failures."""


class SpawnFailed(EncoderError):
    """Raised when the encoder executable is missing or cannot be started."""


class EncoderRuntimeError(EncoderError):
    """Raised when the encoder subprocess reports a failure mid-run."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Store the exit status and captured output alongside the message."""
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


ErrorListener = Callable[[EncoderRuntimeError, str, str], None]


@dataclass(frozen=True, slots=True)
class EncoderListeners:
    """Callbacks for encoder lifecycle events.

    Callbacks run on the encoder's background threads. ``on_end`` or
    ``on_error`` is invoked exactly once, after every ``on_stderr``,
    ``on_codec_data`` and ``on_progress`` call.
    """

    on_start: Callable[[str], None] | None = None
    on_stderr: Callable[[str], None] | None = None
    on_codec_data: Callable[[CodecData], None] | None = None
    on_progress: Callable[[ProgressSample], None] | None = None
    on_error: ErrorListener | None = None
    on_end: Callable[[], None] | None = None


class FrameSink:
    """Writable byte sink feeding an encoder's stdin from a pump thread.

    ``write`` never blocks. Every chunk is accepted into an in-memory buffer and
    the return value reports whether the buffer is still below the high-water
    mark. Once the pump has written out everything buffered after a ``False``
    return, the registered drain callbacks are fired once.
    """

    def __init__(
        self,
        pipe: IO[bytes],
        *,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
        logger: logging.Logger | None = None,
    ) -> None:
        """Start the pump thread writing into ``pipe``."""
        self._pipe = pipe
        self.high_water_mark = max(1, int(high_water_mark))
        self.logger = logger or logging.getLogger(__name__)
        self._condition = threading.Condition()
        self._chunks: deque[bytes] = deque()
        self._buffered = 0
        self._needs_drain = False
        self._drain_callbacks: list[Callable[[], None]] = []
        self._ending = False
        self._broken = False
        self.bytes_written = 0
        self._thread = threading.Thread(target=self._pump, name="encoder-stdin", daemon=True)
        self._thread.start()

    @property
    def buffered_bytes(self) -> int:
        with self._condition:
            return self._buffered

    @property
    def ended(self) -> bool:
        with self._condition:
            return self._ending

    def write(self, data: bytes) -> bool:
        """Queue ``data`` and return ``False`` once the buffer is full.

        Writes after :meth:`end` or after the pipe broke are discarded and
        report a full buffer that never drains.
        """
        with self._condition:
            if self._ending or self._broken:
                self.logger.debug("encoder.write_discarded", extra={"bytes": len(data)})
                self._needs_drain = True
                return False
            self._chunks.append(bytes(data))
            self._buffered += len(data)
            accepting = self._buffered < self.high_water_mark
            if not accepting:
                self._needs_drain = True
            self._condition.notify()
        return accepting

    def once_drain(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` once the buffer has been written out.

        The callback fires immediately when no drain is pending.
        """
        with self._condition:
            if self._needs_drain:
                self._drain_callbacks.append(callback)
                return
        callback()

    def end(self) -> None:
        """Close the pipe after all queued chunks have been written."""
        with self._condition:
            self._ending = True
            self._condition.notify()

    def abort(self) -> None:
        """Discard queued chunks and close the pipe."""
        with self._condition:
            self._chunks.clear()
            self._buffered = 0
            self._ending = True
            self._condition.notify()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    def _pump(self) -> None:
        try:
            while True:
                with self._condition:
                    while not self._chunks and not self._ending:
                        self._condition.wait()
                    if not self._chunks:
                        return
                    chunk = self._chunks.popleft()
                try:
                    self._pipe.write(chunk)
                    self._pipe.flush()
                except (OSError, ValueError) as exc:
                    self.logger.debug("encoder.stdin_closed", extra={"error": str(exc)})
                    with self._condition:
                        self._broken = True
                        self._chunks.clear()
                        self._buffered = 0
                    return
                callbacks: list[Callable[[], None]] = []
                with self._condition:
                    self._buffered -= len(chunk)
                    self.bytes_written += len(chunk)
                    if self._needs_drain and not self._chunks:
                        self._needs_drain = False
                        callbacks, self._drain_callbacks = self._drain_callbacks, []
                for callback in callbacks:
                    try:
                        callback()
                    except Exception:  # pragma: no cover - listener bug
                        self.logger.exception("encoder.drain_callback_failed")
        finally:
            with contextlib.suppress(OSError, ValueError):
                self._pipe.close()


class EncoderProcess:
    """Handle for one running encoder subprocess.

    The process is reaped by a waiter thread whether it exits normally, is
    killed, or crashes; :meth:`wait` blocks until that has happened and the
    final ``on_end``/``on_error`` callback has run.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        pipe_input: bool,
        listeners: EncoderListeners | None = None,
        niceness: int | None = None,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
        logger: logging.Logger | None = None,
    ) -> None:
        self.command = tuple(command)
        self.pipe_input = pipe_input
        self.listeners = listeners or EncoderListeners()
        self.niceness = niceness
        self.high_water_mark = high_water_mark
        self.logger = logger or logging.getLogger(__name__)
        self._process: subprocess.Popen[bytes] | None = None
        self._sink: FrameSink | None = None
        self._stdout = bytearray()
        self._stderr_lines: deque[str] = deque(maxlen=_STDERR_HISTORY)
        self._codec_parser = CodecDataParser()
        self._codec_emitted = False
        self._killed = False
        self._finished = threading.Event()
        self._readers: list[threading.Thread] = []

    @property
    def command_line(self) -> str:
        return shlex.join(self.command)

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    @property
    def stdin(self) -> FrameSink:
        """The writable input sink; only available in pipe input mode."""
        if self._sink is None:
            raise RuntimeError("Encoder was not started with a piped input")
        return self._sink

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def start(self) -> EncoderProcess:
        """Spawn the subprocess and its reader threads.

        Raises:
            SpawnFailed: If the executable cannot be started.
        """
        if self._process is not None:
            raise RuntimeError("Encoder already started")
        try:
            self._process = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE if self.pipe_input else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            self.logger.debug(
                "encoder.spawn_failed",
                extra={"command": self.command_line, "error": str(exc)},
            )
            raise SpawnFailed(f"Failed to start encoder {self.command[0]!r}: {exc}") from exc

        if self.niceness is not None:
            self._lower_priority(self.niceness)

        if self.pipe_input:
            assert self._process.stdin is not None
            self._sink = FrameSink(
                self._process.stdin,
                high_water_mark=self.high_water_mark,
                logger=self.logger,
            )

        self.logger.debug(
            "encoder.start", extra={"command": self.command_line, "pid": self._process.pid}
        )
        self._invoke(self.listeners.on_start, self.command_line)

        self._readers = [
            threading.Thread(target=self._read_stdout, name="encoder-stdout", daemon=True),
            threading.Thread(target=self._read_stderr, name="encoder-stderr", daemon=True),
        ]
        for reader in self._readers:
            reader.start()
        threading.Thread(target=self._wait_for_exit, name="encoder-wait", daemon=True).start()
        return self

    def kill(self) -> None:
        """Terminate the subprocess if it is still running."""
        process = self._process
        if process is None or process.poll() is not None:
            return
        self._killed = True
        with contextlib.suppress(ProcessLookupError):
            process.kill()

    def _lower_priority(self, niceness: int) -> None:
        """Apply ``niceness`` to the running encoder; unsupported platforms keep the default."""
        assert self._process is not None
        if not hasattr(os, "setpriority"):
            self.logger.debug("encoder.niceness_unsupported", extra={"niceness": niceness})
            return
        try:
            os.setpriority(os.PRIO_PROCESS, self._process.pid, niceness)
        except OSError as exc:
            # Raising priority above the parent's needs privileges; the encoder still runs.
            self.logger.debug(
                "encoder.niceness_failed",
                extra={"pid": self._process.pid, "niceness": niceness, "error": str(exc)},
            )

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the process is reaped; return ``False`` on timeout."""
        return self._finished.wait(timeout)

    def _invoke(self, callback: Callable[..., None] | None, *args: Any) -> None:
        """Invoke a listener and log, rather than propagate, its failures."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            self.logger.exception(
                "encoder.listener_failed",
                extra={"listener": getattr(callback, "__name__", repr(callback))},
            )

    def _read_stdout(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stream = self._process.stdout
        while chunk := stream.read1(_READ_CHUNK_SIZE):
            self._stdout.extend(chunk)
        stream.close()

    def _read_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stream = self._process.stderr
        pending = ""
        while chunk := stream.read1(_READ_CHUNK_SIZE):
            pending += chunk.decode("utf-8", errors="replace")
            *lines, pending = _LINE_SPLIT_PATTERN.split(pending)
            for line in lines:
                self._handle_stderr_line(line)
        if pending:
            self._handle_stderr_line(pending)
        stream.close()

    def _handle_stderr_line(self, line: str) -> None:
        if not line.strip():
            return
        self._stderr_lines.append(line)
        self._invoke(self.listeners.on_stderr, line)

        if not self._codec_emitted and self._codec_parser.feed(line):
            self._emit_codec_data()

        sample = ProgressSample.from_stderr_line(line)
        if sample is not None:
            self._invoke(self.listeners.on_progress, sample)

    def _emit_codec_data(self) -> None:
        data = self._codec_parser.build()
        if data is None:
            return
        self._codec_emitted = True
        self._invoke(self.listeners.on_codec_data, data)

    def _wait_for_exit(self) -> None:
        assert self._process is not None
        returncode = self._process.wait()
        for reader in self._readers:
            reader.join()
        if self._sink is not None:
            self._sink.abort()
            self._sink.join()
        if not self._codec_emitted:
            self._emit_codec_data()

        stdout = bytes(self._stdout).decode("utf-8", errors="replace")
        stderr = "\n".join(self._stderr_lines)
        try:
            if returncode == 0:
                self.logger.debug("encoder.end", extra={"pid": self._process.pid})
                self._invoke(self.listeners.on_end)
            else:
                error = EncoderRuntimeError(
                    self._failure_message(returncode),
                    returncode=returncode,
                    stdout=stdout,
                    stderr=stderr,
                )
                self.logger.debug(
                    "encoder.error",
                    extra={"pid": self._process.pid, "returncode": returncode},
                )
                self._invoke(self.listeners.on_error, error, stdout, stderr)
        finally:
            self._finished.set()

    def _failure_message(self, returncode: int) -> str:
        if self._killed:
            return f"Encoder was killed (exit status {returncode})"
        last_line = self._stderr_lines[-1] if self._stderr_lines else ""
        message = f"Encoder exited with code {returncode}"
        return f"{message}: {last_line}" if last_line else message


class EncoderRunner:
    """Assemble encoder command lines and spawn :class:`EncoderProcess` handles."""

    def __init__(
        self,
        config: EncoderConfig | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config or EncoderConfig()
        self.logger = logger or logging.getLogger(__name__)

    def build_command(
        self,
        *,
        source: Path | str | None = None,
        output: Path | str | None = None,
        input_options: Sequence[str] = (),
        output_options: Sequence[str] = (),
    ) -> list[str]:
        """Return the full argument vector for one encoder invocation.

        Args:
            source: Input file, or ``None`` to read from stdin.
            output: Destination file, or ``None`` to discard the output.
            input_options: Options placed before ``-i``.
            output_options: Options placed after the input.
        """
        command = [self.config.ffmpeg_path, "-hide_banner", "-y"]
        command.extend(input_options)
        command.extend(["-i", str(source) if source is not None else PIPE_SOURCE])
        command.extend(output_options)
        if output is None:
            command.extend(["-f", "null", "-"])
        else:
            command.append(str(output))
        return command

    def spawn(
        self,
        *,
        source: Path | str | None = None,
        output: Path | str | None = None,
        input_options: Sequence[str] = (),
        output_options: Sequence[str] = (),
        listeners: EncoderListeners | None = None,
        niceness: int | None = None,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
    ) -> EncoderProcess:
        """Start an encoder; a ``None`` source means frames are piped to stdin.

        ``niceness`` lowers the scheduling priority of the encoder process itself
        once it has started.

        Raises:
            SpawnFailed: If the encoder executable cannot be started.
        """
        command = self.build_command(
            source=source,
            output=output,
            input_options=input_options,
            output_options=output_options,
        )
        process = EncoderProcess(
            command,
            pipe_input=source is None,
            listeners=listeners,
            niceness=niceness,
            high_water_mark=high_water_mark,
            logger=self.logger,
        )
        return process.start()


__all__ = [
    "PIPE_SOURCE",
    "EncoderError",
    "EncoderListeners",
    "EncoderProcess",
    "EncoderRunner",
    "EncoderRuntimeError",
    "FrameSink",
    "SpawnFailed",
]
