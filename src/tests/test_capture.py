import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import pytest

from video_capture.capture import BackpressureGate, CaptureSession, GateState, start_capture
from video_capture.config import CaptureConfig, EncoderConfig, SuppressionPolicy
from video_capture.models import SessionState
from video_capture.process_runner import (
    EncoderListeners,
    EncoderRunner,
    EncoderRuntimeError,
    SpawnFailed,
)

RunnerFactory = Callable[..., EncoderRunner]


class FakeSink:
    """Input sink whose backpressure is controlled by the test."""

    def __init__(self) -> None:
        self.writes: list[bytes] = []
        self.accepting = True
        self.drain_callbacks: list[Callable[[], None]] = []
        self.end_calls = 0
        self.calls: list[str] = []

    def write(self, data: bytes) -> bool:
        self.writes.append(data)
        self.calls.append("write")
        return self.accepting

    def once_drain(self, callback: Callable[[], None]) -> None:
        self.drain_callbacks.append(callback)

    def drain(self) -> None:
        callbacks, self.drain_callbacks = self.drain_callbacks, []
        for callback in callbacks:
            callback()

    def end(self) -> None:
        self.end_calls += 1
        self.calls.append("end")


class FakeProcess:
    def __init__(self, listeners: EncoderListeners) -> None:
        self.listeners = listeners
        self.stdin = FakeSink()
        self.command_line = "ffmpeg -i pipe:0 out.mp4"


class FakeRunner:
    """Runner recording spawn arguments instead of starting a subprocess."""

    def __init__(self) -> None:
        self.spawn_kwargs: dict[str, Any] = {}
        self.process: FakeProcess | None = None

    def spawn(self, **kwargs: Any) -> FakeProcess:
        self.spawn_kwargs = kwargs
        self.process = FakeProcess(kwargs["listeners"])
        self.process.listeners.on_start("ffmpeg -i pipe:0 out.mp4")
        return self.process

    @property
    def sink(self) -> FakeSink:
        assert self.process is not None
        return self.process.stdin

    @property
    def listeners(self) -> EncoderListeners:
        assert self.process is not None
        return self.process.listeners


def _encoder_error(stderr: str = "Conversion failed!") -> EncoderRuntimeError:
    return EncoderRuntimeError(
        f"Encoder exited with code 1: {stderr}", returncode=1, stderr=stderr
    )


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


def _start(
    runner: FakeRunner,
    tmp_path: Path,
    *,
    config: CaptureConfig | None = None,
    on_error: Any = None,
) -> CaptureSession:
    return start_capture(
        tmp_path / "captures" / "raw.mp4",
        runner=runner,  # type: ignore[arg-type]
        config=config,
        on_error=on_error,
    )


def test_start_capture_spawns_piped_low_priority_encoder(
    runner: FakeRunner, tmp_path: Path
) -> None:
    session = _start(runner, tmp_path)

    kwargs = runner.spawn_kwargs
    assert kwargs["source"] is None
    assert kwargs["output"] == tmp_path / "captures" / "raw.mp4"
    assert list(kwargs["input_options"]) == [
        "-f",
        "image2pipe",
        "-use_wallclock_as_timestamps",
        "1",
    ]
    assert list(kwargs["output_options"]) == ["-c:v", "libx264", "-preset", "ultrafast"]
    assert kwargs["niceness"] == 20
    assert (tmp_path / "captures").is_dir()
    assert session.state is SessionState.CAPTURING
    assert session.started_at is not None
    assert session.command_line == "ffmpeg -i pipe:0 out.mp4"


def test_frames_are_forwarded_in_order(runner: FakeRunner, tmp_path: Path) -> None:
    session = _start(runner, tmp_path)

    for index in range(5):
        session.write_frame(f"frame-{index}".encode())

    assert runner.sink.writes == [f"frame-{index}".encode() for index in range(5)]
    assert session.frames_written == 5
    assert session.skipped_frame_count == 0
    assert session.has_written_any_frame


def test_frames_are_skipped_while_encoder_input_is_saturated(
    runner: FakeRunner, tmp_path: Path
) -> None:
    session = _start(runner, tmp_path)
    runner.sink.accepting = False

    session.write_frame(b"accepted")
    session.write_frame(b"skipped-1")
    session.write_frame(b"skipped-2")

    assert runner.sink.writes == [b"accepted"]
    assert session.skipped_frame_count == 2
    assert not session.wants_more_data
    assert len(runner.sink.drain_callbacks) == 1

    runner.sink.accepting = True
    runner.sink.drain()
    session.write_frame(b"after-drain")

    assert session.wants_more_data
    assert runner.sink.writes == [b"accepted", b"after-drain"]
    assert session.skipped_frame_count == 2


def test_end_is_idempotent_and_ignores_later_frames(runner: FakeRunner, tmp_path: Path) -> None:
    session = _start(runner, tmp_path)
    session.write_frame(b"frame")

    first = session.end()
    second = session.end()
    session.write_frame(b"too-late")

    assert first is second
    assert runner.sink.end_calls == 1
    assert runner.sink.writes == [b"frame"]
    assert session.state is SessionState.ENDING
    assert not first.done()

    runner.listeners.on_end()

    assert first.result(timeout=1) is None
    assert session.state is SessionState.ENDED


def test_end_without_frames_suppresses_encoder_failure(
    runner: FakeRunner, tmp_path: Path
) -> None:
    on_error = Mock()
    session = _start(runner, tmp_path, on_error=on_error)

    future = session.end()
    runner.listeners.on_error(_encoder_error("pipe:0: End of file"), "", "pipe:0: End of file")

    assert session.suppress_error_reporting
    assert future.result(timeout=1) is None
    on_error.assert_not_called()
    assert session.state is SessionState.ERRORED


def test_failure_after_frames_is_reported(runner: FakeRunner, tmp_path: Path) -> None:
    on_error = Mock()
    session = _start(runner, tmp_path, on_error=on_error)
    session.write_frame(b"frame")

    future = session.end()
    error = _encoder_error()
    runner.listeners.on_error(error, "out", "Conversion failed!")

    assert not session.suppress_error_reporting
    on_error.assert_called_once_with(error, "out", "Conversion failed!")
    with pytest.raises(EncoderRuntimeError):
        future.result(timeout=1)


def test_skipped_frames_count_as_written_for_suppression(
    runner: FakeRunner, tmp_path: Path
) -> None:
    on_error = Mock()
    session = _start(runner, tmp_path, on_error=on_error)
    runner.sink.accepting = False
    session.write_frame(b"accepted")

    session.end()
    runner.listeners.on_error(_encoder_error(), "", "Conversion failed!")

    on_error.assert_called_once()


def test_end_of_input_policy_only_suppresses_empty_input_failures(
    runner: FakeRunner, tmp_path: Path
) -> None:
    on_error = Mock()
    config = CaptureConfig(suppression=SuppressionPolicy.END_OF_INPUT)
    session = _start(runner, tmp_path, config=config, on_error=on_error)

    future = session.end()
    runner.listeners.on_error(_encoder_error(), "", "Unknown encoder 'libx264'")

    on_error.assert_called_once()
    with pytest.raises(EncoderRuntimeError):
        future.result(timeout=1)


def test_end_of_input_policy_suppresses_end_of_file(runner: FakeRunner, tmp_path: Path) -> None:
    config = CaptureConfig(suppression=SuppressionPolicy.END_OF_INPUT)
    session = _start(runner, tmp_path, config=config)

    future = session.end()
    runner.listeners.on_error(_encoder_error(), "", "pipe:0: End of file")

    assert future.result(timeout=1) is None


def test_failing_error_callback_is_logged(
    runner: FakeRunner, tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    def broken_callback(*_args: Any) -> None:
        raise ValueError("callback bug")

    session = _start(runner, tmp_path, on_error=broken_callback)
    session.write_frame(b"frame")
    future = session.end()

    with caplog.at_level("ERROR", logger="video_capture"):
        runner.listeners.on_error(_encoder_error(), "", "Conversion failed!")

    assert any(record.getMessage() == "capture.on_error_failed" for record in caplog.records)
    with pytest.raises(EncoderRuntimeError):
        future.result(timeout=1)


def test_encoder_exiting_while_capturing_ends_session(
    runner: FakeRunner, tmp_path: Path
) -> None:
    session = _start(runner, tmp_path)

    runner.listeners.on_end()
    session.write_frame(b"ignored")

    assert session.state is SessionState.ENDED
    assert session.ended.result(timeout=1) is None
    assert runner.sink.writes == []


def test_end_before_start_resolves_immediately(tmp_path: Path) -> None:
    session = CaptureSession(tmp_path / "raw.mp4", runner=FakeRunner())  # type: ignore[arg-type]

    assert session.end().result(timeout=1) is None
    assert session.state is SessionState.ENDED


def test_start_capture_propagates_spawn_failure(tmp_path: Path) -> None:
    runner = Mock()
    runner.spawn.side_effect = SpawnFailed("ffmpeg not found")

    with pytest.raises(SpawnFailed):
        start_capture(tmp_path / "raw.mp4", runner=runner)


def test_backpressure_gate_holds_a_single_waiter() -> None:
    gate = BackpressureGate()
    subscriptions: list[Callable[[], None]] = []

    assert gate.block(subscriptions.append) is True
    assert gate.block(subscriptions.append) is False
    assert gate.state is GateState.BLOCKED
    assert len(subscriptions) == 1

    subscriptions[0]()

    assert gate.is_open


def test_capture_through_encoder_subprocess(fake_runner: RunnerFactory, tmp_path: Path) -> None:
    output = tmp_path / "raw.mp4"
    on_error = Mock()
    session = start_capture(output, runner=fake_runner(), on_error=on_error)

    frames = [f"png-frame-{index};".encode() for index in range(20)]
    for frame in frames:
        session.write_frame(frame)

    assert session.end().result(timeout=10) is None
    assert session.state is SessionState.ENDED
    assert session.skipped_frame_count == 0
    assert output.read_bytes() == b"encoded:" + b"".join(frames)
    on_error.assert_not_called()


def test_empty_capture_through_encoder_subprocess_resolves(
    fake_runner: RunnerFactory, tmp_path: Path
) -> None:
    on_error = Mock()
    config = CaptureConfig(suppression=SuppressionPolicy.END_OF_INPUT)
    session = start_capture(
        tmp_path / "raw.mp4", runner=fake_runner(), config=config, on_error=on_error
    )

    assert session.end().result(timeout=10) is None
    on_error.assert_not_called()


def test_start_capture_raises_for_missing_encoder_with_default_config(tmp_path: Path) -> None:
    runner = EncoderRunner(EncoderConfig(ffmpeg_path=str(tmp_path / "no-such-ffmpeg")))
    on_error = Mock()

    with pytest.raises(SpawnFailed):
        start_capture(tmp_path / "raw.mp4", runner=runner, on_error=on_error)

    assert CaptureConfig().niceness is not None
    assert not (tmp_path / "raw.mp4").exists()
    on_error.assert_not_called()


def test_concurrent_writes_never_reach_encoder_after_end(
    runner: FakeRunner, tmp_path: Path
) -> None:
    session = _start(runner, tmp_path)
    start = threading.Barrier(5)
    stop = threading.Event()

    def produce(writer: int) -> None:
        start.wait()
        count = 0
        while not stop.is_set():
            session.write_frame(f"{writer}-{count}".encode())
            count += 1

    writers = [threading.Thread(target=produce, args=(index,)) for index in range(4)]
    for writer in writers:
        writer.start()
    start.wait()
    future = session.end()
    stop.set()
    for writer in writers:
        writer.join(5)

    assert runner.sink.end_calls == 1
    assert runner.sink.calls.count("end") == 1
    assert "write" not in runner.sink.calls[runner.sink.calls.index("end") + 1 :]
    assert session.frames_written == len(runner.sink.writes)
    assert session.state is SessionState.ENDING
    assert not future.done()
