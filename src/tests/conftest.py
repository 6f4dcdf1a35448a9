import json
import stat
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from video_capture.config import EncoderConfig
from video_capture.process_runner import EncoderRunner

FakeEncoderFactory = Callable[..., Path]

# Speaks enough of ffmpeg's stderr protocol for the pipeline: an input banner,
# the output section, carriage-return separated progress lines and an exit status.
_FAKE_ENCODER_SOURCE = """\
import json
import os
import sys
import time

settings = json.loads({settings!r})
args = sys.argv[1:]
source = args[args.index("-i") + 1]
output = args[-1]
err = sys.stderr

time.sleep(settings["header_delay"])

if source == "pipe:0":
    data = sys.stdin.buffer.read()
    if not data:
        err.write("pipe:0: End of file\\n")
        err.flush()
        sys.exit(1)
    err.write("Input #0, image2pipe, from 'pipe:0':\\n")
    err.write("  Duration: N/A, bitrate: N/A\\n")
    err.write("    Stream #0:0: Video: png, rgb24(pc), 4x4, 25 fps, 25 tbr\\n")
else:
    if not os.path.exists(source):
        err.write(source + ": No such file or directory\\n")
        sys.exit(1)
    with open(source, "rb") as handle:
        data = handle.read()
    err.write("Input #0, mov,mp4,m4a,3gp,3g2,mj2, from '" + source + "':\\n")
    err.write("  Duration: " + settings["duration"] + ", start: 0.000000, bitrate: 96 kb/s\\n")
    err.write(
        "    Stream #0:0(und): Video: h264 (High) (avc1 / 0x31637661), "
        "yuv420p, 640x480, 25 fps\\n"
    )
    err.write("    Stream #0:1(und): Audio: aac (LC) (mp4a / 0x6134706D), 44100 Hz, stereo\\n")

err.write("Stream mapping:\\n  Stream #0:0 -> #0:0 (h264 (native) -> h264 (libx264))\\n")
err.write("Output #0, mp4, to '" + output + "':\\n")
err.flush()

for index, mark in enumerate(settings["timemarks"], start=1):
    err.write(
        "frame=%5d fps= 50 q=28.0 size=%8dkB time=%s bitrate= 96.0kbits/s speed=2x\\r"
        % (index * 25, index * 64, mark)
    )
    err.flush()
err.write("\\n")

if output != "-":
    with open(output, "wb") as handle:
        handle.write(b"encoded:" + data)

if settings["fail"]:
    err.write("Conversion failed!\\n")
    sys.exit(1)
"""


@pytest.fixture
def fake_encoder(tmp_path: Path) -> FakeEncoderFactory:
    """Return a factory writing an executable stand-in for the encoder."""
    if sys.platform == "win32":
        pytest.skip("fake encoder relies on shebang scripts")

    def _factory(
        *,
        duration: str = "00:00:10.00",
        timemarks: Sequence[str] = (),
        fail: bool = False,
        header_delay: float = 0.0,
        name: str = "fake-ffmpeg",
    ) -> Path:
        settings = json.dumps(
            {
                "duration": duration,
                "timemarks": list(timemarks),
                "fail": fail,
                "header_delay": header_delay,
            }
        )
        script = tmp_path / name
        script.write_text(
            f"#!{sys.executable}\n" + _FAKE_ENCODER_SOURCE.format(settings=settings),
            encoding="utf-8",
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return _factory


@pytest.fixture
def fake_runner(fake_encoder: FakeEncoderFactory) -> Callable[..., EncoderRunner]:
    """Return a factory for runners bound to a freshly written fake encoder."""

    def _factory(**settings: object) -> EncoderRunner:
        return EncoderRunner(EncoderConfig(ffmpeg_path=str(fake_encoder(**settings))))

    return _factory
