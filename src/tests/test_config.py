from pathlib import Path

import pytest

from video_capture.config import (
    DEFAULT_HIGH_WATER_MARK,
    ENV_FFMPEG_PATH,
    ENV_HIGH_WATER_MARK,
    ENV_PROBE_TIMEOUT,
    ENV_SUPPRESSION,
    CaptureConfig,
    CompressionConfig,
    Config,
    ConfigurationError,
    EncoderConfig,
    LoggingConfig,
    SuppressionPolicy,
    load_config,
)


def test_load_config_defaults() -> None:
    config = load_config(environ={})

    assert config.encoder.ffmpeg_path == "ffmpeg"
    assert config.capture.high_water_mark == DEFAULT_HIGH_WATER_MARK
    assert config.capture.suppression is SuppressionPolicy.ANY_ERROR
    assert config.capture.preset == "ultrafast"
    assert config.compression.preset == "fast"
    assert config.compression.probe_timeout == pytest.approx(10.0)


def test_load_config_reads_environment() -> None:
    config = load_config(
        environ={
            ENV_FFMPEG_PATH: "/opt/ffmpeg/bin/ffmpeg",
            ENV_HIGH_WATER_MARK: "4096",
            ENV_PROBE_TIMEOUT: "2.5",
            ENV_SUPPRESSION: "END_OF_INPUT",
        },
        logging_config=LoggingConfig(level="debug"),
    )

    assert config.encoder.ffmpeg_path == "/opt/ffmpeg/bin/ffmpeg"
    assert config.capture.high_water_mark == 4096
    assert config.compression.probe_timeout == pytest.approx(2.5)
    assert config.capture.suppression is SuppressionPolicy.END_OF_INPUT
    assert config.logging.level == "debug"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        (ENV_HIGH_WATER_MARK, "lots"),
        (ENV_HIGH_WATER_MARK, "0"),
        (ENV_PROBE_TIMEOUT, "soon"),
        (ENV_PROBE_TIMEOUT, "-1"),
        (ENV_SUPPRESSION, "never"),
    ],
)
def test_load_config_rejects_invalid_values(name: str, value: str) -> None:
    with pytest.raises(ConfigurationError):
        load_config(environ={name: value})


def test_load_config_reads_dotenv_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    dotenv_file = tmp_path / ".env"
    dotenv_file.write_text(f"{ENV_FFMPEG_PATH}=/usr/local/bin/ffmpeg\n", encoding="utf-8")
    monkeypatch.setenv(ENV_FFMPEG_PATH, "placeholder")
    monkeypatch.delenv(ENV_FFMPEG_PATH)

    config = load_config(dotenv_path=dotenv_file)

    assert config.encoder.ffmpeg_path == "/usr/local/bin/ffmpeg"


def test_config_with_ffmpeg_path_overrides_encoder_only() -> None:
    config = Config(capture=CaptureConfig(high_water_mark=1024))

    updated = config.with_ffmpeg_path("/bin/ffmpeg")

    assert updated.encoder.ffmpeg_path == "/bin/ffmpeg"
    assert updated.capture.high_water_mark == 1024
    assert config.with_ffmpeg_path(None) is config


def test_config_validation() -> None:
    with pytest.raises(ConfigurationError):
        EncoderConfig(ffmpeg_path="")
    with pytest.raises(ConfigurationError):
        CaptureConfig(high_water_mark=0)
    with pytest.raises(ConfigurationError):
        CompressionConfig(probe_timeout=0)
