"""Capture frame streams into video files and compress finished captures."""

from .capture import BackpressureGate, CaptureSession, GateState, start_capture
from .compress import Compressor, FileRelocationFailed, compress, copy_capture
from .config import (
    CaptureConfig,
    CompressionConfig,
    Config,
    ConfigurationError,
    EncoderConfig,
    SuppressionPolicy,
    load_config,
)
from .models import CodecData, ProgressSample, SessionState, parse_timemark
from .probe import CodecProber, ProbeError, ProbeFailed, ProbeTimeout, probe
from .process_runner import (
    EncoderError,
    EncoderListeners,
    EncoderProcess,
    EncoderRunner,
    EncoderRuntimeError,
    FrameSink,
    SpawnFailed,
)

__all__ = [
    "BackpressureGate",
    "CaptureConfig",
    "CaptureSession",
    "CodecData",
    "CodecProber",
    "CompressionConfig",
    "Compressor",
    "Config",
    "ConfigurationError",
    "EncoderConfig",
    "EncoderError",
    "EncoderListeners",
    "EncoderProcess",
    "EncoderRunner",
    "EncoderRuntimeError",
    "FileRelocationFailed",
    "FrameSink",
    "GateState",
    "ProbeError",
    "ProbeFailed",
    "ProbeTimeout",
    "ProgressSample",
    "SessionState",
    "SpawnFailed",
    "SuppressionPolicy",
    "compress",
    "copy_capture",
    "load_config",
    "parse_timemark",
    "probe",
    "start_capture",
]
