from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

__all__ = ["CaptureConfig", "TranscriptionConfig", "load_capture_config", "load_transcription_config"]


def _env_int(name: str, default: int) -> int:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return val.strip().lower() not in {"0", "false", "no", "off"}


def _env_path(name: str, default: Path) -> Path:
    val = os.environ.get(name)
    if not val or not val.strip():
        return default
    return Path(val.strip()).expanduser()


DEFAULT_CALLS_DIR = Path.home() / "Desktop" / "calls"
DEFAULT_MODEL = "whisper-1"
DEFAULT_ENDPOINT = "https://api.openai.com/v1/audio/transcriptions"
DEFAULT_LANGUAGE = "ru"
DEFAULT_RESPONSE_FORMAT = "json"
MAX_UPLOAD_BYTES = 25 * 1024 * 1024


@dataclass
class CaptureConfig:
    """Microphone capture and WAV output settings."""

    calls_dir: Path = field(default_factory=lambda: DEFAULT_CALLS_DIR)

    # Output container: mono 16-bit PCM
    sample_rate: int = 44100
    channels: int = 1
    blocksize: int = 4096

    # Applied to stored audio only; metering reads the raw signal
    gain: float = 2.0

    # Log progress every N buffers
    log_every_buffers: int = 100

    @classmethod
    def from_env(cls) -> "CaptureConfig":
        d = cls()
        return cls(
            calls_dir=_env_path("CALLS_DIR", d.calls_dir),
            sample_rate=_env_int("CALLS_SAMPLE_RATE", d.sample_rate),
            channels=1,
            blocksize=_env_int("CALLS_BLOCKSIZE", d.blocksize),
            gain=_env_float("CALLS_GAIN", d.gain),
            log_every_buffers=_env_int("CALLS_LOG_EVERY_BUFFERS", d.log_every_buffers),
        )


@dataclass
class TranscriptionConfig:
    """HTTP transcription parameters."""

    model: str = DEFAULT_MODEL
    language: Optional[str] = DEFAULT_LANGUAGE
    response_format: str = DEFAULT_RESPONSE_FORMAT
    endpoint: str = DEFAULT_ENDPOINT

    max_upload_bytes: int = MAX_UPLOAD_BYTES
    max_attempts: int = 3
    backoff_step_s: float = 2.0

    # Large uploads can take minutes to process server side
    connect_timeout_s: float = 10.0
    request_timeout_s: float = 1200.0

    # Where call_<timestamp>.txt files go (a calls_texts folder is created under it)
    calls_dir: Path = field(default_factory=lambda: DEFAULT_CALLS_DIR)

    # Keep client errors (4xx) in the retry loop as well
    retry_client_errors: bool = True

    @classmethod
    def from_env(cls) -> "TranscriptionConfig":
        d = cls()
        language = os.environ.get("STT_LANGUAGE", d.language or "")
        return cls(
            model=os.environ.get("STT_MODEL", d.model),
            language=language.strip() or None,
            response_format=os.environ.get("STT_RESPONSE_FORMAT", d.response_format),
            endpoint=os.environ.get("STT_ENDPOINT", d.endpoint),
            max_upload_bytes=_env_int("STT_MAX_UPLOAD_BYTES", d.max_upload_bytes),
            max_attempts=max(1, _env_int("STT_MAX_ATTEMPTS", d.max_attempts)),
            backoff_step_s=_env_float("STT_BACKOFF_STEP_S", d.backoff_step_s),
            connect_timeout_s=_env_float("STT_CONNECT_TIMEOUT_S", d.connect_timeout_s),
            request_timeout_s=_env_float("STT_REQUEST_TIMEOUT_S", d.request_timeout_s),
            calls_dir=_env_path("CALLS_DIR", d.calls_dir),
            retry_client_errors=_env_bool("STT_RETRY_CLIENT_ERRORS", d.retry_client_errors),
        )


def load_capture_config() -> CaptureConfig:
    return CaptureConfig.from_env()


def load_transcription_config() -> TranscriptionConfig:
    return TranscriptionConfig.from_env()
