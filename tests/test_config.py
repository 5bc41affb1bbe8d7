"""Environment-driven settings and API key lookup."""

from __future__ import annotations

from pathlib import Path

import pytest

from config import CaptureConfig, TranscriptionConfig
from transcription_core import CredentialMissingError, load_openai_api_key, require_openai_api_key


def test_capture_defaults() -> None:
    cfg = CaptureConfig()
    assert (cfg.sample_rate, cfg.channels, cfg.blocksize, cfg.gain) == (44100, 1, 4096, 2.0)
    assert cfg.calls_dir == Path.home() / "Desktop" / "calls"


def test_capture_from_env(monkeypatch, tmp_path: Path) -> None:  # noqa: ANN001
    monkeypatch.setenv("CALLS_DIR", str(tmp_path / "rec"))
    monkeypatch.setenv("CALLS_SAMPLE_RATE", "48000")
    monkeypatch.setenv("CALLS_GAIN", "1.5")
    monkeypatch.setenv("CALLS_BLOCKSIZE", "not-a-number")

    cfg = CaptureConfig.from_env()
    assert cfg.calls_dir == tmp_path / "rec"
    assert cfg.sample_rate == 48000
    assert cfg.gain == 1.5
    assert cfg.blocksize == 4096
    assert cfg.channels == 1


def test_transcription_from_env(monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("STT_MODEL", "whisper-large")
    monkeypatch.setenv("STT_LANGUAGE", "")
    monkeypatch.setenv("STT_MAX_ATTEMPTS", "0")
    monkeypatch.setenv("STT_BACKOFF_STEP_S", "0.25")
    monkeypatch.setenv("STT_RETRY_CLIENT_ERRORS", "off")

    cfg = TranscriptionConfig.from_env()
    assert cfg.model == "whisper-large"
    assert cfg.language is None
    assert cfg.max_attempts == 1
    assert cfg.backoff_step_s == 0.25
    assert cfg.retry_client_errors is False
    assert cfg.max_upload_bytes == 25 * 1024 * 1024


def test_transcription_defaults_match_service() -> None:
    cfg = TranscriptionConfig()
    assert cfg.model == "whisper-1"
    assert cfg.language == "ru"
    assert cfg.response_format == "json"
    assert cfg.request_timeout_s == 1200.0
    assert cfg.max_attempts == 3


# ---------------------------------------------------------------
# API key
# ---------------------------------------------------------------


def test_key_from_environment(monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("OPENAI_API_KEY", "  sk-env \n")
    assert load_openai_api_key() == "sk-env"


def test_key_from_file(monkeypatch, tmp_path: Path) -> None:  # noqa: ANN001
    key_file = tmp_path / "key.txt"
    key_file.write_text("sk-file\n", encoding="utf-8")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY_FILE", str(key_file))
    assert require_openai_api_key() == "sk-file"


def test_missing_key_raises(monkeypatch, tmp_path: Path) -> None:  # noqa: ANN001
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY_FILE", str(tmp_path / "absent.txt"))
    assert load_openai_api_key() is None
    with pytest.raises(CredentialMissingError):
        require_openai_api_key()


def test_blank_key_file_counts_as_missing(monkeypatch, tmp_path: Path) -> None:  # noqa: ANN001
    key_file = tmp_path / "key.txt"
    key_file.write_text("   \n", encoding="utf-8")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY_FILE", str(key_file))
    assert load_openai_api_key() is None
