"""Shared fixtures: temp calls folder, fake sounddevice, canned configs."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

import capture_core
from config import CaptureConfig, TranscriptionConfig


@pytest.fixture
def calls_dir(tmp_path: Path) -> Path:
    folder = tmp_path / "calls"
    folder.mkdir()
    return folder


@pytest.fixture
def capture_cfg(calls_dir: Path) -> CaptureConfig:
    return CaptureConfig(calls_dir=calls_dir, sample_rate=44100, blocksize=4096, gain=2.0, log_every_buffers=0)


@pytest.fixture
def stt_cfg(calls_dir: Path) -> TranscriptionConfig:
    return TranscriptionConfig(calls_dir=calls_dir, endpoint="https://stt.test/v1/audio/transcriptions")


@pytest.fixture
def fake_sd(monkeypatch) -> MagicMock:  # noqa: ANN001
    """Replace the sounddevice module used by capture_core."""
    sd = MagicMock()
    sd.query_devices.return_value = []
    sd.InputStream.return_value = MagicMock()
    monkeypatch.setattr(capture_core, "sd", sd)
    return sd


@pytest.fixture
def audio_file(tmp_path: Path):
    def _make(name: str = "call.wav", payload: bytes = b"RIFF....WAVEfmt ") -> Path:
        path = tmp_path / name
        path.write_bytes(payload)
        return path

    return _make
