from __future__ import annotations
import os

# === Simple knobs (edit these if you dislike envs) ===
CALLS_DIR = os.environ.get("CALLS_DIR", os.path.join(os.path.expanduser("~"), "Desktop", "calls"))
STT_MODEL = os.environ.get("STT_MODEL", "whisper-1")
STT_LANGUAGE = os.environ.get("STT_LANGUAGE", "ru")
STT_RESPONSE_FORMAT = os.environ.get("STT_RESPONSE_FORMAT", "json")

# Capture shaping (hertz / samples / linear gain)
CAPTURE = {
    "SAMPLE_RATE": int(os.environ.get("CALLS_SAMPLE_RATE", "44100")),
    "BLOCKSIZE": int(os.environ.get("CALLS_BLOCKSIZE", "4096")),
    "GAIN": float(os.environ.get("CALLS_GAIN", "2.0")),
}

# Retry shaping (attempts / seconds)
RETRY = {
    "MAX_ATTEMPTS": int(os.environ.get("STT_MAX_ATTEMPTS", "3")),
    "BACKOFF_STEP_S": float(os.environ.get("STT_BACKOFF_STEP_S", "2.0")),
    "REQUEST_TIMEOUT_S": float(os.environ.get("STT_REQUEST_TIMEOUT_S", "1200")),
}

# Write env once so downstream .from_env() picks them up predictably.
os.environ.setdefault("CALLS_DIR", CALLS_DIR)
os.environ.setdefault("STT_MODEL", STT_MODEL)
os.environ.setdefault("STT_LANGUAGE", STT_LANGUAGE)
os.environ.setdefault("STT_RESPONSE_FORMAT", STT_RESPONSE_FORMAT)

os.environ.setdefault("CALLS_SAMPLE_RATE", str(CAPTURE["SAMPLE_RATE"]))
os.environ.setdefault("CALLS_BLOCKSIZE", str(CAPTURE["BLOCKSIZE"]))
os.environ.setdefault("CALLS_GAIN", str(CAPTURE["GAIN"]))

os.environ.setdefault("STT_MAX_ATTEMPTS", str(RETRY["MAX_ATTEMPTS"]))
os.environ.setdefault("STT_BACKOFF_STEP_S", str(RETRY["BACKOFF_STEP_S"]))
os.environ.setdefault("STT_REQUEST_TIMEOUT_S", str(RETRY["REQUEST_TIMEOUT_S"]))

# Re-export existing dataclasses and helpers so rest of code imports from `config`.
from call_parameters import (  # noqa: E402
    CaptureConfig,
    TranscriptionConfig,
    load_capture_config,
    load_transcription_config,
)
