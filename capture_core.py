from __future__ import annotations

import logging
import queue
import threading
import time
import wave
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

import numpy as np

try:
    import sounddevice as sd
except OSError:  # pragma: no cover - PortAudio shared library missing
    sd = None  # type: ignore[assignment]

from config import CaptureConfig


# ---------------------------------------------------------------------------
# Shared audio constants

CAPTURE_LOG = logging.getLogger("calls_capture")

SAMPLE_WIDTH = 2  # 16-bit PCM
WAV_HEADER_BYTES = 44

# Level meter shaping: RMS is read over a 10 dB window below full scale,
# peaks are boosted 5x so quiet speech still moves the meter.
LEVEL_DB_WINDOW = 10.0
LEVEL_PEAK_SCALE = 5.0
SILENCE_DBFS = -120.0

LevelCallback = Callable[[float], None]
StateCallback = Callable[["SessionState", "SessionState"], None]
ErrorCallback = Callable[[str], None]


class CaptureError(RuntimeError):
    """Raised when the capture path cannot be brought up."""


class EngineInitError(CaptureError):
    """The input stream or output file could not be created."""


# ---------------------------------------------------------------------------
# Device helpers


def list_input_devices() -> List[Dict[str, object]]:
    devices: List[Dict[str, object]] = []
    for i, dev in enumerate(sd.query_devices()):
        if dev["max_input_channels"] > 0:
            devices.append({"index": i, "name": dev["name"], "channels": dev["max_input_channels"]})
    return devices


def list_output_devices() -> List[Dict[str, object]]:
    devices: List[Dict[str, object]] = []
    for i, dev in enumerate(sd.query_devices()):
        if dev["max_output_channels"] > 0:
            devices.append({"index": i, "name": dev["name"], "channels": dev["max_output_channels"]})
    return devices


def select_capture_device() -> Optional[int]:
    """Return the index of the first device exposing output channels, or None.

    Output capability is used as a cheap filter for real hardware as opposed
    to input-only virtual endpoints. A failing probe is not fatal: callers
    fall back to the system default input.
    """
    if sd is None:
        CAPTURE_LOG.warning("sounddevice unavailable; using system default device")
        return None
    try:
        devices = list_output_devices()
    except Exception as exc:  # noqa: BLE001 - PortAudio raises assorted errors
        CAPTURE_LOG.warning("Device probe failed, using system default: %s", exc)
        return None
    if not devices:
        CAPTURE_LOG.info("No output-capable device found; using system default")
        return None
    chosen = devices[0]
    CAPTURE_LOG.info("Selected audio device #%s %s", chosen["index"], chosen["name"])
    return int(chosen["index"])


def _device_has_input(device_idx: int) -> bool:
    try:
        dev = sd.query_devices(device_idx)
    except Exception as exc:  # noqa: BLE001
        CAPTURE_LOG.debug("Device #%s query failed: %s", device_idx, exc)
        return False
    return int(dev["max_input_channels"]) > 0


# ---------------------------------------------------------------------------
# Buffer math


def _clamp01(value: float) -> float:
    if not np.isfinite(value):
        return 0.0
    return float(min(1.0, max(0.0, value)))


def mono_samples(indata) -> np.ndarray:
    """First channel of a callback block as float32."""
    samples = np.asarray(indata, dtype=np.float32)
    if samples.ndim > 1:
        samples = samples[:, 0]
    return samples


def compute_level(samples: np.ndarray) -> float:
    """Blend RMS loudness and peak amplitude into a 0..1 meter reading.

    The RMS part maps dBFS onto ``[-10 dB, 0 dB] -> [0, 1]``; the peak part is
    ``5 * peak`` clamped to 1. The reading is the mean of both. An empty block
    counts as silence.
    """
    data = np.asarray(samples, dtype=np.float64).ravel()
    if data.size == 0:
        return 0.0
    magnitudes = np.abs(data)
    rms = float(np.sqrt(np.mean(np.square(magnitudes))))
    peak = float(np.max(magnitudes))
    if rms > 0.0 and np.isfinite(rms):
        db = 20.0 * float(np.log10(rms))
    else:
        db = SILENCE_DBFS
    rms_part = _clamp01((db + LEVEL_DB_WINDOW) / LEVEL_DB_WINDOW)
    peak_part = _clamp01(peak * LEVEL_PEAK_SCALE)
    return (rms_part + peak_part) / 2.0


def amplify_to_pcm16(samples: np.ndarray, gain: float) -> np.ndarray:
    boosted = np.asarray(samples, dtype=np.float32) * np.float32(gain)
    return np.clip(boosted * 32768.0, -32768, 32767).astype(np.int16)


# ---------------------------------------------------------------------------
# Output file


class WaveWriter:
    """Incremental mono PCM16 WAV writer; the header is finalized on close."""

    def __init__(self, path: Path, sample_rate: int, channels: int = 1):
        self.path = Path(path)
        self.sample_rate = sample_rate
        self.channels = channels
        self.frames_written = 0
        self._lock = threading.Lock()
        wf = wave.open(str(self.path), "wb")
        try:
            wf.setnchannels(channels)
            wf.setsampwidth(SAMPLE_WIDTH)
            wf.setframerate(sample_rate)
        except Exception:
            wf.close()
            raise
        self._wf: Optional[wave.Wave_write] = wf

    @property
    def closed(self) -> bool:
        return self._wf is None

    def write(self, pcm16: np.ndarray) -> None:
        with self._lock:
            if self._wf is None:
                raise ValueError(f"writer for {self.path} is closed")
            self._wf.writeframes(pcm16.tobytes())
            self.frames_written += int(pcm16.shape[0])

    def close(self) -> None:
        with self._lock:
            wf, self._wf = self._wf, None
        if wf is not None:
            wf.close()


# ---------------------------------------------------------------------------
# Level delivery


class LevelPublisher:
    """Hands level readings to one observer from a single dispatch thread.

    ``publish`` never blocks, so it is safe inside the audio callback; the
    observer sees readings one at a time and in arrival order.
    """

    def __init__(self, on_level: Optional[LevelCallback] = None, maxsize: int = 256):
        self._on_level = on_level
        self._queue: "queue.Queue[Optional[float]]" = queue.Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        self.dropped = 0
        if on_level is not None:
            self._thread = threading.Thread(target=self._dispatch, name="level-dispatch", daemon=True)
            self._thread.start()

    def publish(self, level: float) -> None:
        if self._thread is None or self._closed:
            return
        try:
            self._queue.put_nowait(level)
        except queue.Full:
            self.dropped += 1

    def wait_idle(self) -> None:
        """Block until every queued reading has reached the observer."""
        self._queue.join()

    def close(self, timeout: float = 1.0) -> None:
        if self._closed:
            return
        self._closed = True
        if self._thread is None:
            return
        try:
            self._queue.put(None, timeout=timeout)
        except queue.Full:
            CAPTURE_LOG.warning("Level queue saturated during shutdown")
        self._thread.join(timeout=timeout)
        self._thread = None

    def _dispatch(self) -> None:
        while True:
            level = self._queue.get()
            try:
                if level is None:
                    return
                self._on_level(level)
            except Exception:  # noqa: BLE001 - observer bugs must not kill delivery
                CAPTURE_LOG.exception("Level observer failed")
            finally:
                self._queue.task_done()


# ---------------------------------------------------------------------------
# Recording session


class SessionState(str, Enum):
    IDLE = "IDLE"
    RECORDING = "RECORDING"
    STOPPING = "STOPPING"


@dataclass
class RecordingSession:
    """Mutable state of the one capture session the manager owns."""

    state: SessionState = SessionState.IDLE
    output_path: Optional[Path] = None
    started_at: Optional[float] = None
    frame_count: int = 0
    buffer_count: int = 0
    dropped_buffers: int = 0
    current_level: float = 0.0

    @property
    def is_active(self) -> bool:
        return self.state is not SessionState.IDLE

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        return max(0.0, time.time() - self.started_at)

    def clear(self) -> None:
        self.output_path = None
        self.started_at = None
        self.frame_count = 0
        self.buffer_count = 0
        self.dropped_buffers = 0
        self.current_level = 0.0


class RecordingSessionManager:
    """Owns the input stream, the WAV file and the session state.

    At most one session runs at a time: ``start`` tears down whatever is
    active before opening a new file. ``cleanup`` may be called from any
    state, any number of times. The sounddevice callback writes amplified
    frames and publishes the level of the raw signal; it never blocks.
    """

    def __init__(
        self,
        cfg: Optional[CaptureConfig] = None,
        *,
        on_level: Optional[LevelCallback] = None,
        on_state_change: Optional[StateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg or CaptureConfig.from_env()
        self.session = RecordingSession()
        self._on_state_change = on_state_change
        self._on_error = on_error
        self._clock = clock
        self._lock = threading.RLock()
        self._capturing = threading.Event()
        self._stream = None
        self._writer: Optional[WaveWriter] = None
        self._levels = LevelPublisher(on_level)
        self.device: Optional[int] = None
        self.select_capture_device()

    # ---- public API --------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def is_recording(self) -> bool:
        return self.session.state is SessionState.RECORDING

    @property
    def current_level(self) -> float:
        return self.session.current_level

    def select_capture_device(self) -> Optional[int]:
        self.device = select_capture_device()
        return self.device

    def start(self) -> Optional[Path]:
        """Begin a new capture session and return the WAV path, or None on failure."""
        with self._lock:
            if self.session.is_active:
                CAPTURE_LOG.info("Session already active; releasing it before a new start")
            self.cleanup()

            try:
                path = self._next_output_path()
                self._writer = WaveWriter(path, self.cfg.sample_rate, self.cfg.channels)
            except (OSError, wave.Error) as exc:
                self._abort_start(f"Could not create recording file: {exc}")
                return None

            self.session.output_path = path
            self.session.started_at = self._clock()
            self._capturing.set()
            try:
                self._stream = self._open_stream()
                self._stream.start()
            except Exception as exc:  # noqa: BLE001 - PortAudio raises assorted errors
                self._abort_start(f"Audio engine failed to start: {exc}")
                return None

            self._set_state(SessionState.RECORDING)
            CAPTURE_LOG.info(
                "Recording to %s (%d Hz, blocksize %d, gain %.1f)",
                path,
                self.cfg.sample_rate,
                self.cfg.blocksize,
                self.cfg.gain,
            )
            return path

    def stop(self) -> Optional[Path]:
        """Finalize the active session and return the WAV path for transcription."""
        with self._lock:
            if self.session.state is not SessionState.RECORDING:
                CAPTURE_LOG.warning("No active recording to stop")
                return None

            self._set_state(SessionState.STOPPING)
            self._capturing.clear()
            self._close_stream()
            self._close_writer()

            path = self.session.output_path
            self._log_finalized(path)
            if self.session.dropped_buffers:
                CAPTURE_LOG.warning("%d buffers were dropped during recording", self.session.dropped_buffers)

            self._reset_level()
            self._set_state(SessionState.IDLE)
            self.session.clear()
            return path

    def cleanup(self) -> None:
        """Release stream and file from any state. Idempotent."""
        with self._lock:
            self._capturing.clear()
            self._close_stream()
            self._close_writer()
            if self.session.is_active:
                CAPTURE_LOG.info("Released active session %s", self.session.output_path)
            self._reset_level()
            self._set_state(SessionState.IDLE)
            self.session.clear()

    def close(self) -> None:
        self.cleanup()
        self._levels.close()

    def wait_for_levels(self) -> None:
        self._levels.wait_idle()

    # ---- capture callback --------------------------------------------

    def _on_audio(self, indata, frames, _time_info, status) -> None:
        if status:
            CAPTURE_LOG.debug("capture status: %s", status)
        if not self._capturing.is_set():
            return

        session = self.session
        samples = mono_samples(indata)
        session.buffer_count += 1

        writer = self._writer
        if writer is not None:
            try:
                writer.write(amplify_to_pcm16(samples, self.cfg.gain))
                session.frame_count += int(samples.shape[0])
            except Exception as exc:  # noqa: BLE001 - one bad buffer must not end the session
                session.dropped_buffers += 1
                CAPTURE_LOG.error("Buffer write failed: %s", exc)

        every = self.cfg.log_every_buffers
        if every > 0 and session.buffer_count % every == 0:
            CAPTURE_LOG.info("Buffers written: %d", session.buffer_count)

        level = compute_level(samples)
        session.current_level = level
        self._levels.publish(level)

    # ---- helpers -----------------------------------------------------

    def _open_stream(self):
        if sd is None:
            raise EngineInitError("sounddevice is not available (PortAudio missing)")
        device = self.device if self.device is not None and _device_has_input(self.device) else None
        return sd.InputStream(
            samplerate=self.cfg.sample_rate,
            channels=self.cfg.channels,
            dtype="float32",
            blocksize=self.cfg.blocksize,
            device=device,
            callback=self._on_audio,
        )

    def _next_output_path(self) -> Path:
        folder = Path(self.cfg.calls_dir)
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / f"recording_{int(self._clock())}.wav"
        if path.exists():
            path.unlink()
            CAPTURE_LOG.info("Removed stale file %s", path)
        return path

    def _abort_start(self, message: str) -> None:
        CAPTURE_LOG.error(message)
        writer = self._writer
        self.cleanup()
        if writer is not None and writer.frames_written == 0:
            writer.path.unlink(missing_ok=True)
        if self._on_error is not None:
            try:
                self._on_error(message)
            except Exception:  # noqa: BLE001
                CAPTURE_LOG.exception("Error observer failed")

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        except Exception as exc:  # noqa: BLE001
            CAPTURE_LOG.warning("Stream stop failed: %s", exc)
        try:
            stream.close()
        except Exception as exc:  # noqa: BLE001
            CAPTURE_LOG.warning("Stream close failed: %s", exc)

    def _close_writer(self) -> None:
        writer, self._writer = self._writer, None
        if writer is None:
            return
        try:
            writer.close()
        except (OSError, wave.Error) as exc:
            CAPTURE_LOG.error("Closing %s failed: %s", writer.path, exc)

    def _log_finalized(self, path: Optional[Path]) -> None:
        if path is None:
            return
        try:
            size = path.stat().st_size
        except OSError:
            CAPTURE_LOG.error("Recording file missing after stop: %s", path)
            return
        if size <= WAV_HEADER_BYTES:
            CAPTURE_LOG.warning("Recording file is empty: %s", path)
        else:
            CAPTURE_LOG.info("Recording saved: %s (%d bytes, %d frames)", path, size, self.session.frame_count)

    def _reset_level(self) -> None:
        if self.session.current_level != 0.0:
            self.session.current_level = 0.0
            self._levels.publish(0.0)

    def _set_state(self, to_state: SessionState) -> None:
        from_state = self.session.state
        if from_state is to_state:
            return
        self.session.state = to_state
        if self._on_state_change is not None:
            try:
                self._on_state_change(from_state, to_state)
            except Exception:  # noqa: BLE001
                CAPTURE_LOG.exception("State observer failed")


__all__ = [
    "SAMPLE_WIDTH",
    "CaptureError",
    "EngineInitError",
    "list_input_devices",
    "list_output_devices",
    "select_capture_device",
    "mono_samples",
    "compute_level",
    "amplify_to_pcm16",
    "WaveWriter",
    "LevelPublisher",
    "SessionState",
    "RecordingSession",
    "RecordingSessionManager",
]
