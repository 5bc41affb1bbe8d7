"""Tests for RecordingSessionManager."""

from __future__ import annotations

import itertools
import wave
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest

import capture_core
from capture_core import RecordingSessionManager, SessionState, select_capture_device


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------


def _block(value: float, frames: int = 4096) -> np.ndarray:
    return np.full((frames, 1), value, dtype=np.float32)


def _feed(manager: RecordingSessionManager, value: float, count: int = 1, frames: int = 4096) -> None:
    for _ in range(count):
        manager._on_audio(_block(value, frames), frames, None, None)


def _clock(*stamps: float):
    values = itertools.chain(stamps, itertools.repeat(stamps[-1]))
    return lambda: next(values)


def _read_wav(path: Path):
    with wave.open(str(path), "rb") as wf:
        params = (wf.getnchannels(), wf.getsampwidth(), wf.getframerate())
        data = np.frombuffer(wf.readframes(wf.getnframes()), dtype=np.int16)
    return params, data


DEVICES = [
    {"name": "Built-in Mic", "max_input_channels": 1, "max_output_channels": 0},
    {"name": "Speakers", "max_input_channels": 0, "max_output_channels": 2},
    {"name": "Headset", "max_input_channels": 1, "max_output_channels": 2},
]


def _query_devices(*args):
    if args:
        return DEVICES[args[0]]
    return DEVICES


# ---------------------------------------------------------------
# Device probe
# ---------------------------------------------------------------


def test_probe_picks_first_output_capable_device(fake_sd: MagicMock) -> None:
    fake_sd.query_devices.side_effect = _query_devices
    assert select_capture_device() == 1


def test_probe_without_output_devices_returns_none(fake_sd: MagicMock) -> None:
    fake_sd.query_devices.return_value = [DEVICES[0]]
    assert select_capture_device() is None


def test_probe_failure_falls_back_to_default(fake_sd: MagicMock) -> None:
    fake_sd.query_devices.side_effect = RuntimeError("PortAudio not initialized")
    assert select_capture_device() is None


def test_probe_without_sounddevice(monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setattr(capture_core, "sd", None)
    assert select_capture_device() is None


def test_output_only_device_captures_from_default_input(fake_sd: MagicMock, capture_cfg) -> None:  # noqa: ANN001
    fake_sd.query_devices.side_effect = _query_devices
    manager = RecordingSessionManager(capture_cfg)
    assert manager.device == 1

    manager.start()
    assert fake_sd.InputStream.call_args.kwargs["device"] is None
    manager.close()


def test_selected_device_with_input_is_used(fake_sd: MagicMock, capture_cfg) -> None:  # noqa: ANN001
    fake_sd.query_devices.side_effect = lambda *args: DEVICES[2] if args else [DEVICES[0], DEVICES[2]]
    manager = RecordingSessionManager(capture_cfg)
    manager.start()
    assert fake_sd.InputStream.call_args.kwargs["device"] == 1
    manager.close()


# ---------------------------------------------------------------
# Start / stop
# ---------------------------------------------------------------


def test_start_opens_stream_and_file(fake_sd: MagicMock, capture_cfg, calls_dir: Path) -> None:  # noqa: ANN001
    manager = RecordingSessionManager(capture_cfg, clock=_clock(1700000000.5))
    path = manager.start()

    assert path == calls_dir / "recording_1700000000.wav"
    assert manager.state is SessionState.RECORDING
    kwargs = fake_sd.InputStream.call_args.kwargs
    assert kwargs["samplerate"] == 44100
    assert kwargs["channels"] == 1
    assert kwargs["blocksize"] == 4096
    assert kwargs["dtype"] == "float32"
    fake_sd.InputStream.return_value.start.assert_called_once()
    manager.close()


def test_start_creates_missing_calls_folder(fake_sd: MagicMock, capture_cfg, tmp_path: Path) -> None:  # noqa: ANN001
    capture_cfg.calls_dir = tmp_path / "nested" / "calls"
    manager = RecordingSessionManager(capture_cfg)
    path = manager.start()
    assert path is not None and path.parent.is_dir()
    manager.close()


def test_stop_finalizes_and_returns_path(fake_sd: MagicMock, capture_cfg) -> None:  # noqa: ANN001
    states = []
    manager = RecordingSessionManager(capture_cfg, on_state_change=lambda a, b: states.append((a, b)))
    path = manager.start()
    _feed(manager, 0.1, count=3)

    assert manager.stop() == path
    stream = fake_sd.InputStream.return_value
    stream.stop.assert_called_once()
    stream.close.assert_called_once()
    assert manager.state is SessionState.IDLE
    assert manager.session.output_path is None
    assert manager.current_level == 0.0
    assert states == [
        (SessionState.IDLE, SessionState.RECORDING),
        (SessionState.RECORDING, SessionState.STOPPING),
        (SessionState.STOPPING, SessionState.IDLE),
    ]
    (channels, width, rate), data = _read_wav(path)
    assert (channels, width, rate) == (1, 2, 44100)
    assert data.size == 3 * 4096
    manager.close()


def test_stop_while_idle_is_noop(fake_sd: MagicMock, capture_cfg, calls_dir: Path) -> None:  # noqa: ANN001
    manager = RecordingSessionManager(capture_cfg)
    assert manager.stop() is None
    assert manager.state is SessionState.IDLE
    fake_sd.InputStream.assert_not_called()
    assert list(calls_dir.iterdir()) == []
    manager.close()


def test_start_while_recording_tears_down_previous_session(fake_sd: MagicMock, capture_cfg) -> None:  # noqa: ANN001
    first_stream, second_stream = MagicMock(), MagicMock()
    fake_sd.InputStream.side_effect = [first_stream, second_stream]
    manager = RecordingSessionManager(capture_cfg, clock=_clock(1000.0, 1000.0, 1001.0))

    first = manager.start()
    _feed(manager, 0.25, count=2)
    first_writer = manager._writer
    second = manager.start()

    assert first != second
    first_stream.stop.assert_called_once()
    first_stream.close.assert_called_once()
    assert first_writer.closed
    (_, _, _), data = _read_wav(first)
    assert data.size == 2 * 4096
    assert manager.state is SessionState.RECORDING
    assert manager.session.output_path == second
    assert manager.session.frame_count == 0
    manager.close()


def test_stale_file_at_target_path_is_replaced(fake_sd: MagicMock, capture_cfg, calls_dir: Path) -> None:  # noqa: ANN001
    stale = calls_dir / "recording_42.wav"
    stale.write_bytes(b"stale data that is not a wav file")
    manager = RecordingSessionManager(capture_cfg, clock=_clock(42.0))

    path = manager.start()
    _feed(manager, 0.25)
    manager.stop()

    assert path == stale
    (_, _, _), data = _read_wav(path)
    assert data.size == 4096
    manager.close()


def test_cleanup_is_idempotent(fake_sd: MagicMock, capture_cfg) -> None:  # noqa: ANN001
    manager = RecordingSessionManager(capture_cfg)
    manager.cleanup()
    manager.start()
    manager.cleanup()
    manager.cleanup()
    manager.close()
    manager.close()

    assert manager.state is SessionState.IDLE
    assert manager._stream is None
    assert manager._writer is None
    fake_sd.InputStream.return_value.close.assert_called_once()


def test_engine_failure_leaves_session_idle(fake_sd: MagicMock, capture_cfg, calls_dir: Path) -> None:  # noqa: ANN001
    fake_sd.InputStream.side_effect = RuntimeError("Error opening InputStream")
    errors = []
    manager = RecordingSessionManager(capture_cfg, on_error=errors.append)

    assert manager.start() is None
    assert manager.state is SessionState.IDLE
    assert manager._stream is None
    assert manager._writer is None
    assert len(errors) == 1 and "Error opening InputStream" in errors[0]
    assert list(calls_dir.iterdir()) == []
    manager.close()


def test_stream_start_failure_releases_stream(fake_sd: MagicMock, capture_cfg) -> None:  # noqa: ANN001
    stream = fake_sd.InputStream.return_value
    stream.start.side_effect = RuntimeError("device busy")
    manager = RecordingSessionManager(capture_cfg)

    assert manager.start() is None
    stream.close.assert_called_once()
    assert not manager.is_recording
    manager.close()


def test_start_without_sounddevice_aborts(monkeypatch, capture_cfg) -> None:  # noqa: ANN001
    monkeypatch.setattr(capture_core, "sd", None)
    errors = []
    manager = RecordingSessionManager(capture_cfg, on_error=errors.append)
    assert manager.start() is None
    assert errors and "sounddevice" in errors[0]
    manager.close()


# ---------------------------------------------------------------
# Capture callback
# ---------------------------------------------------------------


def test_round_trip_writes_amplified_frames(fake_sd: MagicMock, capture_cfg) -> None:  # noqa: ANN001
    manager = RecordingSessionManager(capture_cfg)
    path = manager.start()
    _feed(manager, 0.25, count=5)
    manager.stop()

    _, data = _read_wav(path)
    assert data.size == 5 * 4096
    assert np.all(data == 16384)
    manager.close()


def test_round_trip_clips_at_format_limits(fake_sd: MagicMock, capture_cfg) -> None:  # noqa: ANN001
    manager = RecordingSessionManager(capture_cfg)
    path = manager.start()
    _feed(manager, 0.75, count=2)
    _feed(manager, -0.75, count=1)
    manager.stop()

    _, data = _read_wav(path)
    assert np.all(data[: 2 * 4096] == 32767)
    assert np.all(data[2 * 4096 :] == -32768)
    manager.close()


def test_level_is_measured_before_gain(fake_sd: MagicMock, capture_cfg) -> None:  # noqa: ANN001
    levels = []
    manager = RecordingSessionManager(capture_cfg, on_level=levels.append)
    manager.start()
    _feed(manager, 0.1)
    manager.wait_for_levels()

    # with the 2x gain applied the peak part alone would already be 1.0
    assert manager.current_level == pytest.approx(0.25)
    assert levels == [pytest.approx(0.25)]
    manager.close()


def test_levels_follow_buffer_order_and_reset_on_stop(fake_sd: MagicMock, capture_cfg) -> None:  # noqa: ANN001
    levels = []
    manager = RecordingSessionManager(capture_cfg, on_level=levels.append)
    manager.start()
    for value in (0.0, 0.05, 0.1, 0.2):
        _feed(manager, value, frames=256)
    manager.stop()
    manager.wait_for_levels()

    assert levels == [0.0, pytest.approx(0.125), pytest.approx(0.25), pytest.approx(0.5), 0.0]
    manager.close()


def test_zero_length_buffer_is_silence(fake_sd: MagicMock, capture_cfg) -> None:  # noqa: ANN001
    manager = RecordingSessionManager(capture_cfg)
    manager.start()
    manager._on_audio(np.zeros((0, 1), dtype=np.float32), 0, None, None)
    assert manager.current_level == 0.0
    assert manager.session.frame_count == 0
    manager.close()


def test_write_failure_drops_buffer_but_keeps_recording(fake_sd: MagicMock, capture_cfg) -> None:  # noqa: ANN001
    manager = RecordingSessionManager(capture_cfg)
    manager.start()
    real_write = manager._writer.write
    calls = {"n": 0}

    def flaky_write(pcm):  # noqa: ANN001
        calls["n"] += 1
        if calls["n"] == 2:
            raise OSError("disk full")
        real_write(pcm)

    manager._writer.write = flaky_write
    _feed(manager, 0.25, count=3)

    assert manager.is_recording
    assert manager.session.dropped_buffers == 1
    assert manager.session.buffer_count == 3
    assert manager.session.frame_count == 2 * 4096
    path = manager.stop()
    _, data = _read_wav(path)
    assert data.size == 2 * 4096
    manager.close()


def test_callback_after_stop_is_ignored(fake_sd: MagicMock, capture_cfg) -> None:  # noqa: ANN001
    manager = RecordingSessionManager(capture_cfg)
    manager.start()
    manager.stop()
    _feed(manager, 0.5)
    assert manager.session.buffer_count == 0
    assert manager.current_level == 0.0
    manager.close()
