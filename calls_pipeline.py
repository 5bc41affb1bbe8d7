"""Recording -> transcription -> transcript file."""

from __future__ import annotations

import concurrent.futures
import logging
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from capture_core import ErrorCallback, LevelCallback, RecordingSessionManager, StateCallback
from config import CaptureConfig, TranscriptionConfig
from transcription_core import (
    FailureKind,
    FlagCallback,
    TranscriptionClient,
    TranscriptionResult,
    TranscriptionRunner,
)

PIPE_LOG = logging.getLogger("calls_app")

TRANSCRIPTS_DIRNAME = "calls_texts"

TranscriptCallback = Callable[[str, Path], None]
FailureCallback = Callable[[TranscriptionResult], None]


def save_transcript(text: str, calls_dir: Path, when: Optional[datetime] = None) -> Path:
    """Write ``calls_texts/call_<timestamp>.txt`` as UTF-8 with a BOM."""
    folder = Path(calls_dir) / TRANSCRIPTS_DIRNAME
    folder.mkdir(parents=True, exist_ok=True)
    stamp = (when or datetime.now()).strftime("%Y-%m-%d_%H-%M-%S")
    path = folder / f"call_{stamp}.txt"
    path.write_text(text, encoding="utf-8-sig")
    return path


class CallsPipeline:
    def __init__(
        self,
        manager: RecordingSessionManager,
        runner: TranscriptionRunner,
        calls_dir: Path,
        *,
        on_transcript: Optional[TranscriptCallback] = None,
        on_transcription_error: Optional[FailureCallback] = None,
    ):
        self.manager = manager
        self.runner = runner
        self.calls_dir = Path(calls_dir)
        self._on_transcript = on_transcript
        self._on_transcription_error = on_transcription_error

    @classmethod
    def from_env(
        cls,
        api_key: str,
        *,
        capture_cfg: Optional[CaptureConfig] = None,
        stt_cfg: Optional[TranscriptionConfig] = None,
        on_level: Optional[LevelCallback] = None,
        on_state_change: Optional[StateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_transcribing: Optional[FlagCallback] = None,
        on_transcript: Optional[TranscriptCallback] = None,
        on_transcription_error: Optional[FailureCallback] = None,
    ) -> "CallsPipeline":
        capture_cfg = capture_cfg or CaptureConfig.from_env()
        stt_cfg = stt_cfg or TranscriptionConfig.from_env()
        manager = RecordingSessionManager(
            capture_cfg,
            on_level=on_level,
            on_state_change=on_state_change,
            on_error=on_error,
        )
        runner = TranscriptionRunner(TranscriptionClient(api_key, stt_cfg), on_transcribing=on_transcribing)
        return cls(
            manager,
            runner,
            stt_cfg.calls_dir,
            on_transcript=on_transcript,
            on_transcription_error=on_transcription_error,
        )

    def start_recording(self) -> Optional[Path]:
        # A session still running is finalized and queued like a normal stop.
        if self.manager.is_recording:
            PIPE_LOG.info("Stopping the active recording before starting a new one")
            self.stop_recording()
        return self.manager.start()

    def stop_recording(self) -> Optional["concurrent.futures.Future[TranscriptionResult]"]:
        """Finalize the recording and queue it; returns without waiting for the upload."""
        path = self.manager.stop()
        if path is None:
            return None
        PIPE_LOG.info("Starting transcription of %s", path)
        return self.transcribe_file(path)

    def transcribe_file(self, path: Path) -> "concurrent.futures.Future[TranscriptionResult]":
        return self.runner.submit(Path(path), on_result=self._handle_result)

    def close(self) -> None:
        self.manager.close()
        self.runner.close()

    # Runs on the transcription loop thread.
    def _handle_result(self, result: TranscriptionResult) -> TranscriptionResult:
        if result.ok:
            try:
                transcript = save_transcript(result.text, self.calls_dir)
            except OSError as exc:
                PIPE_LOG.error("Could not save transcript: %s", exc)
                result = replace(result, error=f"Could not save transcript: {exc}", kind=FailureKind.SAVE)
            else:
                PIPE_LOG.info("Transcript saved to %s", transcript)
                result = replace(result, transcript_path=transcript)
                if self._on_transcript is not None:
                    try:
                        self._on_transcript(result.text, transcript)
                    except Exception:  # noqa: BLE001
                        PIPE_LOG.exception("Transcript observer failed")
                return result

        PIPE_LOG.error("Transcription failed: %s (audio kept at %s)", result.error, result.source_path)
        if self._on_transcription_error is not None:
            try:
                self._on_transcription_error(result)
            except Exception:  # noqa: BLE001
                PIPE_LOG.exception("Transcription error observer failed")
        return result
