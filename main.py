#!/usr/bin/env python3
"""Calls Buddy: record calls and save their transcripts, with GUI and CLI entrypoints."""

from __future__ import annotations

import argparse
import concurrent.futures
import logging
import queue
import sys
import time
import tkinter as tk
from pathlib import Path
from tkinter import filedialog, ttk
from tkinter.scrolledtext import ScrolledText
from typing import Callable, List, Optional, Sequence

import capture_core
from calls_pipeline import CallsPipeline
from capture_core import SessionState, list_input_devices, list_output_devices, select_capture_device
from transcription_core import (
    MIME_TYPES,
    CredentialMissingError,
    TranscriptionResult,
    require_openai_api_key,
)

APP_LOGGERS = ("calls_capture", "calls_stt", "calls_app")


def _configure_logging(quiet: bool = False) -> None:
    logging.basicConfig(
        level=logging.WARNING if quiet else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# GUI


class TkLogHandler(logging.Handler):
    def __init__(self, callback: Callable[[str], None]):
        super().__init__()
        self.callback = callback

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            self.callback(msg)
        except Exception:
            self.handleError(record)


class App(tk.Tk):
    def __init__(self, api_key: str):
        super().__init__()
        self.title("Calls Buddy")
        self.geometry("360x460")
        self.log_queue: "queue.Queue[str]" = queue.Queue(maxsize=500)
        self._log_handlers: List[logging.Handler] = []
        self._closing = False

        self.status = tk.StringVar(value="Ready")
        self.level = tk.DoubleVar(value=0.0)
        self.result_var = tk.StringVar(value="")

        # Pipeline callbacks arrive on worker threads; each hops to Tk via after().
        self.pipeline = CallsPipeline.from_env(
            api_key,
            on_level=self._on_level,
            on_state_change=self._on_state_change,
            on_error=self._on_capture_error,
            on_transcribing=self._on_transcribing,
            on_transcript=self._on_transcript,
            on_transcription_error=self._on_transcription_error,
        )

        body = ttk.Frame(self)
        body.pack(fill=tk.BOTH, expand=True, padx=8, pady=6)
        self._build_controls(body)
        self._build_log(body)
        self._setup_logging_bridge()
        self.after(200, self._drain_logs)
        self.protocol("WM_DELETE_WINDOW", self.destroy)

    def _build_controls(self, parent):
        btn_frame = ttk.Frame(parent)
        btn_frame.pack(fill=tk.X)

        self.record_btn = ttk.Button(btn_frame, text="Record", command=self.toggle_recording)
        self.record_btn.pack(side=tk.LEFT, fill=tk.X, expand=True, padx=(0, 4))
        load_btn = ttk.Button(btn_frame, text="Load audio…", command=self.load_audio_file)
        load_btn.pack(side=tk.LEFT, fill=tk.X, expand=True)

        meter = ttk.Progressbar(parent, variable=self.level, maximum=1.0, mode="determinate")
        meter.pack(fill=tk.X, pady=(8, 0))

        self.progress = ttk.Progressbar(parent, mode="indeterminate")
        self.progress.pack(fill=tk.X, pady=(6, 0))

        ttk.Label(parent, textvariable=self.status).pack(anchor="w", pady=(6, 0))
        ttk.Label(parent, textvariable=self.result_var).pack(anchor="w")
        ttk.Label(parent, text=f"📁 {self.pipeline.calls_dir}", foreground="gray").pack(anchor="w", pady=(4, 0))

    def _build_log(self, parent):
        log_frame = ttk.Frame(parent)
        log_frame.pack(fill=tk.BOTH, expand=True, pady=(8, 0))
        ttk.Label(log_frame, text="Logs").pack(anchor="w")
        self.log_text = ScrolledText(log_frame, wrap="word", height=10)
        self.log_text.pack(fill=tk.BOTH, expand=True)

    # ---- actions -----------------------------------------------------

    def toggle_recording(self):
        if self.pipeline.manager.is_recording:
            self.pipeline.stop_recording()
            return
        self.result_var.set("")
        path = self.pipeline.start_recording()
        if path is None:
            self.status.set("Could not start recording")

    def load_audio_file(self):
        patterns = " ".join(f"*.{ext}" for ext in MIME_TYPES)
        filename = filedialog.askopenfilename(
            title="Choose a recording",
            filetypes=[("Audio", patterns), ("All files", "*.*")],
        )
        if not filename:
            return
        self._append_log(f"Transcribing {filename}")
        self.result_var.set("")
        self.pipeline.transcribe_file(Path(filename))

    # ---- callbacks (worker threads) ----------------------------------

    def _post(self, func: Callable[..., object], *args: object) -> None:
        # Hop to the Tk thread; dropped once the window is shutting down.
        if self._closing:
            return
        self.after(0, func, *args)

    def _on_level(self, level: float) -> None:
        self._post(self.level.set, level)

    def _on_state_change(self, _from_state: SessionState, to_state: SessionState) -> None:
        self._post(self._show_state, to_state)

    def _on_capture_error(self, message: str) -> None:
        self._post(self.status.set, message)

    def _on_transcribing(self, active: bool) -> None:
        self._post(self._show_transcribing, active)

    def _on_transcript(self, _text: str, path: Path) -> None:
        self._post(self.result_var.set, f"✓ Saved {path.name}")

    def _on_transcription_error(self, result: TranscriptionResult) -> None:
        self._post(self.result_var.set, f"✗ {result.error}")

    # ---- UI thread ---------------------------------------------------

    def _show_state(self, state: SessionState) -> None:
        if state is SessionState.RECORDING:
            self.record_btn.configure(text="Stop")
            self.status.set("Recording…")
        elif state is SessionState.STOPPING:
            self.status.set("Finishing recording…")
        else:
            self.record_btn.configure(text="Record")
            self.level.set(0.0)
            if not self.pipeline.runner.transcribing:
                self.status.set("Ready")

    def _show_transcribing(self, active: bool) -> None:
        if active:
            self.progress.start(12)
            self.status.set("Transcribing…")
        else:
            self.progress.stop()
            self.status.set("Recording…" if self.pipeline.manager.is_recording else "Ready")

    def _setup_logging_bridge(self):
        handler = TkLogHandler(self._queue_log)
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
        for name in APP_LOGGERS:
            logging.getLogger(name).addHandler(handler)
        self._log_handlers.append(handler)

    def _queue_log(self, message: str):
        try:
            self.log_queue.put_nowait(message)
        except queue.Full:
            pass

    def _drain_logs(self):
        try:
            while True:
                msg = self.log_queue.get_nowait()
                self._append_log(msg)
        except queue.Empty:
            pass
        finally:
            self.after(200, self._drain_logs)

    def _append_log(self, message: str):
        stamp = time.strftime("%H:%M:%S")
        self.log_text.insert(tk.END, f"[{stamp}] {message}\n")
        self.log_text.see(tk.END)

    def destroy(self):
        self._closing = True
        for handler in self._log_handlers:
            for name in APP_LOGGERS:
                logging.getLogger(name).removeHandler(handler)
        self._log_handlers.clear()
        self.pipeline.close()
        super().destroy()


def run_app(api_key: str) -> None:
    App(api_key).mainloop()


# ---------------------------------------------------------------------------
# CLI


def _report(future: Optional["concurrent.futures.Future[TranscriptionResult]"]) -> int:
    if future is None:
        print("Nothing to transcribe.", file=sys.stderr)
        return 1
    result = future.result()
    if not result.ok:
        code = f" (HTTP {result.status_code})" if result.status_code else ""
        print(f"Transcription failed{code}: {result.error}", file=sys.stderr)
        if result.source_path is not None:
            print(f"Audio kept at {result.source_path}", file=sys.stderr)
        return 1
    print(result.text)
    if result.transcript_path is not None:
        print(f"\nSaved to {result.transcript_path}", file=sys.stderr)
    return 0


def record_main(api_key: str, argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="calls-buddy record", description="Record until Enter, then transcribe")
    parser.add_argument("--quiet", action="store_true", help="Reduce console logs")
    args = parser.parse_args(list(argv) if argv is not None else None)
    _configure_logging(args.quiet)

    pipeline = CallsPipeline.from_env(api_key)
    try:
        path = pipeline.start_recording()
        if path is None:
            print("Could not start recording.", file=sys.stderr)
            return 1
        print(f"Recording to {path}. Press Enter to stop.", file=sys.stderr)
        try:
            input()
        except (EOFError, KeyboardInterrupt):
            pass
        return _report(pipeline.stop_recording())
    finally:
        pipeline.close()


def transcribe_main(api_key: str, argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="calls-buddy transcribe", description="Transcribe an existing audio file")
    parser.add_argument("file", type=Path, help="Audio file (m4a, mp3, mp4, wav, webm)")
    parser.add_argument("--quiet", action="store_true", help="Reduce console logs")
    args = parser.parse_args(list(argv) if argv is not None else None)
    _configure_logging(args.quiet)

    pipeline = CallsPipeline.from_env(api_key)
    try:
        return _report(pipeline.transcribe_file(args.file))
    finally:
        pipeline.close()


def devices_main() -> int:
    if capture_core.sd is None:
        print("sounddevice is not available (PortAudio missing).", file=sys.stderr)
        return 1
    print("Input devices:")
    for dev in list_input_devices():
        print(f"  #{dev['index']}: {dev['name']} ({dev['channels']} ch)")
    print("Output devices:")
    for dev in list_output_devices():
        print(f"  #{dev['index']}: {dev['name']} ({dev['channels']} ch)")
    chosen = select_capture_device()
    print(f"Selected: {'#' + str(chosen) if chosen is not None else 'system default'}")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = list(argv if argv is not None else sys.argv)
    command = args[1] if len(args) > 1 else None
    if command == "devices":
        return devices_main()

    try:
        api_key = require_openai_api_key()
    except CredentialMissingError as exc:
        print(exc, file=sys.stderr)
        return 2

    if command == "record":
        return record_main(api_key, args[2:])
    if command == "transcribe":
        return transcribe_main(api_key, args[2:])
    _configure_logging()
    run_app(api_key)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
