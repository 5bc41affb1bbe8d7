from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Tuple

import httpx
from pydantic import BaseModel, ValidationError

from config import TranscriptionConfig


# ---------------------------------------------------------------------------
# Configuration helpers

HTTP_LOG = logging.getLogger("calls_stt")


class CredentialMissingError(RuntimeError):
    """No API key could be found; the app cannot run without one."""


def _default_key_file() -> Path:
    # Prefer openai_api_key.txt alongside main.py, fall back to the parent dir.
    script_dir = Path(__file__).resolve().parent
    candidates = [
        script_dir / "openai_api_key.txt",
        script_dir.parent / "openai_api_key.txt",
    ]
    for path in candidates:
        if path.exists():
            return path
    return candidates[0]


def load_openai_api_key() -> Optional[str]:
    """Load the OpenAI API key from env or a local text file."""
    key = os.environ.get("OPENAI_API_KEY")
    if key:
        key = key.strip()
        if key:
            return key

    key_file = os.environ.get("OPENAI_API_KEY_FILE")
    path = Path(key_file).expanduser() if key_file else _default_key_file()
    if not path.exists():
        return None

    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return text or None


def require_openai_api_key() -> str:
    key = load_openai_api_key()
    if not key:
        raise CredentialMissingError(
            "OPENAI_API_KEY not found: set the environment variable or create openai_api_key.txt"
        )
    return key


# ---------------------------------------------------------------------------
# Request / result values

MIME_TYPES: Dict[str, str] = {
    "m4a": "audio/m4a",
    "mp3": "audio/mpeg",
    "mp4": "audio/mp4",
    "wav": "audio/wav",
    "webm": "audio/webm",
}
DEFAULT_EXTENSION = "m4a"
DEFAULT_MIME_TYPE = "audio/m4a"

Sleep = Callable[[float], Awaitable[None]]


class FailureKind(str, Enum):
    FILE_MISSING = "file_missing"
    SIZE_EXCEEDED = "size_exceeded"
    READ = "read"
    NETWORK = "network"
    STATUS = "status"
    PARSE = "parse"
    SAVE = "save"
    EXHAUSTED = "exhausted"


# Raised before any request is sent; retrying cannot help.
_PREFLIGHT_KINDS = frozenset({FailureKind.FILE_MISSING, FailureKind.SIZE_EXCEEDED})


class TranscriptionError(Exception):
    def __init__(self, message: str, kind: FailureKind, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind not in _PREFLIGHT_KINDS


@dataclass(frozen=True)
class TranscriptionResult:
    text: Optional[str] = None
    error: Optional[str] = None
    kind: Optional[FailureKind] = None
    status_code: Optional[int] = None
    attempts: int = 0
    source_path: Optional[Path] = None
    transcript_path: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.text is not None

    @classmethod
    def success(cls, text: str, *, attempts: int, source_path: Optional[Path] = None) -> "TranscriptionResult":
        return cls(text=text, attempts=attempts, source_path=source_path)

    @classmethod
    def failure(
        cls, exc: TranscriptionError, *, attempts: int, source_path: Optional[Path] = None
    ) -> "TranscriptionResult":
        return cls(
            error=exc.message,
            kind=exc.kind,
            status_code=exc.status_code,
            attempts=attempts,
            source_path=source_path,
        )


def infer_mime_type(path: Path) -> Tuple[str, str]:
    """Return ``(extension, mime_type)`` for an audio path."""
    ext = Path(path).suffix.lstrip(".").lower()
    if not ext:
        return DEFAULT_EXTENSION, DEFAULT_MIME_TYPE
    return ext, MIME_TYPES.get(ext, DEFAULT_MIME_TYPE)


@dataclass(frozen=True)
class TranscriptionRequest:
    """Everything one upload needs. Built fresh for every attempt."""

    audio_bytes: bytes = field(repr=False)
    filename: str
    mime_type: str
    model: str
    response_format: str
    language: Optional[str] = None

    @classmethod
    def from_file(cls, path: Path, cfg: TranscriptionConfig) -> "TranscriptionRequest":
        path = Path(path)
        limit = cfg.max_upload_bytes
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            raise TranscriptionError(f"Audio file not found: {path}", FailureKind.FILE_MISSING) from None
        except OSError as exc:
            raise TranscriptionError(f"Cannot access {path}: {exc}", FailureKind.READ) from exc
        if not path.is_file():
            raise TranscriptionError(f"Not a regular file: {path}", FailureKind.FILE_MISSING)
        if size > limit:
            raise TranscriptionError(_size_message(size, limit), FailureKind.SIZE_EXCEEDED)

        try:
            audio = path.read_bytes()
        except OSError as exc:
            raise TranscriptionError(f"Cannot read {path}: {exc}", FailureKind.READ) from exc
        if len(audio) > limit:
            raise TranscriptionError(_size_message(len(audio), limit), FailureKind.SIZE_EXCEEDED)

        ext, mime = infer_mime_type(path)
        return cls(
            audio_bytes=audio,
            filename=f"audio.{ext}",
            mime_type=mime,
            model=cfg.model,
            response_format=cfg.response_format,
            language=cfg.language or None,
        )

    def form_fields(self) -> Dict[str, str]:
        data = {"model": self.model, "response_format": self.response_format}
        if self.language:
            data["language"] = self.language
        return data

    def files(self) -> Dict[str, Tuple[str, bytes, str]]:
        return {"file": (self.filename, self.audio_bytes, self.mime_type)}


def _size_message(size: int, limit: int) -> str:
    return f"File too large: {size} bytes. Maximum size is {limit // (1024 * 1024)}MB"


class TranscriptionPayload(BaseModel):
    text: str


# ---------------------------------------------------------------------------
# HTTP transcriber


class TranscriptionClient:
    """Uploads one audio file to the transcription endpoint, with retries.

    Every attempt rebuilds the request from disk, posts it as multipart and
    classifies the outcome. Missing or oversized files fail before any
    request. Network, status, parse and read failures are retried up to
    ``max_attempts`` times with ``attempt * backoff_step_s`` seconds between
    attempts; the wait is an awaited sleep, so the loop thread stays free.
    """

    def __init__(
        self,
        api_key: str,
        config: Optional[TranscriptionConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Sleep] = None,
    ):
        self.cfg = config or TranscriptionConfig.from_env()
        self._api_key = api_key
        self._transport = transport
        self._sleep: Sleep = sleep or asyncio.sleep

    async def transcribe(self, path: Path) -> TranscriptionResult:
        path = Path(path)
        max_attempts = max(1, self.cfg.max_attempts)
        last_error: Optional[TranscriptionError] = None
        attempt = 0

        while attempt < max_attempts:
            attempt += 1
            HTTP_LOG.info("Attempt %d of %d for %s", attempt, max_attempts, path.name)
            try:
                text = await self._attempt(path)
            except TranscriptionError as exc:
                last_error = exc
                HTTP_LOG.error("Attempt %d failed (%s): %s", attempt, exc.kind.value, exc.message)
                if not self._should_retry(exc) or attempt >= max_attempts:
                    break
                delay = attempt * self.cfg.backoff_step_s
                HTTP_LOG.info("Waiting %.1f s before the next attempt", delay)
                await self._sleep(delay)
                continue
            HTTP_LOG.info("Transcription finished for %s (%d chars)", path.name, len(text))
            return TranscriptionResult.success(text, attempts=attempt, source_path=path)

        if last_error is None:
            last_error = TranscriptionError("All transcription attempts failed", FailureKind.EXHAUSTED)
        return TranscriptionResult.failure(last_error, attempts=attempt, source_path=path)

    # ---- helpers -----------------------------------------------------

    async def _attempt(self, path: Path) -> str:
        request = TranscriptionRequest.from_file(path, self.cfg)
        HTTP_LOG.info(
            "POST %s model=%s file=%s type=%s size=%d",
            self.cfg.endpoint,
            request.model,
            request.filename,
            request.mime_type,
            len(request.audio_bytes),
        )
        try:
            async with self._client() as client:
                response = await client.post(self.cfg.endpoint, data=request.form_fields(), files=request.files())
        except httpx.HTTPError as exc:
            raise TranscriptionError(f"Network error: {exc}", FailureKind.NETWORK) from exc

        HTTP_LOG.info("Response status %s", response.status_code)
        if not response.is_success:
            raise self._status_error(response)
        return self._parse_success(response)

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            connect=self.cfg.connect_timeout_s,
            read=self.cfg.request_timeout_s,
            write=self.cfg.request_timeout_s,
            pool=None,
        )
        headers = {"Authorization": f"Bearer {self._api_key}"}
        return httpx.AsyncClient(timeout=timeout, headers=headers, transport=self._transport)

    @staticmethod
    def _parse_success(response: httpx.Response) -> str:
        try:
            payload = TranscriptionPayload.model_validate_json(response.content)
        except ValidationError as exc:
            HTTP_LOG.debug("Unparseable body: %r", response.content[:200])
            raise TranscriptionError(
                f"Could not decode transcription response: {exc.errors()[0]['msg']}",
                FailureKind.PARSE,
                response.status_code,
            ) from exc
        return payload.text

    @staticmethod
    def _status_error(response: httpx.Response) -> TranscriptionError:
        status = response.status_code
        raw = response.content
        try:
            body: Optional[str] = raw.decode("utf-8")
        except UnicodeDecodeError:
            body = None
        HTTP_LOG.error("Transcription error %s: %r", status, body if body is not None else raw[:200])

        message = _error_message(body) if body else None
        if message is None:
            message = body if body and body.strip() else f"server error {status}"
        return TranscriptionError(message, FailureKind.STATUS, status)

    def _should_retry(self, exc: TranscriptionError) -> bool:
        if not exc.retryable:
            return False
        code = exc.status_code
        if (
            not self.cfg.retry_client_errors
            and exc.kind is FailureKind.STATUS
            and code is not None
            and 400 <= code < 500
            and code not in (408, 429)
        ):
            return False
        return True


def _error_message(body: str) -> Optional[str]:
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    return None


# ---------------------------------------------------------------------------
# Background runner

ResultHook = Callable[[TranscriptionResult], Optional[TranscriptionResult]]
FlagCallback = Callable[[bool], None]


class TranscriptionRunner:
    """Runs transcriptions on a private asyncio loop thread.

    ``submit`` returns a ``concurrent.futures.Future``. ``on_transcribing``
    fires True before the first attempt when nothing else is in flight and
    False once the last in-flight job has finished, always from the loop
    thread.
    """

    def __init__(self, client: TranscriptionClient, on_transcribing: Optional[FlagCallback] = None):
        self._client = client
        self._on_transcribing = on_transcribing
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._in_flight = 0
        self.transcribing = False

    def start(self) -> asyncio.AbstractEventLoop:
        """Start the loop thread if needed and return the running loop."""
        with self._lock:
            if self._loop is not None and self._thread is not None and self._thread.is_alive():
                return self._loop
            loop = asyncio.new_event_loop()
            self._thread = threading.Thread(target=self._run_loop, args=(loop,), name="transcription-loop", daemon=True)
            self._loop = loop
            self._thread.start()
            return loop

    def submit(self, path: Path, on_result: Optional[ResultHook] = None) -> "concurrent.futures.Future[TranscriptionResult]":
        loop = self.start()
        HTTP_LOG.info("Queued transcription for %s", path)
        return asyncio.run_coroutine_threadsafe(self._run_job(Path(path), on_result), loop)

    def close(self, timeout: float = 2.0) -> None:
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = self._thread = None
        if loop is None or thread is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=timeout)
        if thread.is_alive():
            HTTP_LOG.warning("Transcription loop did not stop cleanly")

    # ---- loop thread -------------------------------------------------

    @staticmethod
    def _run_loop(loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        try:
            loop.run_forever()
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.close()

    async def _run_job(self, path: Path, on_result: Optional[ResultHook]) -> TranscriptionResult:
        self._job_started()
        try:
            result = await self._client.transcribe(path)
            if on_result is not None:
                result = on_result(result) or result
            return result
        finally:
            self._job_finished()

    def _job_started(self) -> None:
        self._in_flight += 1
        if self._in_flight == 1:
            self._publish(True)

    def _job_finished(self) -> None:
        self._in_flight -= 1
        if self._in_flight == 0:
            self._publish(False)

    def _publish(self, active: bool) -> None:
        self.transcribing = active
        if self._on_transcribing is None:
            return
        try:
            self._on_transcribing(active)
        except Exception:  # noqa: BLE001
            HTTP_LOG.exception("Transcribing observer failed")


__all__ = [
    "CredentialMissingError",
    "load_openai_api_key",
    "require_openai_api_key",
    "MIME_TYPES",
    "FailureKind",
    "TranscriptionError",
    "TranscriptionResult",
    "TranscriptionRequest",
    "TranscriptionPayload",
    "infer_mime_type",
    "TranscriptionClient",
    "TranscriptionRunner",
]
