from __future__ import annotations

import asyncio
from dataclasses import dataclass
from logging import getLogger
from typing import Any, AsyncIterator, Callable, Optional

from google.cloud import speech

from config import AUDIO_SAMPLE_RATE, STT_LANGUAGE_BCP_47
from sttcompare.chunk_pipeline import AudioChunk
from sttcompare.stt_backend import ProtocolErrorTracker, ResultQueue
from sttcompare.stt_errors import ProtocolError, TransportError
from sttcompare.stt_result import TranscriptAlternative, TranscriptResult

logger = getLogger(__name__)


@dataclass(frozen=True)
class GoogleSttConfig:
    """
    Configuration for the Google Cloud Speech-to-Text streaming adapter.

    Note: Google uses Application Default Credentials (ADC) for authentication,
    not an API key. Set GOOGLE_APPLICATION_CREDENTIALS environment variable
    to point to your service account JSON file.
    """
    encoding: speech.RecognitionConfig.AudioEncoding = speech.RecognitionConfig.AudioEncoding.LINEAR16
    interim_results: bool = True
    max_alternatives: int = 3
    enable_automatic_punctuation: bool = True

    # Note: Google expects BCP-47 language code (e.g., "cs-CZ")
    language: str = STT_LANGUAGE_BCP_47
    sample_rate: int = AUDIO_SAMPLE_RATE

    # How long closing waits for the streaming thread before cancelling the call.
    close_timeout_s: float = 10.0


def google_error_message(error: BaseException) -> str:
    """Error text in the "(code) message" form."""
    code = getattr(error, "code", None)
    if callable(code):
        # grpc.RpcError exposes code() and details()
        code = code()
        message = error.details() if callable(getattr(error, "details", None)) else str(error)
    else:
        message = getattr(error, "message", None) or str(error)
    message = message or "Unknown error"
    if code is None:
        return message
    return f"({getattr(code, 'value', code)}) {message}"


def parse_google_response(resp: Any) -> Optional[TranscriptResult]:
    """
    Turn a StreamingRecognizeResponse into a TranscriptResult.

    Only the first result of a response is used: Google puts the most stable
    part first. Returns None for responses without results and for empty
    interim results.
    """
    results = list(getattr(resp, "results", None) or ())
    if not results:
        return None
    first = results[0]
    is_final = bool(getattr(first, "is_final", False))
    stability = getattr(first, "stability", None)

    alternatives = []
    for alt in getattr(first, "alternatives", None) or ():
        alternatives.append(TranscriptAlternative(
            text=(alt.transcript or "").strip(),
            confidence=float(alt.confidence) if getattr(alt, "confidence", None) is not None else None,
            metadata={"stability": float(stability)} if stability else {},
        ))

    result = TranscriptResult.from_alternatives(alternatives, is_final=is_final)
    if not is_final and not result.text:
        return None
    return result


def _log_late_worker_exit(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    logger.info("[STT] Google: abandoned worker thread finished (%r).", task.exception())


class GoogleStreamingAdapter:
    """
    Google Cloud Speech-to-Text v1 streaming adapter.

    Library: google-cloud-speech
    Uses: SpeechClient.streaming_recognize(streaming_config, requests)

    The client is blocking, so the stream runs on a worker thread: audio is
    pulled from an asyncio queue with run_coroutine_threadsafe and results are
    handed back to the loop with call_soon_threadsafe.
    """

    def __init__(self, cfg: Optional[GoogleSttConfig] = None,
                 client_factory: Callable[[], Any] = speech.SpeechClient) -> None:
        self._cfg = cfg or GoogleSttConfig()
        self.interim_results = self._cfg.interim_results
        self._client_factory = client_factory
        self._audio_q: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self._results = ResultQueue()
        self._closed = asyncio.Event()
        self._audio_ended = False
        self._thread_task: Optional[asyncio.Task] = None
        self._exited = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._call = None
        self._protocol = ProtocolErrorTracker("Google")

    async def __aenter__(self) -> "GoogleStreamingAdapter":
        self._loop = asyncio.get_running_loop()
        self._thread_task = asyncio.create_task(asyncio.to_thread(self._blocking_stream_loop))
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await self.end_audio()
            if self._thread_task:
                done, _ = await asyncio.wait({self._thread_task}, timeout=self._cfg.close_timeout_s)
                if not done:
                    logger.warning("[STT] Google: stream did not finish in %.1fs, cancelling.",
                                   self._cfg.close_timeout_s)
                    # the worker sees the cancelled call as a closed stream, not a crash
                    self._closed.set()
                    if self._call is not None:
                        self._call.cancel()
                    done, _ = await asyncio.wait({self._thread_task}, timeout=self._cfg.close_timeout_s)
                if not done:
                    logger.error("[STT] Google: worker thread still running after cancel, leaving it behind.")
                    self._thread_task.add_done_callback(_log_late_worker_exit)
        finally:
            self._exited = True
            self._closed.set()
            self._results.close()
            self._thread_task = None

    async def send_chunk(self, chunk: AudioChunk) -> None:
        """Send audio chunk to Google Speech-to-Text."""
        if self._results.error:
            raise self._results.error
        if self._closed.is_set() or self._audio_ended:
            raise TransportError("Google: cannot send audio, stream closed")
        await self._audio_q.put(chunk.pcm)

    async def end_audio(self) -> None:
        """Signal end of audio stream."""
        if self._audio_ended:
            return
        self._audio_ended = True
        await self._audio_q.put(None)

    def results(self) -> AsyncIterator[TranscriptResult]:
        return aiter(self._results)

    def _post(self, callback: Callable[..., None], *args) -> None:
        """Run callback on the event loop (called from the worker thread)."""
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug("[STT] Google: event loop closed, dropping %r", callback)

    def _finish(self, error: Optional[Exception]) -> None:
        if self._exited:
            logger.debug("[STT] Google: stream finished after the adapter was closed (%r).", error)
            return
        self._closed.set()
        self._results.close(error)

    def _blocking_stream_loop(self) -> None:
        loop = self._loop
        if loop is None:
            raise RuntimeError("GoogleStreamingAdapter: event loop not set")

        def request_iter():
            while True:
                chunk = asyncio.run_coroutine_threadsafe(self._audio_q.get(), loop).result()
                if chunk is None:
                    break
                yield speech.StreamingRecognizeRequest(audio_content=chunk)  # type: ignore[arg-type]

        error: Optional[Exception] = None
        try:
            client = self._client_factory()
            config = speech.RecognitionConfig(
                encoding=self._cfg.encoding,  # type: ignore[arg-type]
                sample_rate_hertz=self._cfg.sample_rate,  # type: ignore[arg-type]
                language_code=self._cfg.language,  # type: ignore[arg-type]
                max_alternatives=self._cfg.max_alternatives,  # type: ignore[arg-type]
                enable_automatic_punctuation=self._cfg.enable_automatic_punctuation,  # type: ignore[arg-type]
            )
            streaming_config = speech.StreamingRecognitionConfig(
                config=config,  # type: ignore[arg-type]
                interim_results=self._cfg.interim_results,  # type: ignore[arg-type]
            )

            responses = client.streaming_recognize(streaming_config, request_iter())  # type: ignore[arg-type]
            self._call = responses
            for resp in responses:
                # Google sends a partial response after nearly every chunk, too verbose for debug.
                try:
                    result = parse_google_response(resp)
                except (ValueError, TypeError, AttributeError) as e:
                    self._protocol.malformed(str(e), resp)
                    continue
                self._protocol.ok()
                if result is not None:
                    if result.is_final:
                        logger.debug("[STT] Google: final transcript: %s", result.text[:50])
                    self._post(self._results.put, result)

        except ProtocolError as e:
            logger.error("[STT] Google: %s", e)
            error = e
        except Exception as e:
            if self._closed.is_set():
                logger.debug("[STT] Google: stream ended after close: %r", e)
            else:
                logger.exception("[STT] Google streaming crashed: %r", e)
                error = TransportError(f"Google STT error: {google_error_message(e)}")
        finally:
            self._post(self._finish, error)
