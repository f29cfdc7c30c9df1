from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from json import loads, dumps
from logging import getLogger
from typing import Any, AsyncIterator, Optional
from urllib.parse import urlencode

from websockets import connect, ConnectionClosedOK, ConnectionClosed

from config import (
    AUDIO_SAMPLE_RATE,
    STT_LANGUAGE_ISO_639_1,
    STT_VAD_SILENCE_THRESHOLD_S,
    STT_MIN_SILENCE_DURATION_MS,
    STT_MIN_SPEECH_DURATION_MS,
    STT_VAD_THRESHOLD,
)
from sttcompare.chunk_pipeline import AudioChunk
from sttcompare.stt_backend import ProtocolErrorTracker, ResultQueue
from sttcompare.stt_errors import ProtocolError, TransportError
from sttcompare.stt_result import TranscriptAlternative, TranscriptResult

logger = getLogger(__name__)


# ElevenLabs message types
STT_MSG_SESSION_STARTED = "session_started"
STT_MSG_PARTIAL_TRANSCRIPT = "partial_transcript"
STT_MSG_COMMITTED_TRANSCRIPT = "committed_transcript"
STT_MSG_COMMITTED_TRANSCRIPT_TS = "committed_transcript_with_timestamps"
STT_ERROR_TYPES = frozenset({
    "error",
    "scribeError",
    "scribeAuthError",
    "scribeQuotaExceededError",
    "queue_overflow",
})


@dataclass(frozen=True)
class ElevenLabsSttConfig:
    """
    Configuration for the ElevenLabs realtime adapter.

    Backend-specific settings have defaults appropriate for ElevenLabs.
    Universal STT settings (sample_rate, language, VAD params) are imported
    from config.py but can be overridden here if needed.
    """
    api_key: str

    # Backend-specific settings
    model: str = "scribe_v2_realtime"
    base_url: str = "wss://api.elevenlabs.io/v1/speech-to-text/realtime"
    commit_strategy: str = "vad"

    # Universal STT settings (defaults from config.py, can be overridden)
    sample_rate: int = AUDIO_SAMPLE_RATE
    language: str = STT_LANGUAGE_ISO_639_1
    vad_silence_threshold_s: float = STT_VAD_SILENCE_THRESHOLD_S
    vad_threshold: float = STT_VAD_THRESHOLD
    min_silence_duration_ms: int = STT_MIN_SILENCE_DURATION_MS
    min_speech_duration_ms: int = STT_MIN_SPEECH_DURATION_MS


def elevenlabs_error_message(data: dict[str, Any]) -> Optional[str]:
    msg_type = data.get("message_type")
    if msg_type in STT_ERROR_TYPES:
        return f"({msg_type}) {data.get('message') or data.get('error') or data}"
    return None


def parse_elevenlabs_message(data: dict[str, Any]) -> Optional[TranscriptResult]:
    """
    partial_transcript -> interim result, committed_transcript[_with_timestamps] -> final result.

    Other message types give None. Empty partials are skipped, empty commits are kept.
    """
    msg_type = data.get("message_type")
    if msg_type == STT_MSG_PARTIAL_TRANSCRIPT:
        text = str(data.get("text") or "").strip()
        return TranscriptResult.from_text(text, is_final=False) if text else None

    if msg_type in (STT_MSG_COMMITTED_TRANSCRIPT, STT_MSG_COMMITTED_TRANSCRIPT_TS):
        text = str(data.get("text") or "").strip()
        words = data.get("words") or []
        alternative = TranscriptAlternative(text=text, metadata={"words": tuple(words)} if words else {})
        return TranscriptResult.from_alternatives([alternative], is_final=True)

    return None


class ElevenLabsRealtimeAdapter:
    """
    ElevenLabs streaming STT over WebSocket.

    Protocol:
      - Connect to wss://api.elevenlabs.io/v1/speech-to-text/realtime with query params
      - Send JSON messages with base64-encoded audio chunks, the last one with commit=true
      - Receive JSON messages: session_started, partial_transcript, committed_transcript
    """

    def __init__(self, cfg: ElevenLabsSttConfig) -> None:
        self._cfg = cfg
        self.interim_results = True
        self._ws = None
        self._results = ResultQueue()
        self._rx_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()
        self._protocol = ProtocolErrorTracker("ElevenLabs")

    def _build_url(self) -> str:
        """Build WebSocket URL with query parameters."""
        params = {
            "model_id": self._cfg.model,
            "audio_format": f"pcm_{self._cfg.sample_rate}",
            "commit_strategy": self._cfg.commit_strategy,
            "language_code": self._cfg.language,
            "vad_silence_threshold_secs": str(self._cfg.vad_silence_threshold_s),
            "vad_threshold": str(self._cfg.vad_threshold),
            "min_silence_duration_ms": str(self._cfg.min_silence_duration_ms),
            "min_speech_duration_ms": str(self._cfg.min_speech_duration_ms),
        }
        return f"{self._cfg.base_url}?{urlencode(params)}"

    async def __aenter__(self) -> "ElevenLabsRealtimeAdapter":
        """
        Connect and start the STT session.

        Note: the WebSocket closes automatically after 20 seconds of inactivity.
        Elevenlabs doc: https://elevenlabs.io/docs/developers/websockets#tips
        """
        if not self._cfg.api_key:
            raise TransportError("ElevenLabs API key is required")

        try:
            self._ws = await connect(
                self._build_url(),
                additional_headers={"xi-api-key": self._cfg.api_key},
                ping_interval=10,
                ping_timeout=10,
                close_timeout=5,
                max_queue=32,
            )
            first_msg = await self._ws.recv()
        except (OSError, ConnectionClosed) as e:
            raise TransportError(f"ElevenLabs WebSocket connection failed: {e}") from e

        # Verify handshake
        try:
            data = loads(first_msg)
        except ValueError as e:
            await self._ws.close()
            raise ProtocolError(f"ElevenLabs: invalid handshake message {first_msg!r}") from e
        if not isinstance(data, dict) or data.get("message_type") != STT_MSG_SESSION_STARTED:
            await self._ws.close()
            raise TransportError(f"ElevenLabs STT session did not start correctly: {data}")
        logger.info("[STT] ElevenLabs: session started.")

        self._rx_task = asyncio.create_task(self._recv_loop())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            self._closed.set()
            if self._rx_task:
                self._rx_task.cancel()
            if self._ws:
                try:
                    await self._ws.close()
                except ConnectionClosed:
                    pass
        finally:
            self._results.close()
            self._ws = None
            self._rx_task = None

    async def send_chunk(self, chunk: AudioChunk) -> None:
        """Send audio chunk to ElevenLabs (base64-encoded in JSON)."""
        await self._send_audio(chunk.pcm, commit=False)

    async def end_audio(self) -> None:
        """Commit whatever was sent so far, ElevenLabs answers with a committed transcript."""
        if self._closed.is_set() or self._ws is None:
            return
        try:
            await self._send_audio(b"", commit=True)
        except TransportError as e:
            logger.debug("[STT] ElevenLabs: cannot commit at end of audio: %s", e)

    def results(self) -> AsyncIterator[TranscriptResult]:
        return aiter(self._results)

    async def _send_audio(self, pcm: bytes, *, commit: bool) -> None:
        if self._results.error:
            raise self._results.error
        if self._closed.is_set() or self._ws is None:
            raise TransportError("ElevenLabs: cannot send audio, connection closed")
        payload = {
            "message_type": "input_audio_chunk",
            "audio_base_64": base64.b64encode(pcm).decode("ascii"),
            "sample_rate": self._cfg.sample_rate,
        }
        if commit:
            payload["commit"] = True
        try:
            await self._ws.send(dumps(payload))
        except ConnectionClosed as e:
            self._closed.set()
            raise TransportError(f"ElevenLabs: connection closed while sending audio: {e}") from e

    async def _recv_loop(self) -> None:
        """Background task receiving messages from WebSocket."""
        error: Optional[Exception] = None
        try:
            while not self._closed.is_set():
                reply = await self._ws.recv()
                try:
                    data = loads(reply)
                    if not isinstance(data, dict):
                        raise ValueError("message is not an object")
                    error_msg = elevenlabs_error_message(data)
                    result = None if error_msg else parse_elevenlabs_message(data)
                except (ValueError, TypeError) as e:
                    self._protocol.malformed(str(e), reply)
                    continue
                self._protocol.ok()

                if error_msg:
                    raise TransportError(f"ElevenLabs STT error {error_msg}")
                if result is not None:
                    if result.is_final:
                        logger.debug("[STT] ElevenLabs: committed transcript: %s", result.text[:50])
                    self._results.put(result)

        except ConnectionClosedOK:
            logger.debug("[STT] ElevenLabs: session closed cleanly.")
        except ConnectionClosed as e:
            if self._closed.is_set():
                logger.debug("[STT] ElevenLabs: session closed (%s).", e)
            else:
                logger.warning("[STT] ElevenLabs: connection closed unexpectedly: %s", e)
                error = TransportError(f"ElevenLabs connection closed unexpectedly: {e}")
        except (TransportError, ProtocolError) as e:
            logger.error("[STT] ElevenLabs: %s", e)
            error = e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[STT] ElevenLabs receiver crashed: %r", e)
            error = TransportError(f"ElevenLabs receiver crashed: {e!r}")
        finally:
            self._closed.set()
            self._results.close(error)
