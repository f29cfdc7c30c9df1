from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from logging import getLogger
from typing import Any, AsyncIterator, Optional
from urllib.parse import urlencode

from websockets import connect, ConnectionClosedOK, ConnectionClosed

from config import AUDIO_SAMPLE_RATE, AUDIO_CHANNELS, STT_VAD_SILENCE_THRESHOLD_S, STT_LANGUAGE_ISO_639_1
from sttcompare.chunk_pipeline import AudioChunk
from sttcompare.stt_backend import ProtocolErrorTracker, ResultQueue
from sttcompare.stt_errors import ProtocolError, TransportError
from sttcompare.stt_result import TranscriptAlternative, TranscriptResult

logger = getLogger(__name__)

DEEPGRAM_IGNORED_TYPES = frozenset({"Metadata", "UtteranceEnd", "SpeechStarted"})


@dataclass(frozen=True)
class DeepgramSttConfig:
    """
    Deepgram Live Audio settings.
    https://developers.deepgram.com/docs/stt-streaming-feature-overview
    """

    api_key: str
    # Deepgram Live Audio endpoint
    base_url: str = "wss://api.deepgram.com/v1/listen"

    model: str = "nova-3"
    language: str = STT_LANGUAGE_ISO_639_1
    punctuate: bool = True
    smart_format: bool = True
    interim_results: bool = True

    # Raw PCM settings (headerless PCM needs the encoding in the query)
    encoding: str = "linear16"
    sample_rate: int = AUDIO_SAMPLE_RATE
    channels: int = AUDIO_CHANNELS

    # endpointing is milliseconds in the Deepgram query
    endpointing_ms: int = int(STT_VAD_SILENCE_THRESHOLD_S * 1000)
    connect_timeout_s: float = 15.0


def deepgram_error_message(data: dict[str, Any]) -> Optional[str]:
    """Error text of a Deepgram message, None if the message is not an error."""
    if data.get("type") == "Error" or "error" in data:
        return str(data.get("message") or data.get("description") or data.get("error") or data)
    return None


def parse_deepgram_message(data: dict[str, Any]) -> Optional[TranscriptResult]:
    """
    Turn a Deepgram ``Results`` message into a TranscriptResult.

    Returns None for messages without a transcript (metadata, VAD events,
    empty interim results). Raises ValueError for a Results message of
    unexpected shape.
    """
    if data.get("type") != "Results":
        return None

    channel = data.get("channel")
    if not isinstance(channel, dict):
        raise ValueError("Results message without channel")
    is_final = bool(data.get("is_final", False))

    alternatives = []
    for alt in channel.get("alternatives") or []:
        words = alt.get("words") or []
        alternatives.append(TranscriptAlternative(
            text=(alt.get("transcript") or "").strip(),
            confidence=alt.get("confidence"),
            metadata={"words": tuple(words)} if words else {},
        ))

    result = TranscriptResult.from_alternatives(alternatives, is_final=is_final)
    if not is_final and not result.text:
        return None
    return result


class DeepgramRealtimeAdapter:
    """
    Deepgram Live Audio WebSocket streaming adapter.

    - Sends binary audio frames (raw PCM).
    - Sends {"type":"Finalize"} and {"type":"CloseStream"} on end of audio.
    - Yields interim results (if enabled in config) and final ones.
    """

    def __init__(self, cfg: DeepgramSttConfig) -> None:
        self._cfg = cfg
        self.interim_results = cfg.interim_results
        self._ws = None
        self._results = ResultQueue()
        self._rx_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()
        self._protocol = ProtocolErrorTracker("Deepgram")

    def _build_url(self) -> str:
        qs = urlencode(
            {
                "model": self._cfg.model,
                "language": self._cfg.language,
                "encoding": self._cfg.encoding,
                "sample_rate": str(self._cfg.sample_rate),
                "channels": str(self._cfg.channels),
                "punctuate": str(self._cfg.punctuate).lower(),
                "smart_format": str(self._cfg.smart_format).lower(),
                "interim_results": str(self._cfg.interim_results).lower(),
                "endpointing": str(self._cfg.endpointing_ms),
            }
        )
        return f"{self._cfg.base_url}?{qs}"

    async def __aenter__(self) -> "DeepgramRealtimeAdapter":
        if not self._cfg.api_key:
            raise TransportError("Deepgram API key is required")

        url = self._build_url()
        logger.debug("[STT] Deepgram: connecting to %s", url)

        # Deepgram examples use lowercase 'token' in the Authorization header.
        try:
            self._ws = await asyncio.wait_for(
                connect(
                    url,
                    additional_headers={"Authorization": f"token {self._cfg.api_key}"},
                    open_timeout=10,
                    ping_interval=10,
                    ping_timeout=10,
                    close_timeout=5,
                    max_queue=32,
                ),
                timeout=self._cfg.connect_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"Deepgram WebSocket connection timed out after {self._cfg.connect_timeout_s}s") from e
        except (OSError, ConnectionClosed) as e:
            raise TransportError(f"Deepgram WebSocket connection failed: {e}") from e

        self._rx_task = asyncio.create_task(self._recv_loop())
        logger.info("[STT] Deepgram: ready.")
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
        """Send audio chunk to Deepgram (binary PCM frames)."""
        if self._results.error:
            raise self._results.error
        if self._closed.is_set() or self._ws is None:
            raise TransportError("Deepgram: cannot send audio, connection closed")
        try:
            await self._ws.send(chunk.pcm)
        except ConnectionClosed as e:
            self._closed.set()
            raise TransportError(f"Deepgram: connection closed while sending audio: {e}") from e

    async def end_audio(self) -> None:
        """Flush the stream: Finalize makes Deepgram send the pending final result."""
        if self._closed.is_set() or self._ws is None:
            return
        try:
            await self._ws.send(json.dumps({"type": "Finalize"}))
            await asyncio.sleep(0.25)  # give Deepgram time to flush final results
            await self._ws.send(json.dumps({"type": "CloseStream"}))
        except ConnectionClosed as e:
            logger.debug("[STT] Deepgram: connection closed during end of audio: %s", e)

    def results(self) -> AsyncIterator[TranscriptResult]:
        return aiter(self._results)

    async def _recv_loop(self) -> None:
        error: Optional[Exception] = None
        try:
            while not self._closed.is_set():
                msg = await self._ws.recv()

                if isinstance(msg, (bytes, bytearray)):
                    self._protocol.malformed("unexpected binary message", msg)
                    continue
                try:
                    data = json.loads(msg)
                    if not isinstance(data, dict):
                        raise ValueError("message is not an object")
                    error_msg = deepgram_error_message(data)
                    result = None if error_msg else parse_deepgram_message(data)
                except (ValueError, TypeError, AttributeError) as e:
                    self._protocol.malformed(str(e), msg)
                    continue
                self._protocol.ok()

                if error_msg:
                    raise TransportError(f"Deepgram STT error: {error_msg}")
                if result is not None:
                    logger.debug("[STT] Deepgram: %s transcript: %s",
                                 "final" if result.is_final else "interim", result.text[:50])
                    self._results.put(result)
                elif data.get("type") in DEEPGRAM_IGNORED_TYPES:
                    logger.debug("[STT] Deepgram: received %s", data.get("type"))

        except ConnectionClosedOK:
            logger.debug("[STT] Deepgram: session closed cleanly.")
        except ConnectionClosed as e:
            # Close code 1000 is normal closure.
            is_clean = e.rcvd is not None and e.rcvd.code == 1000
            if is_clean or self._closed.is_set():
                logger.debug("[STT] Deepgram: session closed (%s).", e)
            else:
                logger.warning("[STT] Deepgram: connection closed unexpectedly: %s", e)
                error = TransportError(f"Deepgram connection closed unexpectedly: {e}")
        except (TransportError, ProtocolError) as e:
            logger.error("[STT] Deepgram: %s", e)
            error = e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[STT] Deepgram receiver crashed: %r", e)
            error = TransportError(f"Deepgram receiver crashed: {e!r}")
        finally:
            self._closed.set()
            self._results.close(error)
