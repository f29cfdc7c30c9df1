from __future__ import annotations

import asyncio
import io
import json
import wave
from dataclasses import dataclass
from datetime import date
from logging import getLogger
from typing import Any, AsyncIterator, Optional

import httpx

from config import AUDIO_CHANNELS, AUDIO_SAMPLE_RATE, AUDIO_SAMPLE_WIDTH_BYTES
from sttcompare.chunk_pipeline import AudioChunk
from sttcompare.stt_backend import ResultQueue
from sttcompare.stt_errors import ProtocolError, TransportError
from sttcompare.stt_result import TranscriptResult

logger = getLogger(__name__)


@dataclass(frozen=True)
class WitAiSttConfig:
    """
    Wit.ai speech endpoint settings.

    Wit.ai is not streaming: the whole recording is posted as one WAV file once
    audio ends. api_version defaults to today's date (YYYYMMDD), the way
    Wit.ai versions its API.
    """
    access_token: str
    base_url: str = "https://api.wit.ai/speech"
    api_version: Optional[str] = None
    sample_rate: int = AUDIO_SAMPLE_RATE
    timeout_s: float = 30.0


def pcm_to_wav(pcm: bytes, sample_rate: int) -> bytes:
    """Wrap mono 16-bit PCM into an in-memory WAV file."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(AUDIO_CHANNELS)
        wf.setsampwidth(AUDIO_SAMPLE_WIDTH_BYTES)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return buf.getvalue()


def decode_witai_body(body: str) -> dict[str, Any]:
    """
    Decode a Wit.ai response body.

    Newer API versions stream several JSON objects back to back in one body;
    the last one carries the complete transcript.
    """
    decoder = json.JSONDecoder()
    objects = []
    pos = 0
    body = body.strip()
    while pos < len(body):
        obj, end = decoder.raw_decode(body, pos)
        objects.append(obj)
        pos = end
        while pos < len(body) and body[pos].isspace():
            pos += 1
    if not objects or not isinstance(objects[-1], dict):
        raise ValueError("no JSON object in response")
    return objects[-1]


def witai_error_message(data: dict[str, Any]) -> Optional[str]:
    """Error text in the "(code) message" form, None if the response is not an error."""
    if "error" not in data:
        return None
    message = data.get("error") or "Unknown error"
    code = data.get("code")
    return f"({code}) {message}" if code is not None else str(message)


def parse_witai_response(data: dict[str, Any]) -> TranscriptResult:
    """
    Wit.ai has no interim/final signal, so its (only) result is always final.
    """
    text = data.get("_text")
    if text is None:
        text = data.get("text") or ""
    return TranscriptResult.from_text(str(text).strip(), is_final=True)


class WitAiAdapter:
    """
    Wit.ai speech adapter (non-streaming).

    Chunks are buffered; end_audio() posts the recording and yields a single
    final result. interim_results is False.
    """

    interim_results = False

    def __init__(self, cfg: WitAiSttConfig, client: Optional[httpx.AsyncClient] = None) -> None:
        self._cfg = cfg
        self._external_client = client
        self._client: Optional[httpx.AsyncClient] = None
        self._pcm = bytearray()
        self._audio_ended = False
        self._results = ResultQueue()

    async def __aenter__(self) -> "WitAiAdapter":
        if not self._cfg.access_token:
            raise TransportError("Wit.ai access token is required")
        self._client = self._external_client or httpx.AsyncClient(timeout=self._cfg.timeout_s)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if self._client is not None and self._external_client is None:
                await self._client.aclose()
        finally:
            self._client = None
            self._results.close()

    async def send_chunk(self, chunk: AudioChunk) -> None:
        if self._audio_ended:
            raise TransportError("Wit.ai: audio already ended")
        self._pcm.extend(chunk.pcm)

    async def end_audio(self) -> None:
        if self._audio_ended:
            return
        self._audio_ended = True
        try:
            result = await self._transcribe(bytes(self._pcm))
        except (TransportError, ProtocolError) as e:
            logger.error("[STT] Wit.ai: %s", e)
            self._results.close(e)
            return
        self._results.put(result)
        self._results.close()

    def results(self) -> AsyncIterator[TranscriptResult]:
        return aiter(self._results)

    async def _transcribe(self, pcm: bytes) -> TranscriptResult:
        version = self._cfg.api_version or date.today().strftime("%Y%m%d")
        headers = {
            "Authorization": f"Bearer {self._cfg.access_token}",
            "Content-Type": "audio/wav",
        }
        logger.debug("[STT] Wit.ai: sending %.2fs of audio.", len(pcm) / AUDIO_SAMPLE_WIDTH_BYTES / self._cfg.sample_rate)
        loop = asyncio.get_running_loop()
        start = loop.time()
        try:
            resp = await self._client.post(self._cfg.base_url, params={"v": version},
                                           content=pcm_to_wav(pcm, self._cfg.sample_rate), headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(f"Wit.ai request failed: {e!r}") from e
        logger.debug("[STT] Wit.ai: response time %.2fs (HTTP %d).", loop.time() - start, resp.status_code)

        try:
            data = decode_witai_body(resp.text)
        except ValueError as e:
            raise ProtocolError(f"Wit.ai: invalid response (HTTP {resp.status_code}): {resp.text[:200]!r}") from e

        error_msg = witai_error_message(data)
        if error_msg:
            raise TransportError(f"Wit.ai STT error: {error_msg}")
        if resp.is_error:
            raise TransportError(f"Wit.ai STT error: HTTP {resp.status_code}")
        return parse_witai_response(data)
