"""
Audio capture: one owned recording that any number of sessions read chunks from.

The CaptureService plays the role of the microphone. It is created once by
the caller and injected into every session of a comparison, so all backends
transcribe the very same audio. Audio gets into it either from a
``CaptureSource`` started together with the capture (``WavFileSource`` below)
or by an external feeder calling ``append_audio()`` (the WebSocket gateway).

Capture ends in one of two ways:

- ``stop_capture()``: the user stopped recording, no notification is sent.
- unexpectedly: the max recording length was reached or the source ran out
  of audio. Timeout listeners are notified, so sessions can treat it as a stop.
  If the source crashed, error listeners are notified instead.
"""
from __future__ import annotations

import asyncio
import math
import wave
from dataclasses import dataclass
from logging import getLogger
from pathlib import Path
from typing import Callable, Iterator, Optional, Protocol

from config import (
    AUDIO_SAMPLE_RATE,
    AUDIO_SAMPLE_WIDTH_BYTES,
    CHUNK_MS,
    MAX_RECORDING_LENGTH_S,
    RECORDING_REALTIME_FACTOR,
    RECORDING_SILENCE_S,
)
from sttcompare.chunk_pipeline import AudioChunk
from sttcompare.listeners import Listeners
from sttcompare.stt_errors import CaptureError

logger = getLogger(__name__)


def make_silence_chunk(duration_s: float, sample_rate: int, sample_width_bytes: int = AUDIO_SAMPLE_WIDTH_BYTES) -> bytes:
    """Create a silence audio chunk of given duration."""
    return b"\x00" * sample_width_bytes * int(sample_rate * duration_s)


class CaptureSource(Protocol):
    """Something that pushes PCM into a CaptureService while it is capturing."""

    def validate(self) -> None:
        """Raise CaptureError if the source cannot deliver audio."""
        ...

    async def run(self, capture: "CaptureService") -> None:
        """Feed audio via capture.append_audio() until exhausted or capture stops."""
        ...


class CaptureService:
    """
    A single growing recording of 16-bit mono PCM.

    All methods must be called from the event loop thread.
    """

    def __init__(
            self,
            *,
            source: Optional[CaptureSource] = None,
            sample_rate: int = AUDIO_SAMPLE_RATE,
            max_recording_s: float = MAX_RECORDING_LENGTH_S,
    ) -> None:
        if sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {sample_rate}")
        if max_recording_s <= 0:
            raise ValueError(f"max_recording_s must be positive, got {max_recording_s}")
        self._source = source
        self._sample_rate = sample_rate
        self._max_samples = int(max_recording_s * sample_rate)
        self._buffer = bytearray()
        self._capturing = False
        self._source_task: Optional[asyncio.Task] = None
        self._changed = asyncio.Event()
        self._on_timeout: Listeners[Callable[[], None]] = Listeners("capture timeout")
        self._on_error: Listeners[Callable[[str], None]] = Listeners("capture error")

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def is_capturing(self) -> bool:
        return self._capturing

    @property
    def recorded_samples(self) -> int:
        return len(self._buffer) // AUDIO_SAMPLE_WIDTH_BYTES

    @property
    def recorded_seconds(self) -> float:
        return self.recorded_samples / self._sample_rate

    def register_on_timeout(self, callback: Callable[[], None]) -> None:
        self._on_timeout.add(callback)

    def unregister_on_timeout(self, callback: Callable[[], None]) -> None:
        self._on_timeout.remove(callback)

    def register_on_error(self, callback: Callable[[str], None]) -> None:
        self._on_error.add(callback)

    def unregister_on_error(self, callback: Callable[[str], None]) -> None:
        self._on_error.remove(callback)

    def start_capture(self) -> bool:
        """
        Start a new recording, discarding the previous one.

        Returns False (and keeps the current recording) if already capturing.
        Raises CaptureError if the source is unusable.
        """
        if self._capturing:
            return False
        if self._source is not None:
            self._source.validate()

        self._buffer = bytearray()
        self._capturing = True
        self._notify()
        if self._source is not None:
            self._source_task = asyncio.create_task(self._run_source(), name="capture-source")
        logger.info("[CAPTURE] Recording started (max %.1fs).", self._max_samples / self._sample_rate)
        return True

    def stop_capture(self) -> bool:
        """Stop recording on request. Returns False if not capturing."""
        if not self._capturing:
            return False
        self._end_capture()
        task = self._source_task
        self._source_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        logger.info("[CAPTURE] Recording stopped, length %.2fs.", self.recorded_seconds)
        return True

    def append_audio(self, pcm: bytes) -> int:
        """
        Append PCM to the recording. Returns the number of bytes accepted.

        Audio beyond the max recording length is dropped and ends the capture
        (timeout listeners are notified).
        """
        if not self._capturing:
            logger.debug("[CAPTURE] Not capturing, dropping %d bytes.", len(pcm))
            return 0
        room = self._max_samples * AUDIO_SAMPLE_WIDTH_BYTES - len(self._buffer)
        accepted = pcm[:max(0, room)]
        accepted = accepted[:len(accepted) - len(accepted) % AUDIO_SAMPLE_WIDTH_BYTES]
        self._buffer.extend(accepted)
        self._notify()
        if self.recorded_samples >= self._max_samples:
            self._finish_unexpectedly("max recording length reached")
        return len(accepted)

    async def wait_for_samples(self, n_samples: int) -> int:
        """
        Suspend until at least n_samples are recorded or capture stops.

        Returns the number of recorded samples at wake up.
        """
        while self._capturing and self.recorded_samples < n_samples:
            await self._changed.wait()
        return self.recorded_samples

    def get_chunk(self, offset_s: float, duration_s: float) -> Optional[AudioChunk]:
        """
        Copy a chunk out of the recording.

        Nonsense requests (non-positive duration, offset at or after the end of
        the recording) return None. A negative offset is clamped to 0, a
        duration running past the end is truncated to the remaining audio.
        """
        if duration_s <= 0:
            logger.error("[CAPTURE] Audio chunk length cannot be less than or equal to 0 (%r).", duration_s)
            return None
        recorded_s = self.recorded_seconds
        if offset_s >= recorded_s:
            logger.error("[CAPTURE] Offset %.3fs is not within the recorded audio (%.3fs).", offset_s, recorded_s)
            return None

        if offset_s < 0:
            logger.warning("[CAPTURE] Chunk offset is less than 0. Clamping to 0.")
            offset_s = 0.0
        if offset_s + duration_s > recorded_s:
            logger.warning("[CAPTURE] Chunk offset + length is greater than the recorded audio length. Clamping.")
            duration_s = recorded_s - offset_s

        start = math.floor(offset_s * self._sample_rate)
        count = math.ceil(duration_s * self._sample_rate)
        return self.get_chunk_samples(start, count)

    def get_chunk_samples(self, start: int, count: int) -> Optional[AudioChunk]:
        """Sample-exact variant of get_chunk(), same clamping rules."""
        total = self.recorded_samples
        start = max(0, start)
        if count <= 0 or start >= total:
            return None
        count = min(count, total - start)
        width = AUDIO_SAMPLE_WIDTH_BYTES
        pcm = bytes(self._buffer[start * width:(start + count) * width])
        return AudioChunk(
            pcm=pcm,
            sample_rate=self._sample_rate,
            offset_s=start / self._sample_rate,
            duration_s=count / self._sample_rate,
        )

    def _notify(self) -> None:
        # Wake every waiter of the current generation, later waiters get a fresh event.
        self._changed.set()
        self._changed = asyncio.Event()

    def _end_capture(self) -> None:
        self._capturing = False
        self._notify()

    def _finish_unexpectedly(self, reason: str) -> None:
        if not self._capturing:
            return
        self._end_capture()
        self._source_task = None
        logger.info("[CAPTURE] Recording ended: %s (%.2fs).", reason, self.recorded_seconds)
        self._on_timeout()

    def _fail(self, message: str) -> None:
        if not self._capturing:
            return
        self._end_capture()
        self._source_task = None
        logger.error("[CAPTURE] %s", message)
        self._on_error(message)

    async def _run_source(self) -> None:
        try:
            await self._source.run(self)
        except asyncio.CancelledError:
            raise
        except CaptureError as e:
            self._fail(str(e))
        except Exception as e:
            logger.exception("[CAPTURE] Source crashed: %r", e)
            self._fail(f"Capture source crashed: {e!r}")
        else:
            self._finish_unexpectedly("source exhausted")


@dataclass(frozen=True)
class WavFormat:
    """
    Description of wave format:
    - channels: Number of audio channels (1=mono, 2=stereo).
    - sample_width_bytes: Bytes per sample (1=8-bit, 2=16-bit, 4=32-bit).
    - sample_rate: Samples per second in Hz (e.g., 16000, 44100).
    - n_frames: Total number of audio frames in the file.
    - comptype: Compression type code ('NONE' for uncompressed PCM).
    - compname: Human-readable compression name ('not compressed' for PCM).
    """
    channels: int
    sample_width_bytes: int
    sample_rate: int
    n_frames: int
    comptype: str
    compname: str


def inspect_wav(path: Path) -> WavFormat:
    """Extract and return audio format metadata from a WAV file."""
    logger.debug("[WAV] analyzing file: %s", str(path))
    path = path.resolve()
    with wave.open(str(path), "rb") as wf:
        return WavFormat(channels=wf.getnchannels(), sample_width_bytes=wf.getsampwidth(),
                         sample_rate=wf.getframerate(), n_frames=wf.getnframes(), comptype=wf.getcomptype(),
                         compname=wf.getcompname(), )


def iter_wav_pcm_chunks(path: Path, *, chunk_ms: int, expected_sample_rate: int) -> Iterator[bytes]:
    """Yield raw PCM frames from a mono 16-bit PCM WAV file in fixed chunk sizes."""
    frames_per_chunk = int(expected_sample_rate * (chunk_ms / 1000.0))
    if frames_per_chunk <= 0:
        raise ValueError("chunk_ms too small")

    with wave.open(str(path), "rb") as wf:
        while True:
            data = wf.readframes(frames_per_chunk)
            if not data:
                break
            yield data


class WavFileSource:
    """
    Plays a WAV file into the capture as if it was recorded live.

    The file must be uncompressed, mono, 16-bit PCM at the capture sample rate.
    Silence is added before and after the audio: it helps VAD detect speech
    start/end, the first word is often cut off without it.

    realtime_factor:
      - 1.0 = real-time
      - 0.5 = 2x faster
      - 0.0 = no pacing sleep (still chunked)
    """

    def __init__(
            self,
            path: Path,
            *,
            chunk_ms: int = CHUNK_MS,
            realtime_factor: float = RECORDING_REALTIME_FACTOR,
            silence_s: float = RECORDING_SILENCE_S,
            expected_sample_rate: int = AUDIO_SAMPLE_RATE,
    ) -> None:
        self.path = path
        self.chunk_ms = chunk_ms
        self.realtime_factor = realtime_factor
        self.silence_s = silence_s
        self.expected_sample_rate = expected_sample_rate

    def validate(self) -> None:
        if not self.path.exists():
            raise CaptureError(f"WAV file not found: {self.path}")
        if not self.path.is_file():
            raise CaptureError(f"Path is not a file: {self.path}")
        if self.chunk_ms < 10 or self.chunk_ms > 5000:
            raise CaptureError(f"chunk_ms must be more than 10 ms and less than 5000 (5 seconds), got {self.chunk_ms}")

        try:
            fmt = inspect_wav(self.path)
        except (wave.Error, EOFError) as e:
            raise CaptureError(f"{self.path.name}: not a readable WAV file ({e})") from e
        logger.debug("[WAV] file: %s; format: %r", str(self.path), fmt)

        if fmt.comptype != "NONE":
            raise CaptureError(f"{self.path.name}: compressed WAV not supported (comptype={fmt.comptype} {fmt.compname})")
        if fmt.sample_rate != self.expected_sample_rate:
            raise CaptureError(f"{self.path.name}: sample_rate={fmt.sample_rate} expected={self.expected_sample_rate}")
        if fmt.channels != 1:
            raise CaptureError(f"{self.path.name}: channels={fmt.channels} expected=1")
        if fmt.sample_width_bytes != AUDIO_SAMPLE_WIDTH_BYTES:
            raise CaptureError(
                f"{self.path.name}: sample_width_bytes={fmt.sample_width_bytes} expected={AUDIO_SAMPLE_WIDTH_BYTES}")

    async def run(self, capture: CaptureService) -> None:
        chunk_s = self.chunk_ms / 1000.0
        await self._stream_silence(capture)

        cnt = 0
        for chunk in iter_wav_pcm_chunks(self.path, chunk_ms=self.chunk_ms,
                                         expected_sample_rate=self.expected_sample_rate):
            if not capture.is_capturing:
                logger.debug("[WAV] capture stopped after %d chunks.", cnt)
                return
            capture.append_audio(chunk)
            cnt += 1
            if cnt % 20 == 0:
                logger.debug("[WAV]: sent chunk %d.", cnt)
            await asyncio.sleep(chunk_s * self.realtime_factor)

        await self._stream_silence(capture)
        logger.info("[WAV] streaming done, sent %d chunks of %s.", cnt, self.path.name)

    async def _stream_silence(self, capture: CaptureService) -> None:
        if self.silence_s <= 0.0:
            return
        chunk_s = self.chunk_ms / 1000.0
        total_s = 0.0
        while total_s < self.silence_s and capture.is_capturing:
            capture.append_audio(make_silence_chunk(chunk_s, self.expected_sample_rate))
            await asyncio.sleep(chunk_s * self.realtime_factor)
            total_s += chunk_s
