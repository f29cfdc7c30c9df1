"""
Scripted backend: replays prepared results instead of calling a vendor.

Used by the test-suite and for offline runs of the comparison runner. Every
step of the script fires once its trigger is reached (number of chunks
received, optionally end of audio) plus an optional delay, in script order.
Once the audio has ended, steps still waiting for more chunks fire too.
The adapter records everything it received, so tests can check the chunk
order and the adapter lifecycle.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from logging import getLogger
from typing import AsyncIterator, Optional, Sequence

from sttcompare.chunk_pipeline import AudioChunk
from sttcompare.stt_backend import ResultQueue
from sttcompare.stt_errors import TransportError
from sttcompare.stt_result import TranscriptResult

logger = getLogger(__name__)


@dataclass(frozen=True)
class ScriptedStep:
    """
    One scripted event: a result to yield or an error that ends the result stream.

    Attributes:
        result: Result to yield.
        error: Error raised from results(), ending it.
        after_chunks: Fire once at least this many chunks were received (or audio ended).
        after_end: Fire only after end_audio().
        delay_s: Extra delay once the trigger is reached.
    """
    result: Optional[TranscriptResult] = None
    error: Optional[Exception] = None
    after_chunks: int = 0
    after_end: bool = False
    delay_s: float = 0.0

    def __post_init__(self) -> None:
        if (self.result is None) == (self.error is None):
            raise ValueError("ScriptedStep needs exactly one of result or error")

    @classmethod
    def interim(cls, text: str, **kwargs) -> "ScriptedStep":
        return cls(result=TranscriptResult.from_text(text, is_final=False), **kwargs)

    @classmethod
    def final(cls, text: str, **kwargs) -> "ScriptedStep":
        return cls(result=TranscriptResult.from_text(text, is_final=True), **kwargs)

    @classmethod
    def fail(cls, message: str, **kwargs) -> "ScriptedStep":
        return cls(error=TransportError(message), **kwargs)


def echo_script(phrase: str) -> list[ScriptedStep]:
    """A backend that "hears" phrase word by word and commits it after end of audio."""
    words = phrase.split()
    steps = [ScriptedStep.interim(" ".join(words[:i]), after_chunks=i) for i in range(1, len(words) + 1)]
    steps.append(ScriptedStep.final(" ".join(words), after_end=True))
    return steps


class ScriptedAdapter:
    """
    In-memory BackendAdapter.

    - steps: the script, played in order.
    - close_after_script: end the result stream after the last step;
      otherwise it stays open (a silent backend) until the adapter is closed.
    - send_delay_s: time each send_chunk() takes, like a slow uplink.
    - send_error / send_error_at_chunk: make send_chunk() raise on that chunk (1-based).
    - enter_error: make connecting fail.
    """

    def __init__(
            self,
            steps: Sequence[ScriptedStep] = (),
            *,
            interim_results: bool = True,
            close_after_script: bool = False,
            send_delay_s: float = 0.0,
            send_error: Optional[Exception] = None,
            send_error_at_chunk: int = 1,
            enter_error: Optional[Exception] = None,
    ) -> None:
        self.interim_results = interim_results
        self._steps = list(steps)
        self._close_after_script = close_after_script
        self._send_delay_s = send_delay_s
        self._send_error = send_error
        self._send_error_at_chunk = send_error_at_chunk
        self._enter_error = enter_error

        self.chunks: list[AudioChunk] = []
        self.opened = False
        self.closed = False
        self.audio_ended = False
        self._results = ResultQueue()
        self._progress = asyncio.Condition()
        self._player: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "ScriptedAdapter":
        if self._enter_error is not None:
            raise self._enter_error
        self.opened = True
        self._player = asyncio.create_task(self._play())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.closed = True
        if self._player is not None:
            self._player.cancel()
            await asyncio.gather(self._player, return_exceptions=True)
            self._player = None
        self._results.close()

    async def send_chunk(self, chunk: AudioChunk) -> None:
        if self.audio_ended:
            raise TransportError("Scripted: audio already ended")
        if self._send_error is not None and len(self.chunks) + 1 >= self._send_error_at_chunk:
            raise self._send_error
        if self._send_delay_s > 0:
            await asyncio.sleep(self._send_delay_s)
        self.chunks.append(chunk)
        await self._notify()

    async def end_audio(self) -> None:
        self.audio_ended = True
        await self._notify()

    def results(self) -> AsyncIterator[TranscriptResult]:
        return aiter(self._results)

    @property
    def pcm(self) -> bytes:
        """Everything received, in order."""
        return b"".join(c.pcm for c in self.chunks)

    async def _notify(self) -> None:
        async with self._progress:
            self._progress.notify_all()

    def _ready(self, step: ScriptedStep) -> bool:
        # No more chunks come after end_audio(), so every remaining step fires.
        if self.audio_ended:
            return True
        return not step.after_end and len(self.chunks) >= step.after_chunks

    async def _play(self) -> None:
        for step in self._steps:
            async with self._progress:
                await self._progress.wait_for(lambda: self._ready(step))
            if step.delay_s > 0:
                await asyncio.sleep(step.delay_s)
            if step.error is not None:
                logger.debug("[STT] Scripted: failing with %r", step.error)
                self._results.close(step.error)
                return
            logger.debug("[STT] Scripted: %s result %r", "final" if step.result.is_final else "interim",
                         step.result.text)
            self._results.put(step.result)
        if self._close_after_script:
            self._results.close()
