"""
Chunk pipeline: hands captured audio chunks from the capture loop to the
transmission loop of a session.

Both loops run on the same event loop: the capture loop only calls
``enqueue``/``close``, the transmission loop only ``dequeue``. The queue is
unbounded, recording length is capped upstream by the capture service.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class AudioChunk:
    """
    A slice of recorded audio.

    Attributes:
        pcm: Raw 16-bit little-endian mono samples.
        sample_rate: Samples per second.
        offset_s: Start of the chunk within the recording.
        duration_s: Length of the chunk (the last chunk of a recording may be shorter).
    """
    pcm: bytes
    sample_rate: int
    offset_s: float
    duration_s: float

    @property
    def num_samples(self) -> int:
        return len(self.pcm) // 2


class ChunkPipeline:
    """FIFO of whole audio chunks with a suspending consumer side."""

    def __init__(self) -> None:
        # None is the end-of-stream sentinel, put by close().
        self._queue: asyncio.Queue[Optional[AudioChunk]] = asyncio.Queue()
        self._closed = False
        self._drained = False

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(self, chunk: AudioChunk) -> None:
        """Queue a chunk. The pipeline owns it until a consumer takes it."""
        if self._closed:
            raise RuntimeError("ChunkPipeline is closed, cannot enqueue more chunks")
        self._queue.put_nowait(chunk)

    def try_dequeue(self) -> Optional[AudioChunk]:
        """Take the oldest chunk if one is ready, never waits."""
        if self._drained:
            return None
        try:
            chunk = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if chunk is None:
            self._drained = True
        return chunk

    async def dequeue(self) -> Optional[AudioChunk]:
        """
        Wait for the next chunk.

        Returns None once the pipeline was closed and every queued chunk has
        been taken.
        """
        if self._drained:
            return None
        chunk = await self._queue.get()
        if chunk is None:
            self._drained = True
        return chunk

    def count(self) -> int:
        """Number of chunks waiting to be taken."""
        size = self._queue.qsize()
        if self._closed and not self._drained:
            size -= 1  # sentinel
        return size

    def close(self) -> None:
        """No more chunks will be enqueued. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)
