"""
Backend Adapter Protocol: the interface every transcription backend implements.

All adapters (Deepgram, ElevenLabs, Google, Wit.ai, the scripted one used
offline) conform to the BackendAdapter protocol defined here. The protocol uses
structural typing (typing.Protocol), so adapters do not need to inherit from
it, they just need to implement the required methods.

Lifecycle
---------
An adapter instance goes through three phases:

1. **Construction**: instantiate with a backend-specific frozen dataclass
   config (API key, model, language, etc.). No network calls happen here.
   Sessions get their adapters from a zero-argument factory, so every
   ``TranscriptionSession.start()`` uses a fresh instance.

2. **Connection** (async context manager): entering the context opens the
   connection (WebSocket, gRPC stream, HTTP client). Exiting the context
   tears it down. The session enters and exits exactly once per run, on
   every exit path.

3. **Streaming**: within the connection, two concurrent operations run:

   - ``send_chunk(chunk)``: feed an ``AudioChunk`` (16 kHz, mono, 16-bit PCM).
     Chunks arrive in capture order. Call ``end_audio()`` once when all audio
     has been sent. Transport failures raise ``TransportError``.
   - ``results()``: async iterator yielding ``TranscriptResult`` objects.
     Interim hypotheses have ``is_final=False``; committed segments have
     ``is_final=True``. Zero or more results may follow any chunk. The
     iterator ends when the backend closes, and raises ``TransportError`` or
     ``ProtocolError`` on failure.

Malformed payloads
------------------
A single payload that cannot be interpreted is logged and skipped. Adapters
count them with ``ProtocolErrorTracker`` and raise ``ProtocolError`` only after
``STT_MAX_CONSECUTIVE_PROTOCOL_ERRORS`` malformed payloads in a row.

Implementing a new backend
--------------------------
1. Create ``sttcompare/stt_backend_<name>.py``.

2. Define a frozen ``@dataclass`` config with at least the credentials and any
   backend-specific settings (model, URL overrides, VAD params). Universal
   audio settings (sample rate, language) should default to values from
   ``config.py``.

3. Write pure ``parse_*`` functions turning vendor payloads into
   ``TranscriptResult`` (or None for payloads without a transcript), so they
   can be unit tested without a network.

4. Implement a class satisfying this protocol::

       class MyAdapter:
           interim_results = True

           def __init__(self, config: MyConfig) -> None: ...

           async def __aenter__(self) -> "MyAdapter":
               # Open WebSocket / gRPC channel.
               return self

           async def __aexit__(self, exc_type, exc, tb) -> None:
               # Close connection.
               ...

           async def send_chunk(self, chunk: AudioChunk) -> None:
               # Forward chunk.pcm to the backend (binary or base64).
               ...

           async def end_audio(self) -> None:
               # Signal end-of-audio (backend-specific close message).
               ...

           def results(self) -> AsyncIterator[TranscriptResult]:
               # Yield TranscriptResult for each backend message.
               ...

   Most adapters use an internal ``asyncio.Queue`` fed by a background
   receiver task, with ``results()`` draining it (see ``ResultQueue``).

5. Register it in ``sttcompare/stt_backend_registry.py``.
"""

from __future__ import annotations

import asyncio
from logging import getLogger
from typing import AsyncIterator, Optional, Protocol

from config import STT_MAX_CONSECUTIVE_PROTOCOL_ERRORS
from sttcompare.chunk_pipeline import AudioChunk
from sttcompare.stt_errors import ProtocolError
from sttcompare.stt_result import TranscriptResult

logger = getLogger(__name__)


class BackendAdapter(Protocol):
    """
    Structural protocol for transcription backends.

    Any class implementing these methods is a valid adapter, no
    inheritance required. See the module docstring for lifecycle details
    and implementation guidance.
    """
    interim_results: bool

    async def __aenter__(self) -> "BackendAdapter": ...
    async def __aexit__(self, exc_type, exc, tb) -> None: ...

    async def send_chunk(self, chunk: AudioChunk) -> None: ...
    async def end_audio(self) -> None: ...

    def results(self) -> AsyncIterator[TranscriptResult]: ...


class ProtocolErrorTracker:
    """Counts consecutive malformed payloads of one connection."""

    def __init__(self, backend: str, max_consecutive: int = STT_MAX_CONSECUTIVE_PROTOCOL_ERRORS) -> None:
        self._backend = backend
        self._max_consecutive = max_consecutive
        self._consecutive = 0

    @property
    def consecutive(self) -> int:
        return self._consecutive

    def ok(self) -> None:
        self._consecutive = 0

    def malformed(self, reason: str, payload: object = None) -> None:
        """Log a malformed payload, raise ProtocolError once the limit is hit."""
        self._consecutive += 1
        logger.warning("[STT] %s: malformed payload (%d in a row): %s; payload=%.200r",
                       self._backend, self._consecutive, reason, payload)
        if self._consecutive >= self._max_consecutive:
            raise ProtocolError(
                f"{self._backend}: {self._consecutive} malformed payloads in a row, last: {reason}")


class ResultQueue:
    """
    Hands results from an adapter's receiver task to ``results()``.

    ``close(error)`` ends the iteration; when an error is given it is raised
    to the consumer after all queued results.
    """

    def __init__(self) -> None:
        self._q: asyncio.Queue[Optional[TranscriptResult]] = asyncio.Queue()
        self._closed = False
        self._error: Optional[Exception] = None

    @property
    def error(self) -> Optional[Exception]:
        return self._error

    def put(self, result: TranscriptResult) -> None:
        if self._closed:
            logger.debug("[STT] result after close dropped: %r", result)
            return
        self._q.put_nowait(result)

    def close(self, error: Optional[Exception] = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._error = error
        self._q.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[TranscriptResult]:
        while True:
            result = await self._q.get()
            if result is None:
                if self._error is not None:
                    raise self._error
                return
            yield result
