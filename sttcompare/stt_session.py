"""
Transcription session: one recording-to-transcript run against one backend.

A session owns three tasks while it runs:

- capture loop: waits until a full chunk of audio is recorded and enqueues it
  into the ChunkPipeline; after capture stops it enqueues the remaining partial
  chunk and closes the pipeline.
- transmit loop: dequeues chunks in order and sends them to the adapter; once
  the pipeline is drained it calls ``end_audio()``.
- ingest loop: iterates adapter results, keeps the newest as ``last_result``
  and calls ``on_result`` listeners right away.

States::

    IDLE -> STREAMING -> DRAINING -> AWAITING_FINAL -> CLOSED
                 start()     stop()     audio flushed     terminal event + cleanup

After a successful ``stop()`` the listeners receive exactly one terminal
event: the first final result that arrives once all audio was sent, or, when the
backend is silent for ``session_timeout_after_done_recording_s`` (or closes its
result stream), the last result re-delivered as final. An error from the
capture or the adapter is a terminal event too and ends the session.
"""
from __future__ import annotations

import asyncio
from enum import Enum
from logging import getLogger
from typing import Callable, Optional

from config import CHUNK_MS, SESSION_TIMEOUT_AFTER_DONE_RECORDING_S
from sttcompare.audio_capture import CaptureService
from sttcompare.chunk_pipeline import ChunkPipeline
from sttcompare.listeners import Listeners
from sttcompare.stt_backend import BackendAdapter
from sttcompare.stt_errors import CaptureError, SttError
from sttcompare.stt_result import TranscriptResult

logger = getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    DRAINING = "draining"
    AWAITING_FINAL = "awaiting_final"
    CLOSED = "closed"


class FinishReason(Enum):
    """How the terminal event of a session came to be."""
    BACKEND_FINAL = "backend_final"
    TIMEOUT_EXCEEDED = "timeout_exceeded"
    ERROR = "error"


class TranscriptionSession:
    """
    Streams the shared capture to one backend and reconciles its results.

    The adapter_factory is called on every start(), so each run talks to a
    fresh adapter. All methods must be called from the event loop thread.
    """

    def __init__(
            self,
            name: str,
            adapter_factory: Callable[[], BackendAdapter],
            capture: CaptureService,
            *,
            chunk_length_s: float = CHUNK_MS / 1000.0,
            session_timeout_after_done_recording_s: float = SESSION_TIMEOUT_AFTER_DONE_RECORDING_S,
    ) -> None:
        if chunk_length_s <= 0:
            raise ValueError(f"chunk_length_s must be positive, got {chunk_length_s}")
        if session_timeout_after_done_recording_s < 0:
            raise ValueError(
                f"session_timeout_after_done_recording_s must not be negative, got {session_timeout_after_done_recording_s}")
        self._name = name
        self._adapter_factory = adapter_factory
        self._capture = capture
        self._chunk_length_s = chunk_length_s
        self._session_timeout_s = session_timeout_after_done_recording_s

        self._state = SessionState.IDLE
        self._last_result = TranscriptResult.from_text("", False)
        self._finish_reason: Optional[FinishReason] = None
        self._run_task: Optional[asyncio.Task] = None
        self._accepting_results = False
        self._terminal = asyncio.Event()
        self._closed = asyncio.Event()
        self._closed.set()

        self._on_result: Listeners[Callable[[TranscriptResult], None]] = Listeners(f"{name} result")
        self._on_error: Listeners[Callable[[str], None]] = Listeners(f"{name} error")
        self._on_recording_timeout: Listeners[Callable[[], None]] = Listeners(f"{name} recording timeout")

    def __repr__(self) -> str:
        return f"TranscriptionSession({self._name!r}, state={self._state.value})"

    # ---------------------------------------------------------------------------
    # Properties & listeners
    # ---------------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def last_result(self) -> TranscriptResult:
        return self._last_result

    @property
    def finish_reason(self) -> Optional[FinishReason]:
        """Set when the terminal event fires, reset by start()."""
        return self._finish_reason

    @property
    def is_recording(self) -> bool:
        return self._state is SessionState.STREAMING

    @property
    def capture(self) -> CaptureService:
        return self._capture

    def register_on_result(self, callback: Callable[[TranscriptResult], None]) -> None:
        self._on_result.add(callback)

    def unregister_on_result(self, callback: Callable[[TranscriptResult], None]) -> None:
        self._on_result.remove(callback)

    def register_on_error(self, callback: Callable[[str], None]) -> None:
        self._on_error.add(callback)

    def unregister_on_error(self, callback: Callable[[str], None]) -> None:
        self._on_error.remove(callback)

    def register_on_recording_timeout(self, callback: Callable[[], None]) -> None:
        self._on_recording_timeout.add(callback)

    def unregister_on_recording_timeout(self, callback: Callable[[], None]) -> None:
        self._on_recording_timeout.remove(callback)

    async def wait_closed(self) -> None:
        """Wait until the session is CLOSED and its adapter released."""
        await self._closed.wait()

    # ---------------------------------------------------------------------------
    # Control
    # ---------------------------------------------------------------------------

    def start(self) -> bool:
        """
        Start recording and streaming. Returns False if the session is already
        running or the capture could not be started (reported via on_error).
        """
        if self._state not in (SessionState.IDLE, SessionState.CLOSED):
            logger.warning("[SESSION] %s: start() ignored, session is %s.", self._name, self._state.value)
            return False
        asyncio.get_running_loop()  # fail early outside of a loop

        try:
            self._capture.start_capture()
        except CaptureError as e:
            logger.error("[SESSION] %s: cannot start capture: %s", self._name, e)
            self._on_error(str(e))
            return False

        adapter = self._adapter_factory()
        self._capture.register_on_timeout(self._on_capture_timeout)
        self._capture.register_on_error(self._on_capture_error)

        pipeline = ChunkPipeline()
        self._last_result = TranscriptResult.from_text("", False)
        self._finish_reason = None
        self._accepting_results = True
        self._terminal = asyncio.Event()
        self._closed = asyncio.Event()
        self._state = SessionState.STREAMING
        self._run_task = asyncio.create_task(self._run(adapter, pipeline), name=f"session-{self._name}")
        logger.info("[SESSION] %s: started.", self._name)
        return True

    def stop(self) -> bool:
        """
        Stop recording. Queued audio is still sent; the terminal event follows
        within session_timeout_after_done_recording_s of the flush.
        """
        if self._state is not SessionState.STREAMING:
            return False
        self._state = SessionState.DRAINING
        logger.info("[SESSION] %s: stopping, flushing remaining audio.", self._name)
        self._capture.stop_capture()
        return True

    # ---------------------------------------------------------------------------
    # Run
    # ---------------------------------------------------------------------------

    async def _run(self, adapter: BackendAdapter, pipeline: ChunkPipeline) -> None:
        capture_task = asyncio.create_task(self._capture_loop(pipeline), name=f"session-{self._name}-capture")
        tasks = [capture_task]
        try:
            async with adapter:
                ingest_task = asyncio.create_task(self._ingest_loop(adapter), name=f"session-{self._name}-ingest")
                transmit_task = asyncio.create_task(self._transmit_loop(adapter, pipeline),
                                                    name=f"session-{self._name}-transmit")
                tasks += [ingest_task, transmit_task]

                done, _ = await asyncio.wait({ingest_task, transmit_task}, return_when=asyncio.FIRST_COMPLETED)
                if transmit_task in done:
                    transmit_task.result()
                else:
                    # Result stream ended early: raise its error, or keep flushing audio.
                    ingest_task.result()
                    await transmit_task
                await capture_task
                await self._await_final(ingest_task)

        except SttError as e:
            self._fail(e)
        except Exception as e:
            logger.exception("[SESSION] %s: crashed: %r", self._name, e)
            self._fail(e)

        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._capture.unregister_on_timeout(self._on_capture_timeout)
            self._capture.unregister_on_error(self._on_capture_error)
            self._accepting_results = False
            self._state = SessionState.CLOSED
            self._closed.set()
            logger.info("[SESSION] %s: closed (%s).", self._name,
                        self._finish_reason.value if self._finish_reason else "no terminal event")

    async def _capture_loop(self, pipeline: ChunkPipeline) -> None:
        capture = self._capture
        chunk_samples = max(1, round(self._chunk_length_s * capture.sample_rate))
        offset = 0
        cnt = 0
        try:
            while True:
                recorded = await capture.wait_for_samples(offset + chunk_samples)
                if recorded >= offset + chunk_samples:
                    pipeline.enqueue(capture.get_chunk_samples(offset, chunk_samples))
                    offset += chunk_samples
                    cnt += 1
                    continue
                # capture stopped, the last chunk may be shorter
                if recorded > offset:
                    pipeline.enqueue(capture.get_chunk_samples(offset, recorded - offset))
                    offset = recorded
                    cnt += 1
                break
            # Capture stopped without our stop() (another session or the feeder): same as stop().
            if self._state is SessionState.STREAMING:
                self.stop()
        finally:
            pipeline.close()
        logger.debug("[SESSION] %s: captured %d chunks (%.2fs).", self._name, cnt, offset / capture.sample_rate)

    async def _transmit_loop(self, adapter: BackendAdapter, pipeline: ChunkPipeline) -> None:
        cnt = 0
        while (chunk := await pipeline.dequeue()) is not None:
            await adapter.send_chunk(chunk)
            cnt += 1
        logger.debug("[SESSION] %s: sent %d chunks, ending audio.", self._name, cnt)
        self._state = SessionState.AWAITING_FINAL
        await adapter.end_audio()

    async def _ingest_loop(self, adapter: BackendAdapter) -> None:
        async for result in adapter.results():
            self._ingest(result)
        logger.debug("[SESSION] %s: result stream ended.", self._name)

    async def _await_final(self, ingest_task: asyncio.Task) -> None:
        self._state = SessionState.AWAITING_FINAL
        if self._terminal.is_set():
            return

        terminal_wait = asyncio.create_task(self._terminal.wait())
        try:
            done, _ = await asyncio.wait({terminal_wait, ingest_task}, timeout=self._session_timeout_s,
                                         return_when=asyncio.FIRST_COMPLETED)
        finally:
            terminal_wait.cancel()

        if self._terminal.is_set():
            return
        if ingest_task in done:
            ingest_task.result()
        self._force_final()

    # ---------------------------------------------------------------------------
    # Results & terminal events
    # ---------------------------------------------------------------------------

    def _ingest(self, result: TranscriptResult) -> None:
        if not self._accepting_results:
            logger.debug("[SESSION] %s: dropping result after terminal event: %r", self._name, result.text)
            return
        self._last_result = result
        # Finals sent while audio is still flushing are not terminal.
        if self._state is SessionState.AWAITING_FINAL and result.is_final:
            self._accepting_results = False
            self._finish_reason = FinishReason.BACKEND_FINAL
            self._terminal.set()
            logger.debug("[SESSION] %s: final result after end of audio: %r", self._name, result.text)
        self._on_result(result)

    def _force_final(self) -> None:
        if self._terminal.is_set():
            return
        self._accepting_results = False
        self._finish_reason = FinishReason.TIMEOUT_EXCEEDED
        self._terminal.set()
        self._last_result = self._last_result.as_final()
        logger.info("[SESSION] %s: no final result within %.1fs after recording stopped, using last result %r.",
                    self._name, self._session_timeout_s, self._last_result.text)
        self._on_result(self._last_result)

    def _fail(self, error: Exception) -> None:
        if self._terminal.is_set():
            logger.warning("[SESSION] %s: error after terminal event ignored: %s", self._name, error)
            return
        self._accepting_results = False
        self._finish_reason = FinishReason.ERROR
        self._terminal.set()
        logger.error("[SESSION] %s: %s", self._name, error)
        self._on_error(str(error))

    def _on_capture_timeout(self) -> None:
        if self._state is not SessionState.STREAMING:
            return
        logger.info("[SESSION] %s: recording timed out.", self._name)
        self.stop()
        self._on_recording_timeout()

    def _on_capture_error(self, message: str) -> None:
        if self._state not in (SessionState.STREAMING, SessionState.DRAINING):
            return
        self._fail(CaptureError(message))
        self.stop()
