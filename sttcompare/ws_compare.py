"""
WebSocket comparison gateway.

A client streams microphone PCM over ``/ws/compare`` and controls the
comparison with JSON text frames; every configured backend transcribes the
same audio and the results are streamed back as they arrive.

Client -> server:
  - binary frame: 16 kHz mono 16-bit PCM, appended to the recording
  - {"type": "start", "phrase": str | null}
  - {"type": "stop", "phrase": str | null}

Server -> client:
  - {"type": "started", "backends": [...]}
  - {"type": "result", "backend", "text", "is_final"}
  - {"type": "error", "backend", "message"}
  - {"type": "recording_timeout"}
  - {"type": "finished", "phrase", "timed_out", "abandoned", "reports": [...]}

Run with ``python -m sttcompare.ws_compare``.
"""
from __future__ import annotations

import asyncio
from json import loads
from logging import getLogger
from typing import Any, Optional, Sequence

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from config import GATEWAY_HOST, GATEWAY_PORT, RESPONSES_TIMEOUT_S, SESSION_TIMEOUT_AFTER_DONE_RECORDING_S
from sttcompare.audio_capture import CaptureService
from sttcompare.stt_backend_registry import BackendSpec, build_backend_specs, build_sessions
from sttcompare.stt_compare import ComparisonOrchestrator, ComparisonOutcome
from sttcompare.stt_result import TranscriptResult

logger = getLogger(__name__)


def outcome_to_dict(outcome: ComparisonOutcome) -> dict[str, Any]:
    return {
        "type": "finished",
        "phrase": outcome.phrase,
        "timed_out": outcome.timed_out,
        "abandoned": list(outcome.abandoned),
        "reports": [
            {
                "backend": r.name,
                "text": r.text,
                "transcript": r.transcript,
                "interim_text": r.interim_text,
                "error": r.error,
                "finish_reason": r.finish_reason.value if r.finish_reason else None,
                "response_time_s": r.response_time_s,
                "accuracy": r.accuracy,
            }
            for r in outcome.reports
        ],
    }


class ComparisonConnection:
    """
    One client connection: its own capture, sessions and orchestrator.

    Session events are turned into JSON messages and queued; a sender task
    writes them to the socket in order.
    """

    def __init__(
            self,
            ws: WebSocket,
            specs: Sequence[BackendSpec],
            *,
            session_timeout_s: float,
            responses_timeout_s: float,
    ) -> None:
        self._ws = ws
        self._outbound: asyncio.Queue[Optional[dict[str, Any]]] = asyncio.Queue()
        self.capture = CaptureService()
        self.sessions = build_sessions(specs, self.capture,
                                       session_timeout_after_done_recording_s=session_timeout_s)
        # Registered before the orchestrator, so the client gets the last result before "finished".
        for s in self.sessions:
            s.register_on_result(lambda result, name=s.name: self._on_result(name, result))
            s.register_on_error(lambda message, name=s.name: self._on_error(name, message))
        self.orchestrator = ComparisonOrchestrator(self.sessions, responses_timeout_s=responses_timeout_s)
        # The recording ran out (max length): sessions stop themselves, the client only needs to know.
        self.capture.register_on_timeout(self._on_recording_timeout)
        self.orchestrator.register_on_finished(lambda outcome: self._send(outcome_to_dict(outcome)))

    def _send(self, message: dict[str, Any]) -> None:
        self._outbound.put_nowait(message)

    def _on_result(self, name: str, result: TranscriptResult) -> None:
        self._send({"type": "result", "backend": name, "text": result.text, "is_final": result.is_final})

    def _on_error(self, name: Optional[str], message: str) -> None:
        self._send({"type": "error", "backend": name, "message": message})

    def _on_recording_timeout(self) -> None:
        self._send({"type": "recording_timeout"})

    async def run(self) -> None:
        sender = asyncio.create_task(self._sender())
        try:
            await self._receiver()
        finally:
            await self._shutdown()
            self._outbound.put_nowait(None)
            await asyncio.gather(sender, return_exceptions=True)

    async def _sender(self) -> None:
        while (message := await self._outbound.get()) is not None:
            try:
                await self._ws.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.info("[WS] cannot send to client (%r), dropping outbound messages.", e)
                return

    async def _receiver(self) -> None:
        """
        Reads from the WebSocket: binary frames are audio, text frames are controls.
        Audio arriving while not recording is dropped.
        """
        try:
            logger.info("[WS] Client connected.")
            while True:
                msg = await self._ws.receive()
                if msg.get("type") == "websocket.disconnect":
                    logger.info("[WS] Client disconnected.")
                    return

                # mic
                if msg.get("bytes") is not None:
                    self.capture.append_audio(msg["bytes"])

                # controls
                elif msg.get("text") is not None:
                    await self._handle_control(msg["text"])

        except WebSocketDisconnect:
            logger.info("[WS] Client disconnected.")

    async def _handle_control(self, text: str) -> None:
        try:
            data = loads(text)
            msg_type = data.get("type")
            phrase = data.get("phrase")
        except (ValueError, AttributeError):
            logger.warning("[WS] Invalid control message: %.200r", text)
            self._on_error(None, "invalid control message")
            return
        if phrase is not None and not isinstance(phrase, str):
            logger.warning("[WS] Invalid phrase in control message: %.200r", text)
            self._on_error(None, "phrase must be a string or null")
            return

        logger.info("[WS] Control from client: %s", msg_type)
        if msg_type == "start":
            if not self.orchestrator.is_active:
                # sessions abandoned by the previous comparison may still be closing
                await self.orchestrator.wait_sessions_closed()
            if self.orchestrator.start_all(comparison_phrase=phrase):
                self._send({"type": "started", "backends": [s.name for s in self.sessions]})
            else:
                self._on_error(None, "comparison already running")
        elif msg_type == "stop":
            if not self.orchestrator.stop_all(comparison_phrase=phrase):
                self._on_error(None, "not recording")
        else:
            self._on_error(None, f"unknown control message type: {msg_type!r}")

    async def _shutdown(self) -> None:
        if self.orchestrator.is_recording:
            self.orchestrator.stop_all()
        self.orchestrator.finish_comparison()
        await self.orchestrator.wait_sessions_closed()
        self.orchestrator.close()


def create_app(
        specs: Optional[Sequence[BackendSpec]] = None,
        *,
        session_timeout_s: float = SESSION_TIMEOUT_AFTER_DONE_RECORDING_S,
        responses_timeout_s: float = RESPONSES_TIMEOUT_S,
) -> FastAPI:
    """FastAPI app comparing the backends in specs (default: all configured ones)."""
    specs = list(build_backend_specs() if specs is None else specs)
    app = FastAPI(title="STT session compare")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "backends": [s.name for s in specs]}

    @app.websocket("/ws/compare")
    async def ws_compare(ws: WebSocket) -> None:
        await ws.accept()
        if not specs:
            await ws.send_json({"type": "error", "backend": None, "message": "no backends configured"})
            await ws.close()
            return
        connection = ComparisonConnection(ws, specs, session_timeout_s=session_timeout_s,
                                          responses_timeout_s=responses_timeout_s)
        await connection.run()

    return app


if __name__ == "__main__":
    from sttcompare.utils import setup_logging

    setup_logging()
    uvicorn.run(create_app(), host=GATEWAY_HOST, port=GATEWAY_PORT)
