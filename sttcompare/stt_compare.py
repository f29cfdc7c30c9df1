"""
Side-by-side comparison of several transcription sessions on one recording.

``start_all()`` starts every session; ``stop_all()`` stops them and arms one
shared timer of ``responses_timeout_s``. Each session leaves the waiting set
with its terminal event (the final result after its audio was sent, or any
error). The comparison finishes once, when the waiting set is empty or the
timer fires, whichever comes first. Sessions still waiting at that point are
abandoned and anything they send later is ignored.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from logging import getLogger
from typing import Callable, Optional, Sequence

from config import RESPONSES_TIMEOUT_S
from sttcompare.listeners import Listeners
from sttcompare.stt_result import TranscriptResult
from sttcompare.stt_session import FinishReason, SessionState, TranscriptionSession
from sttcompare.text_accuracy import accuracy_percentage

logger = getLogger(__name__)


@dataclass(frozen=True)
class SessionReport:
    """
    What one session produced during a comparison.

    Attributes:
        name: Session (backend) name.
        transcript: Final texts joined by spaces.
        interim_text: Newest interim text not yet followed by a final one.
        error: Error message if the session failed.
        finish_reason: How the session ended, None if it was abandoned.
        response_time_s: Seconds from stop_all() to the terminal event,
            None if there was none after the stop.
        accuracy: Accuracy against the comparison phrase in percent, if a phrase was given.
    """
    name: str
    transcript: str = ""
    interim_text: str = ""
    error: Optional[str] = None
    finish_reason: Optional[FinishReason] = None
    response_time_s: Optional[float] = None
    accuracy: Optional[float] = None

    @property
    def text(self) -> str:
        """Everything the session transcribed, finals followed by a pending interim."""
        return " ".join(t for t in (self.transcript, self.interim_text) if t)

    @property
    def responded(self) -> bool:
        return self.finish_reason is not None


@dataclass(frozen=True)
class ComparisonOutcome:
    phrase: Optional[str]
    reports: tuple[SessionReport, ...]
    timed_out: bool = False
    abandoned: tuple[str, ...] = field(default_factory=tuple)

    def report(self, name: str) -> SessionReport:
        for r in self.reports:
            if r.name == name:
                return r
        raise KeyError(name)


class _SessionTracker:
    """Per-session bookkeeping of one comparison run."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.finals: list[str] = []
        self.interim = ""
        self.last_result: Optional[TranscriptResult] = None
        self.error: Optional[str] = None
        self.finish_reason: Optional[FinishReason] = None
        self.responded_at: Optional[float] = None


def _check_phrase(phrase: Optional[str]) -> None:
    if phrase is not None and not isinstance(phrase, str):
        raise TypeError(f"comparison phrase must be a string or None, got {type(phrase).__name__}")


class ComparisonOrchestrator:
    """
    Runs the same recording through several sessions and joins their results.

    Sessions may share one CaptureService (the usual setup) or each have their
    own. The orchestrator registers its listeners on construction; call
    ``close()`` to unregister them.
    """

    def __init__(
            self,
            sessions: Sequence[TranscriptionSession],
            *,
            responses_timeout_s: float = RESPONSES_TIMEOUT_S,
    ) -> None:
        names = [s.name for s in sessions]
        if len(set(names)) != len(names):
            raise ValueError(f"Session names must be unique, got {names}")
        if responses_timeout_s < 0:
            raise ValueError(f"responses_timeout_s must not be negative, got {responses_timeout_s}")

        self._sessions = list(sessions)
        self._by_name = {s.name: s for s in self._sessions}
        self._responses_timeout_s = responses_timeout_s

        self._trackers: dict[str, _SessionTracker] = {}
        self._waiting: set[str] = set()
        # Sessions taking part in the current comparison; callbacks from others are ignored.
        self._participants: set[str] = set()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._is_active = False
        self._is_recording = False
        self._stop_called = False
        self._timed_out = False
        self._phrase: Optional[str] = None
        self._stopped_at: Optional[float] = None
        self._finished: Optional[asyncio.Future] = None
        self._outcome: Optional[ComparisonOutcome] = None
        self._on_finished: Listeners[Callable[[ComparisonOutcome], None]] = Listeners("comparison finished")

        self._callbacks: dict[str, tuple[Callable, Callable, Callable]] = {}
        for s in self._sessions:
            callbacks = self._make_callbacks(s.name)
            self._callbacks[s.name] = callbacks
            on_result, on_error, on_recording_timeout = callbacks
            s.register_on_result(on_result)
            s.register_on_error(on_error)
            s.register_on_recording_timeout(on_recording_timeout)

    def _make_callbacks(self, name: str) -> tuple[Callable, Callable, Callable]:
        def on_result(result: TranscriptResult) -> None:
            self._on_session_result(name, result)

        def on_error(message: str) -> None:
            self._on_session_error(name, message)

        def on_recording_timeout() -> None:
            logger.info("[COMPARE] %s: recording timed out, stopping all sessions.", name)
            self.stop_all()

        return on_result, on_error, on_recording_timeout

    # ---------------------------------------------------------------------------
    # Properties
    # ---------------------------------------------------------------------------

    @property
    def sessions(self) -> tuple[TranscriptionSession, ...]:
        return tuple(self._sessions)

    @property
    def is_active(self) -> bool:
        return self._is_active

    @property
    def is_recording(self) -> bool:
        return self._is_recording

    @property
    def waiting(self) -> frozenset[str]:
        return frozenset(self._waiting)

    @property
    def outcome(self) -> Optional[ComparisonOutcome]:
        """Outcome of the last finished comparison."""
        return self._outcome

    def register_on_finished(self, callback: Callable[[ComparisonOutcome], None]) -> None:
        self._on_finished.add(callback)

    def unregister_on_finished(self, callback: Callable[[ComparisonOutcome], None]) -> None:
        self._on_finished.remove(callback)

    # ---------------------------------------------------------------------------
    # Control
    # ---------------------------------------------------------------------------

    def start_all(self, comparison_phrase: Optional[str] = None) -> bool:
        """
        Start every session. Returns False if a comparison is already active or
        a session of the previous one is still closing (see wait_sessions_closed()).

        comparison_phrase is used when stop_all() is called without one (for
        example when the recording times out).
        """
        _check_phrase(comparison_phrase)
        if self._is_active:
            logger.warning("[COMPARE] start_all() ignored, comparison already active.")
            return False
        busy = [s.name for s in self._sessions if s.state not in (SessionState.IDLE, SessionState.CLOSED)]
        if busy:
            logger.warning("[COMPARE] start_all() ignored, still closing: %s", ", ".join(busy))
            return False

        loop = asyncio.get_running_loop()
        self._trackers = {s.name: _SessionTracker(s.name) for s in self._sessions}
        self._waiting.clear()
        self._stop_called = False
        self._timed_out = False
        self._phrase = comparison_phrase
        self._stopped_at = None
        self._outcome = None
        self._finished = loop.create_future()
        self._is_active = True
        self._is_recording = True

        self._participants = {s.name for s in self._sessions}
        for s in self._sessions:
            if s.start():
                self._waiting.add(s.name)
            else:
                tracker = self._trackers[s.name]
                tracker.error = tracker.error or "session failed to start"
                self._participants.discard(s.name)
                logger.warning("[COMPARE] %s: not started: %s", s.name, tracker.error)

        logger.info("[COMPARE] Started %d/%d sessions.", len(self._waiting), len(self._sessions))
        return True

    def stop_all(self, comparison_phrase: Optional[str] = None) -> bool:
        """
        Stop recording in every session and start waiting for their last responses.

        Returns False if the comparison is not recording.
        """
        _check_phrase(comparison_phrase)
        if not self._is_recording:
            return False
        self._is_recording = False
        self._stop_called = True
        if comparison_phrase is not None:
            self._phrase = comparison_phrase

        loop = asyncio.get_running_loop()
        self._stopped_at = loop.time()
        self._timer = loop.call_later(self._responses_timeout_s, self._on_responses_timeout)

        for s in self._sessions:
            s.stop()
        captures = {id(s.capture): s.capture for s in self._sessions}
        for capture in captures.values():
            capture.stop_capture()

        logger.info("[COMPARE] Recording stopped, waiting up to %.1fs for: %s",
                    self._responses_timeout_s, ", ".join(sorted(self._waiting)) or "nobody")
        if not self._waiting:
            self.finish_comparison()
        return True

    def finish_comparison(self) -> Optional[ComparisonOutcome]:
        """
        End the comparison now. Idempotent: only the first call builds and
        publishes the outcome, later calls return None.
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self._is_active:
            return None
        self._is_active = False
        self._is_recording = False

        abandoned = tuple(s.name for s in self._sessions if s.name in self._waiting)
        self._waiting.clear()
        try:
            outcome = ComparisonOutcome(
                phrase=self._phrase,
                reports=tuple(self._build_report(s.name, s.name in abandoned) for s in self._sessions),
                timed_out=self._timed_out,
                abandoned=abandoned,
            )
        except Exception as e:
            logger.exception("[COMPARE] Cannot build the comparison outcome: %r", e)
            # wait_finished() raises instead of hanging
            if self._finished is not None and not self._finished.done():
                self._finished.set_exception(e)
            raise
        self._outcome = outcome

        if abandoned:
            logger.info("[COMPARE] Finished, no response from: %s", ", ".join(abandoned))
        else:
            logger.info("[COMPARE] Finished, responses from everyone.")
        self._on_finished(outcome)
        if self._finished is not None and not self._finished.done():
            self._finished.set_result(outcome)
        return outcome

    async def wait_finished(self) -> ComparisonOutcome:
        """Wait for the current (or last) comparison to finish."""
        if self._finished is None:
            raise RuntimeError("No comparison was started")
        return await asyncio.shield(self._finished)

    async def wait_sessions_closed(self) -> None:
        await asyncio.gather(*(s.wait_closed() for s in self._sessions))

    def close(self) -> None:
        """Unregister from all sessions. The orchestrator cannot be used afterwards."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for s in self._sessions:
            on_result, on_error, on_recording_timeout = self._callbacks[s.name]
            s.unregister_on_result(on_result)
            s.unregister_on_error(on_error)
            s.unregister_on_recording_timeout(on_recording_timeout)
        self._on_finished.clear()

    # ---------------------------------------------------------------------------
    # Session events
    # ---------------------------------------------------------------------------

    def _on_session_result(self, name: str, result: TranscriptResult) -> None:
        if not self._is_active or name not in self._participants:
            logger.debug("[COMPARE] %s: late result ignored: %r", name, result.text)
            return
        tracker = self._trackers[name]
        session = self._by_name[name]
        text = result.text.strip()

        if result.is_final:
            # A timeout fallback re-delivers a final that is already counted.
            if text and result is not tracker.last_result:
                tracker.finals.append(text)
            tracker.interim = ""
        else:
            tracker.interim = text
        tracker.last_result = result

        if result.is_final and session.finish_reason is not None:
            self._session_done(name, session.finish_reason)

    def _on_session_error(self, name: str, message: str) -> None:
        if not self._is_active or name not in self._participants:
            logger.debug("[COMPARE] %s: late error ignored: %s", name, message)
            return
        self._trackers[name].error = message
        self._session_done(name, FinishReason.ERROR)

    def _session_done(self, name: str, reason: FinishReason) -> None:
        if name not in self._waiting:
            return
        self._waiting.discard(name)
        tracker = self._trackers[name]
        tracker.finish_reason = reason
        tracker.responded_at = asyncio.get_running_loop().time()
        logger.info("[COMPARE] Response from %s (%s).", name, reason.value)

        if not self._waiting and self._stop_called:
            self.finish_comparison()

    def _on_responses_timeout(self) -> None:
        self._timer = None
        if not self._is_active:
            return
        logger.info("[COMPARE] Responses timeout (%.1fs) elapsed.", self._responses_timeout_s)
        self._timed_out = True
        self.finish_comparison()

    def _build_report(self, name: str, abandoned: bool) -> SessionReport:
        tracker = self._trackers[name]
        report = SessionReport(
            name=name,
            transcript=" ".join(tracker.finals),
            interim_text=tracker.interim,
            error=tracker.error,
            finish_reason=None if abandoned else tracker.finish_reason,
        )

        if (tracker.responded_at is not None and self._stopped_at is not None
                and tracker.responded_at >= self._stopped_at):
            report = replace(report, response_time_s=tracker.responded_at - self._stopped_at)
        if self._phrase is not None and report.error is None and not abandoned:
            report = replace(report, accuracy=accuracy_percentage(report.text, self._phrase))
        return report
