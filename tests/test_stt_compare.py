"""
Tests for the comparison orchestrator.

Several scripted sessions share one capture fed directly with PCM.

    pytest tests/test_stt_compare.py -v
"""
from __future__ import annotations

import asyncio
import unittest
from unittest import mock
from typing import Sequence

from sttcompare.audio_capture import CaptureService
from sttcompare.stt_backend_scripted import ScriptedAdapter, ScriptedStep
from sttcompare.stt_compare import ComparisonOrchestrator, ComparisonOutcome
from sttcompare.stt_errors import CaptureError, TransportError
from sttcompare.stt_session import FinishReason, TranscriptionSession

SR = 16000


def _pcm(seconds: float) -> bytes:
    return b"\x01\x00" * int(SR * seconds)


def _factory(steps: Sequence[ScriptedStep] = (), **kwargs):
    return lambda: ScriptedAdapter(steps, **kwargs)


class TestComparisonOrchestrator(unittest.IsolatedAsyncioTestCase):

    def _orchestrator(self, backends: dict, *, session_timeout_s: float = 1.0, responses_timeout_s: float = 1.0,
                      capture: CaptureService = None) -> ComparisonOrchestrator:
        self.capture = capture or CaptureService(sample_rate=SR)
        sessions = [
            TranscriptionSession(name, factory, self.capture, chunk_length_s=0.1,
                                 session_timeout_after_done_recording_s=session_timeout_s)
            for name, factory in backends.items()
        ]
        self.finished: list[ComparisonOutcome] = []
        orchestrator = ComparisonOrchestrator(sessions, responses_timeout_s=responses_timeout_s)
        orchestrator.register_on_finished(self.finished.append)
        return orchestrator

    async def _cleanup(self, orchestrator: ComparisonOrchestrator) -> None:
        await asyncio.wait_for(orchestrator.wait_sessions_closed(), 5.0)
        orchestrator.close()

    async def test_responses_timeout_abandons_silent_session(self) -> None:
        """A and B answer in time, C never does: the comparison ends at the responses timeout."""
        orchestrator = self._orchestrator({
            "A": _factory([ScriptedStep.final("alpha", after_end=True, delay_s=0.1)]),
            "B": _factory([ScriptedStep.final("beta", after_end=True, delay_s=0.2)]),
            "C": _factory([ScriptedStep.interim("gam", after_chunks=1)]),
        }, session_timeout_s=1.0, responses_timeout_s=0.5)

        self.assertTrue(orchestrator.start_all("alpha"))
        self.assertEqual(orchestrator.waiting, frozenset({"A", "B", "C"}))
        self.capture.append_audio(_pcm(0.2))
        await asyncio.sleep(0.05)

        loop = asyncio.get_running_loop()
        stopped_at = loop.time()
        self.assertTrue(orchestrator.stop_all())
        outcome = await asyncio.wait_for(orchestrator.wait_finished(), 3.0)
        elapsed = loop.time() - stopped_at

        self.assertGreaterEqual(elapsed, 0.45)
        self.assertLess(elapsed, 0.9)
        self.assertTrue(outcome.timed_out)
        self.assertEqual(outcome.abandoned, ("C",))
        self.assertEqual([r.name for r in outcome.reports], ["A", "B", "C"])

        a, b, c = outcome.reports
        self.assertEqual(a.transcript, "alpha")
        self.assertEqual(a.finish_reason, FinishReason.BACKEND_FINAL)
        self.assertEqual(a.accuracy, 100.0)
        self.assertGreater(a.response_time_s, 0.05)
        self.assertLess(a.response_time_s, 0.5)
        self.assertEqual(b.transcript, "beta")
        self.assertGreater(b.response_time_s, a.response_time_s)
        self.assertLess(b.accuracy, 100.0)
        self.assertFalse(c.responded)
        self.assertIsNone(c.response_time_s)
        self.assertIsNone(c.accuracy)
        self.assertEqual(c.interim_text, "gam")
        self.assertEqual(c.text, "gam")

        await self._cleanup(orchestrator)
        # C's timeout fallback after the comparison ended changes nothing
        self.assertEqual(self.finished, [outcome])
        self.assertIs(orchestrator.outcome, outcome)
        self.assertIsNone(orchestrator.outcome.report("C").finish_reason)

    async def test_everyone_responds_before_timeout(self) -> None:
        orchestrator = self._orchestrator({
            "A": _factory([ScriptedStep.interim("hel", after_chunks=1),
                           ScriptedStep.final("hello", after_end=True)]),
            "B": _factory([ScriptedStep.final("hello", after_chunks=1),
                           ScriptedStep.final("world", after_end=True)]),
        }, responses_timeout_s=5.0)

        orchestrator.start_all()
        self.capture.append_audio(_pcm(0.2))
        await asyncio.sleep(0.05)
        orchestrator.stop_all(comparison_phrase="hello world")
        outcome = await asyncio.wait_for(orchestrator.wait_finished(), 2.0)

        self.assertFalse(outcome.timed_out)
        self.assertEqual(outcome.abandoned, ())
        self.assertEqual(outcome.phrase, "hello world")
        self.assertEqual(outcome.report("A").transcript, "hello")
        self.assertEqual(outcome.report("B").transcript, "hello world")
        self.assertEqual(outcome.report("B").accuracy, 100.0)
        self.assertFalse(orchestrator.is_active)
        await self._cleanup(orchestrator)

    async def test_timeout_fallback_is_not_counted_twice(self) -> None:
        """A backend whose last result was already final, and then goes silent, reports it once."""
        orchestrator = self._orchestrator({
            "A": _factory([ScriptedStep.final("only once", after_chunks=1)]),
        }, session_timeout_s=0.1, responses_timeout_s=2.0)

        orchestrator.start_all()
        self.capture.append_audio(_pcm(0.2))
        await asyncio.sleep(0.05)
        orchestrator.stop_all()
        outcome = await asyncio.wait_for(orchestrator.wait_finished(), 2.0)

        report = outcome.report("A")
        self.assertEqual(report.transcript, "only once")
        self.assertEqual(report.finish_reason, FinishReason.TIMEOUT_EXCEEDED)
        await self._cleanup(orchestrator)

    async def test_error_counts_as_response(self) -> None:
        orchestrator = self._orchestrator({
            "Broken": _factory(send_error=TransportError("(401) unauthorized")),
            "Fine": _factory([ScriptedStep.final("fine", after_end=True)]),
        }, responses_timeout_s=5.0)

        orchestrator.start_all("fine")
        self.capture.append_audio(_pcm(0.2))
        await asyncio.sleep(0.1)
        self.assertEqual(orchestrator.waiting, frozenset({"Fine"}))
        orchestrator.stop_all()
        outcome = await asyncio.wait_for(orchestrator.wait_finished(), 2.0)

        broken = outcome.report("Broken")
        self.assertEqual(broken.error, "(401) unauthorized")
        self.assertEqual(broken.finish_reason, FinishReason.ERROR)
        self.assertIsNone(broken.accuracy)
        # it failed before the stop, so there is no response time
        self.assertIsNone(broken.response_time_s)
        self.assertEqual(outcome.report("Fine").accuracy, 100.0)
        self.assertFalse(outcome.timed_out)
        await self._cleanup(orchestrator)

    async def test_recording_timeout_stops_everyone(self) -> None:
        orchestrator = self._orchestrator({
            "A": _factory([ScriptedStep.final("a", after_end=True)]),
            "B": _factory([ScriptedStep.final("b", after_end=True)]),
        }, capture=CaptureService(sample_rate=SR, max_recording_s=0.2), responses_timeout_s=5.0)

        orchestrator.start_all()
        self.capture.append_audio(_pcm(0.5))
        self.assertFalse(orchestrator.is_recording)
        self.assertTrue(orchestrator.is_active)

        outcome = await asyncio.wait_for(orchestrator.wait_finished(), 2.0)
        self.assertEqual([r.transcript for r in outcome.reports], ["a", "b"])
        self.assertTrue(all(r.finish_reason is FinishReason.BACKEND_FINAL for r in outcome.reports))
        await self._cleanup(orchestrator)

    async def test_sessions_that_cannot_start(self) -> None:
        class _NoMicrophone:
            def validate(self) -> None:
                raise CaptureError("no input device")

            async def run(self, capture: CaptureService) -> None:
                pass

        orchestrator = self._orchestrator({"A": _factory(), "B": _factory()},
                                          capture=CaptureService(source=_NoMicrophone(), sample_rate=SR))
        self.assertTrue(orchestrator.start_all())
        self.assertEqual(orchestrator.waiting, frozenset())
        self.assertTrue(orchestrator.stop_all())

        outcome = await asyncio.wait_for(orchestrator.wait_finished(), 1.0)
        self.assertEqual([r.error for r in outcome.reports], ["no input device", "no input device"])
        self.assertFalse(outcome.timed_out)
        orchestrator.close()

    async def test_control_guards(self) -> None:
        orchestrator = self._orchestrator({"A": _factory([ScriptedStep.final("a", after_end=True)])})
        with self.assertRaises(RuntimeError):
            await orchestrator.wait_finished()
        self.assertFalse(orchestrator.stop_all())
        self.assertIsNone(orchestrator.finish_comparison())

        self.assertTrue(orchestrator.start_all())
        self.assertFalse(orchestrator.start_all())
        self.assertTrue(orchestrator.stop_all())
        self.assertFalse(orchestrator.stop_all())

        outcome = orchestrator.finish_comparison()
        self.assertIsNotNone(outcome)
        self.assertIsNone(orchestrator.finish_comparison())
        self.assertEqual(self.finished, [outcome])
        self.assertIs(await orchestrator.wait_finished(), outcome)
        await self._cleanup(orchestrator)
        self.assertEqual(self.finished, [outcome])

    async def test_second_comparison(self) -> None:
        orchestrator = self._orchestrator({"A": _factory([ScriptedStep.final("again", after_end=True)])},
                                          responses_timeout_s=5.0)
        for phrase in ("again", "something else"):
            orchestrator.start_all(phrase)
            self.capture.append_audio(_pcm(0.1))
            orchestrator.stop_all()
            outcome = await asyncio.wait_for(orchestrator.wait_finished(), 2.0)
            self.assertEqual(outcome.phrase, phrase)
            self.assertEqual(outcome.report("A").transcript, "again")
            await orchestrator.wait_sessions_closed()
        self.assertEqual(len(self.finished), 2)
        orchestrator.close()

    async def test_abandoned_session_stays_out_of_next_comparison(self) -> None:
        """A session still closing after being abandoned blocks start_all(), its late fallback goes nowhere."""
        orchestrator = self._orchestrator({
            "Slow": _factory([ScriptedStep.interim("old words", after_chunks=1)]),
        }, session_timeout_s=0.6, responses_timeout_s=0.1)

        orchestrator.start_all("old words")
        self.capture.append_audio(_pcm(0.2))
        await asyncio.sleep(0.05)
        orchestrator.stop_all()
        first = await asyncio.wait_for(orchestrator.wait_finished(), 2.0)
        self.assertEqual(first.abandoned, ("Slow",))

        self.assertFalse(orchestrator.start_all("new phrase"))
        self.assertFalse(orchestrator.is_active)
        await asyncio.wait_for(orchestrator.wait_sessions_closed(), 2.0)
        self.assertEqual(self.finished, [first])

        self.assertTrue(orchestrator.start_all("new phrase"))
        self.assertEqual(orchestrator.waiting, frozenset({"Slow"}))
        self.capture.append_audio(_pcm(0.2))
        await asyncio.sleep(0.05)
        orchestrator.stop_all()
        second = await asyncio.wait_for(orchestrator.wait_finished(), 2.0)

        report = second.report("Slow")
        self.assertEqual(second.phrase, "new phrase")
        self.assertIsNone(report.error)
        self.assertEqual(report.transcript, "")
        self.assertEqual(report.interim_text, "old words")
        await self._cleanup(orchestrator)

    async def test_segment_finals_during_flush_are_kept(self) -> None:
        orchestrator = self._orchestrator({
            "A": _factory([ScriptedStep.final("hello", after_chunks=2),
                           ScriptedStep.final("world", after_end=True)], send_delay_s=0.02),
        }, responses_timeout_s=2.0)

        orchestrator.start_all("hello world")
        self.capture.append_audio(_pcm(0.5))
        orchestrator.stop_all()
        outcome = await asyncio.wait_for(orchestrator.wait_finished(), 2.0)

        report = outcome.report("A")
        self.assertEqual(report.transcript, "hello world")
        self.assertEqual(report.finish_reason, FinishReason.BACKEND_FINAL)
        self.assertEqual(report.accuracy, 100.0)
        await self._cleanup(orchestrator)

    async def test_phrase_must_be_text(self) -> None:
        orchestrator = self._orchestrator({"A": _factory([ScriptedStep.final("a", after_end=True)])},
                                          responses_timeout_s=2.0)
        with self.assertRaises(TypeError):
            orchestrator.start_all(5)
        self.assertFalse(orchestrator.is_active)

        self.assertTrue(orchestrator.start_all())
        self.capture.append_audio(_pcm(0.1))
        with self.assertRaises(TypeError):
            orchestrator.stop_all(comparison_phrase=5)
        self.assertTrue(orchestrator.is_recording)

        self.assertTrue(orchestrator.stop_all(comparison_phrase="a"))
        outcome = await asyncio.wait_for(orchestrator.wait_finished(), 2.0)
        self.assertEqual(outcome.report("A").accuracy, 100.0)
        await self._cleanup(orchestrator)

    async def test_failing_outcome_does_not_leave_waiters_hanging(self) -> None:
        orchestrator = self._orchestrator({"A": _factory([ScriptedStep.final("a", after_end=True)])},
                                          responses_timeout_s=2.0)
        orchestrator.start_all("a")
        self.capture.append_audio(_pcm(0.1))

        with mock.patch("sttcompare.stt_compare.accuracy_percentage", side_effect=ValueError("bad phrase")):
            with self.assertLogs("sttcompare.stt_compare", level="ERROR"):
                orchestrator.stop_all()
                with self.assertRaises(ValueError):
                    await asyncio.wait_for(orchestrator.wait_finished(), 2.0)

        self.assertFalse(orchestrator.is_active)
        self.assertEqual(self.finished, [])
        await self._cleanup(orchestrator)

    def test_unique_names(self) -> None:
        capture = CaptureService(sample_rate=SR)
        sessions = [TranscriptionSession("Same", _factory(), capture) for _ in range(2)]
        with self.assertRaises(ValueError):
            ComparisonOrchestrator(sessions)
