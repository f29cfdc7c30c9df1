"""
End-to-end comparison runs without any vendor: WAV files are generated into a
temporary directory and transcribed by scripted backends.

Covers helpers/transcribe.py, compare.py and the WebSocket gateway.

    pytest tests/test_compare_offline.py -v
"""
from __future__ import annotations

import unittest
import wave
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import mock

from fastapi.testclient import TestClient

from helpers.load_assets import iter_assets
from helpers.transcribe import append_transcript_log, compare_wav
from sttcompare.stt_backend_registry import BackendSpec, echo_backend_spec
from sttcompare.stt_backend_scripted import ScriptedAdapter, ScriptedStep
from sttcompare.stt_errors import CaptureError
from sttcompare.stt_session import FinishReason
from sttcompare.ws_compare import create_app

SR = 16000
PHRASE = "the quick brown fox"


def _write_wav(path: Path, seconds: float) -> Path:
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(SR)
        wf.writeframes(b"\x01\x00" * int(SR * seconds))
    return path


class TestCompareWav(unittest.IsolatedAsyncioTestCase):

    def setUp(self) -> None:
        self._tmpdir = TemporaryDirectory()
        self.tmp = Path(self._tmpdir.name)

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    async def test_echo_and_silent_backend(self) -> None:
        wav = _write_wav(self.tmp / "fox.wav", 1.0)
        specs = [
            echo_backend_spec(PHRASE),
            BackendSpec("Silent", lambda: ScriptedAdapter()),
        ]
        outcome = await compare_wav(specs, wav, PHRASE, realtime_factor=0.0, silence_s=0.2,
                                    session_timeout_s=0.2, responses_timeout_s=3.0, transcript_log=False)

        echo = outcome.report("Echo")
        self.assertEqual(echo.transcript, PHRASE)
        self.assertEqual(echo.finish_reason, FinishReason.BACKEND_FINAL)
        self.assertEqual(echo.accuracy, 100.0)

        silent = outcome.report("Silent")
        self.assertEqual(silent.text, "")
        self.assertEqual(silent.finish_reason, FinishReason.TIMEOUT_EXCEEDED)
        self.assertEqual(silent.accuracy, 0.0)
        self.assertFalse(outcome.timed_out)

    async def test_every_backend_failing_still_finishes(self) -> None:
        wav = _write_wav(self.tmp / "a.wav", 0.5)
        specs = [
            BackendSpec("A", lambda: ScriptedAdapter([ScriptedStep.fail("auth failed")])),
            BackendSpec("B", lambda: ScriptedAdapter([ScriptedStep.fail("quota")])),
        ]
        outcome = await compare_wav(specs, wav, None, realtime_factor=0.0, silence_s=0.0,
                                    responses_timeout_s=3.0, transcript_log=False)
        self.assertEqual([r.error for r in outcome.reports], ["auth failed", "quota"])
        self.assertIsNone(outcome.phrase)

    async def test_invalid_wav(self) -> None:
        with self.assertRaises(CaptureError):
            await compare_wav([echo_backend_spec(PHRASE)], self.tmp / "missing.wav", PHRASE)

    async def test_transcript_log(self) -> None:
        wav = _write_wav(self.tmp / "fox.wav", 0.5)
        outcome = await compare_wav([echo_backend_spec(PHRASE)], wav, PHRASE, realtime_factor=0.0,
                                    silence_s=0.0, transcript_log=False)
        log_path = append_transcript_log(outcome, "fox.wav", self.tmp / "transcripts.log")
        append_transcript_log(outcome, "fox.wav", log_path)

        text = log_path.read_text(encoding="utf-8")
        self.assertEqual(text.count(f"Echo: {PHRASE}\n"), 2)
        self.assertIn(f"Phrase: {PHRASE}", text)

    async def test_compare_main_offline(self) -> None:
        import compare

        _write_wav(self.tmp / "fox.wav", 0.5)
        (self.tmp / "fox.txt").write_text(PHRASE + "\n", encoding="utf-8")
        _write_wav(self.tmp / "no_phrase.wav", 0.3)
        out = self.tmp / "out"
        out.mkdir()

        with mock.patch.object(compare, "OUT_PATH", out), mock.patch("builtins.print"):
            await compare.main(["--offline", "--assets", str(self.tmp), "--realtime-factor", "0"])

        (tsv,) = out.glob("*_compare.tsv")
        lines = tsv.read_text(encoding="utf-8").rstrip("\n").split("\n")
        self.assertEqual(len(lines), 3)
        self.assertEqual(len(list(out.glob("*.compare.html"))), 2)


class TestLoadAssets(unittest.TestCase):

    def test_pairs(self) -> None:
        with TemporaryDirectory() as d:
            root = Path(d)
            (root / "sub").mkdir()
            _write_wav(root / "b.wav", 0.1)
            _write_wav(root / "sub" / "a.wav", 0.1)
            (root / "b.txt").write_text(" hello \n", encoding="utf-8")

            pairs = list(iter_assets(root))
            self.assertEqual([p.wav.name for p in pairs], ["b.wav", "a.wav"])
            self.assertEqual(pairs[0].phrase, "hello")
            self.assertIsNone(pairs[1].phrase)

            with self.assertRaises(FileNotFoundError):
                list(iter_assets(root / "missing"))


class TestWebSocketGateway(unittest.TestCase):

    def setUp(self) -> None:
        app = create_app([echo_backend_spec("hello world")], session_timeout_s=1.0, responses_timeout_s=3.0)
        self.client = TestClient(app)

    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"status": "ok", "backends": ["Echo"]})

    def test_comparison_over_websocket(self) -> None:
        with self.client.websocket_connect("/ws/compare") as ws:
            ws.send_json({"type": "stop"})
            self.assertEqual(ws.receive_json(), {"type": "error", "backend": None, "message": "not recording"})

            ws.send_json({"type": "start"})
            self.assertEqual(ws.receive_json(), {"type": "started", "backends": ["Echo"]})
            ws.send_bytes(b"\x01\x00" * int(SR * 0.5))
            ws.send_json({"type": "stop", "phrase": "Hello world!"})

            messages = []
            while True:
                msg = ws.receive_json()
                messages.append(msg)
                if msg["type"] == "finished":
                    break

        results = [(m["text"], m["is_final"]) for m in messages if m["type"] == "result"]
        self.assertEqual(results[-1], ("hello world", True))
        self.assertTrue(all(not final for _, final in results[:-1]))

        finished = messages[-1]
        self.assertEqual(finished["phrase"], "Hello world!")
        self.assertFalse(finished["timed_out"])
        (report,) = finished["reports"]
        self.assertEqual(report["backend"], "Echo")
        self.assertEqual(report["finish_reason"], "backend_final")
        self.assertEqual(report["accuracy"], 100.0)

    def test_back_to_back_comparisons(self) -> None:
        """A start right after "finished" waits for the previous sessions to close instead of failing."""
        with self.client.websocket_connect("/ws/compare") as ws:
            for phrase in ("hello world", "Hello, world."):
                ws.send_json({"type": "start"})
                self.assertEqual(ws.receive_json(), {"type": "started", "backends": ["Echo"]})
                ws.send_bytes(b"\x01\x00" * int(SR * 0.5))
                ws.send_json({"type": "stop", "phrase": phrase})

                msg = ws.receive_json()
                while msg["type"] != "finished":
                    self.assertNotEqual(msg["type"], "error")
                    msg = ws.receive_json()
                self.assertEqual(msg["phrase"], phrase)
                self.assertEqual(msg["reports"][0]["accuracy"], 100.0)

    def test_invalid_control(self) -> None:
        with self.client.websocket_connect("/ws/compare") as ws:
            ws.send_text("not json")
            self.assertEqual(ws.receive_json()["message"], "invalid control message")
            ws.send_json({"type": "rewind"})
            self.assertIn("unknown control message type", ws.receive_json()["message"])
            ws.send_json({"type": "stop", "phrase": 5})
            self.assertEqual(ws.receive_json()["message"], "phrase must be a string or null")

    def test_no_backends(self) -> None:
        client = TestClient(create_app([]))
        with client.websocket_connect("/ws/compare") as ws:
            self.assertEqual(ws.receive_json()["message"], "no backends configured")
