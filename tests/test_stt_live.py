"""
Live tests against the real backends, one comparison per WAV asset.

Each backend test is skipped unless its credentials are configured (.env) and
there is at least one WAV asset in ASSETS_DIR.

    pytest tests/test_stt_live.py -v
"""
from __future__ import annotations

import unittest
from logging import getLogger

from config import (
    ASSETS_DIR,
    DEEPGRAM_API_KEY,
    ELEVENLABS_API_KEY,
    GOOGLE_APPLICATION_CREDENTIALS,
    WITAI_ACCESS_TOKEN,
)
from helpers.load_assets import iter_assets
from helpers.transcribe import compare_wav
from sttcompare.stt_backend_registry import BackendSpec, build_backend_specs
from sttcompare.utils import setup_logging

setup_logging()
logger = getLogger(__name__)

_ASSETS = list(iter_assets(ASSETS_DIR)) if ASSETS_DIR.is_dir() else []


def _spec(name: str) -> BackendSpec:
    return next(s for s in build_backend_specs() if s.name == name)


@unittest.skipUnless(_ASSETS, f"Requires at least one wav asset in {ASSETS_DIR}.")
class TestSttLive(unittest.IsolatedAsyncioTestCase):

    async def _runner(self, spec: BackendSpec) -> None:
        for pair in _ASSETS:
            with self.subTest(msg=pair.wav.name):
                phrase = pair.phrase
                outcome = await compare_wav([spec], pair.wav, phrase)
                report = outcome.report(spec.name)
                logger.info("%s on %s: %r (accuracy %s)", spec.name, pair.wav.name, report.text, report.accuracy)

                self.assertIsNone(report.error)
                self.assertTrue(report.responded, "backend did not respond in time")
                if phrase:
                    self.assertTrue(report.text, "empty transcript")
                    self.assertGreater(report.accuracy, 50.0)

    @unittest.skipUnless(DEEPGRAM_API_KEY, "DEEPGRAM_API_KEY not set")
    async def test_deepgram(self) -> None:
        await self._runner(_spec("Deepgram"))

    @unittest.skipUnless(ELEVENLABS_API_KEY, "ELEVENLABS_API_KEY not set")
    async def test_elevenlabs(self) -> None:
        await self._runner(_spec("ElevenLabs"))

    @unittest.skipUnless(GOOGLE_APPLICATION_CREDENTIALS, "GOOGLE_APPLICATION_CREDENTIALS not set")
    async def test_google(self) -> None:
        await self._runner(_spec("Google"))

    @unittest.skipUnless(WITAI_ACCESS_TOKEN, "WITAI_ACCESS_TOKEN not set")
    async def test_witai(self) -> None:
        await self._runner(_spec("WitAi"))
