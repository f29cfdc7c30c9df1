"""
Backend registry: which backends a comparison runs.

``build_backend_specs()`` returns one spec per backend that has credentials
configured. Backends whose credentials are missing are skipped with a
warning (Google uses ADC, so it only needs GOOGLE_APPLICATION_CREDENTIALS).
"""
from __future__ import annotations

from dataclasses import dataclass
from logging import getLogger
from typing import Callable, Optional, Sequence

from config import DEEPGRAM_API_KEY, ELEVENLABS_API_KEY, GOOGLE_APPLICATION_CREDENTIALS, WITAI_ACCESS_TOKEN
from sttcompare.audio_capture import CaptureService
from sttcompare.stt_backend import BackendAdapter
from sttcompare.stt_backend_deepgram import DeepgramRealtimeAdapter, DeepgramSttConfig
from sttcompare.stt_backend_elevenlabs import ElevenLabsRealtimeAdapter, ElevenLabsSttConfig
from sttcompare.stt_backend_google import GoogleStreamingAdapter, GoogleSttConfig
from sttcompare.stt_backend_scripted import ScriptedAdapter, echo_script
from sttcompare.stt_backend_witai import WitAiAdapter, WitAiSttConfig
from sttcompare.stt_session import TranscriptionSession

logger = getLogger(__name__)


@dataclass(frozen=True)
class BackendSpec:
    """Everything needed to create fresh adapters of one backend."""
    name: str
    factory: Callable[[], BackendAdapter]


def build_backend_specs(
        *,
        deepgram_api_key: Optional[str] = DEEPGRAM_API_KEY,
        elevenlabs_api_key: Optional[str] = ELEVENLABS_API_KEY,
        google_credentials: Optional[str] = GOOGLE_APPLICATION_CREDENTIALS,
        witai_access_token: Optional[str] = WITAI_ACCESS_TOKEN,
) -> list[BackendSpec]:
    """Build list of backends that have valid credentials configured."""
    specs: list[BackendSpec] = []

    if deepgram_api_key:
        cfg = DeepgramSttConfig(api_key=deepgram_api_key)
        specs.append(BackendSpec("Deepgram", lambda: DeepgramRealtimeAdapter(cfg)))
    else:
        logger.warning("DEEPGRAM_API_KEY not set, skipping Deepgram.")

    if elevenlabs_api_key:
        cfg_el = ElevenLabsSttConfig(api_key=elevenlabs_api_key)
        specs.append(BackendSpec("ElevenLabs", lambda: ElevenLabsRealtimeAdapter(cfg_el)))
    else:
        logger.warning("ELEVENLABS_API_KEY not set, skipping ElevenLabs.")

    if google_credentials:
        cfg_g = GoogleSttConfig()
        specs.append(BackendSpec("Google", lambda: GoogleStreamingAdapter(cfg_g)))
    else:
        logger.warning("GOOGLE_APPLICATION_CREDENTIALS not set, skipping Google.")

    if witai_access_token:
        cfg_w = WitAiSttConfig(access_token=witai_access_token)
        specs.append(BackendSpec("WitAi", lambda: WitAiAdapter(cfg_w)))
    else:
        logger.warning("WITAI_ACCESS_TOKEN not set, skipping Wit.ai.")

    return specs


def echo_backend_spec(phrase: str, name: str = "Echo") -> BackendSpec:
    """Offline backend that transcribes every recording as phrase."""
    return BackendSpec(name, lambda: ScriptedAdapter(echo_script(phrase), close_after_script=True))


def build_sessions(
        specs: Sequence[BackendSpec],
        capture: CaptureService,
        **session_kwargs,
) -> list[TranscriptionSession]:
    """One session per backend, all reading the same capture."""
    return [TranscriptionSession(spec.name, spec.factory, capture, **session_kwargs) for spec in specs]
