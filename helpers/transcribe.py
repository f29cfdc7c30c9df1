from __future__ import annotations

from datetime import datetime
from logging import getLogger
from pathlib import Path
from typing import Optional, Sequence

from config import (
    CHUNK_MS,
    LOG_PATH,
    RECORDING_REALTIME_FACTOR,
    RECORDING_SILENCE_S,
    RESPONSES_TIMEOUT_S,
    SESSION_TIMEOUT_AFTER_DONE_RECORDING_S,
    TRANSCRIPT_LOG_ENABLED,
)
from sttcompare.audio_capture import CaptureService, WavFileSource
from sttcompare.stt_backend_registry import BackendSpec, build_sessions
from sttcompare.stt_compare import ComparisonOrchestrator, ComparisonOutcome

logger = getLogger(__name__)


def append_transcript_log(outcome: ComparisonOutcome, source: str, log_path: Optional[Path] = None) -> Path:
    """
    Append the outcome to the transcript log, one "Backend: text" line per session.

    Every comparison is preceded by a header with the time, the source and the phrase.
    """
    log_path = log_path or LOG_PATH / "transcripts.log"
    lines = [f"# {datetime.now().isoformat(timespec='seconds')} {source}"]
    if outcome.phrase is not None:
        lines.append(f"Phrase: {outcome.phrase}")
    for r in outcome.reports:
        lines.append(f"{r.name}: {r.text if r.error is None else '(error) ' + r.error}")
    with log_path.open("a", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n\n")
    return log_path


async def compare_wav(
        specs: Sequence[BackendSpec],
        wav_path: Path,
        phrase: Optional[str] = None,
        *,
        chunk_ms: int = CHUNK_MS,
        realtime_factor: float = RECORDING_REALTIME_FACTOR,
        silence_s: float = RECORDING_SILENCE_S,
        session_timeout_s: float = SESSION_TIMEOUT_AFTER_DONE_RECORDING_S,
        responses_timeout_s: float = RESPONSES_TIMEOUT_S,
        transcript_log: bool = TRANSCRIPT_LOG_ENABLED,
) -> ComparisonOutcome:
    """
    Run every backend in specs on one WAV file and return the joined outcome.

    The WAV file stands in for the microphone: it is played into a single
    CaptureService shared by all sessions. Recording ends when the file (plus
    trailing silence) runs out, which stops all sessions the same way a user
    pressing stop would. The comparison then waits up to responses_timeout_s
    for the last responses.

    Args:
        specs: Backends to compare (names must be unique).
        wav_path: Path to the WAV file (must be PCM 16kHz mono 16-bit).
        phrase: The spoken phrase (ground truth) for accuracy, if known.
        chunk_ms: Audio chunk duration in milliseconds.
        realtime_factor: Playback speed (1.0 = real-time, 0.0 = no delay).
        silence_s: Silence padding (seconds) added before and after audio for VAD.
        session_timeout_s: How long each session waits for its final result.
        responses_timeout_s: How long the comparison waits for all sessions.
        transcript_log: Append the outcome to LOG_PATH / "transcripts.log".

    Returns:
        ComparisonOutcome with one report per backend, in specs order.

    Raises:
        CaptureError: The WAV file cannot be used (reported before any backend is contacted).
    """
    source = WavFileSource(wav_path, chunk_ms=chunk_ms, realtime_factor=realtime_factor, silence_s=silence_s)
    source.validate()

    capture = CaptureService(source=source)
    sessions = build_sessions(specs, capture, chunk_length_s=chunk_ms / 1000.0,
                              session_timeout_after_done_recording_s=session_timeout_s)
    orchestrator = ComparisonOrchestrator(sessions, responses_timeout_s=responses_timeout_s)

    # Sessions that already failed do not forward the end of recording, so listen on the capture too.
    def on_recording_end() -> None:
        orchestrator.stop_all()

    capture.register_on_timeout(on_recording_end)
    try:
        orchestrator.start_all(comparison_phrase=phrase)
        if not orchestrator.waiting:
            orchestrator.stop_all()
        outcome = await orchestrator.wait_finished()
    finally:
        if orchestrator.is_active:
            if orchestrator.is_recording:
                orchestrator.stop_all()
            orchestrator.finish_comparison()
        capture.stop_capture()
        await orchestrator.wait_sessions_closed()
        orchestrator.close()
        capture.unregister_on_timeout(on_recording_end)

    for r in outcome.reports:
        if r.error:
            logger.warning("[COMPARE] %s on %s failed: %s", r.name, wav_path.name, r.error)
        else:
            logger.info("[COMPARE] %s on %s: %r", r.name, wav_path.name, r.text)

    if transcript_log:
        append_transcript_log(outcome, wav_path.name)
    return outcome
