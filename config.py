import os
from dotenv import load_dotenv
from pathlib import Path

load_dotenv()

# credentials
DEEPGRAM_API_KEY = os.getenv("DEEPGRAM_API_KEY")
ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY")
WITAI_ACCESS_TOKEN = os.getenv("WITAI_ACCESS_TOKEN")
# Google uses Application Default Credentials, this only tells us whether they are configured.
GOOGLE_APPLICATION_CREDENTIALS = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")

# logging config
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEV").upper()
# Append every finished comparison transcript to LOG_PATH / "transcripts.log".
TRANSCRIPT_LOG_ENABLED = os.getenv("TRANSCRIPT_LOG_ENABLED", "0") == "1"

# file config
BASE_PATH = Path(__file__).parent
OUT_PATH = BASE_PATH / "out"
OUT_PATH.mkdir(exist_ok=True)
ASSETS_DIR = Path(os.getenv("STT_ASSETS_DIR", BASE_PATH / "assets"))
LOG_PATH = BASE_PATH / "log"
LOG_PATH.mkdir(exist_ok=True)

# audio
# All backends receive 16 kHz, mono, 16-bit little-endian PCM.
AUDIO_SAMPLE_RATE = 16000
AUDIO_CHANNELS = 1
AUDIO_SAMPLE_WIDTH_BYTES = 2

# Recording (capture) parameters
# Hard limit of a single recording, mirrors the microphone max length guard.
MAX_RECORDING_LENGTH_S = float(os.getenv("MAX_RECORDING_LENGTH_S", "15"))
# Playback speed when a WAV file stands in for the microphone:
# 1.0 = real-time, 0.5 = 2x faster, 0.0 = as fast as possible.
RECORDING_REALTIME_FACTOR = float(os.getenv("RECORDING_REALTIME_FACTOR", "1.0"))
# Silence padded before and after a WAV recording, first words are often cut off without it.
RECORDING_SILENCE_S = float(os.getenv("RECORDING_SILENCE_S", "0.5"))

# Streaming session parameters
# Length of each audio chunk sent to the backend.
CHUNK_MS = int(os.getenv("CHUNK_MS", "200"))
# How long a session waits for a final result after all audio was sent,
# after that the last result is treated as final.
SESSION_TIMEOUT_AFTER_DONE_RECORDING_S = float(os.getenv("SESSION_TIMEOUT_AFTER_DONE_RECORDING_S", "2.0"))
# How long a comparison waits for all backends after recording stopped.
RESPONSES_TIMEOUT_S = float(os.getenv("RESPONSES_TIMEOUT_S", "8.0"))
# Malformed backend payloads are skipped, unless this many arrive in a row.
STT_MAX_CONSECUTIVE_PROTOCOL_ERRORS = int(os.getenv("STT_MAX_CONSECUTIVE_PROTOCOL_ERRORS", "5"))

# Speech to text parameters
STT_LANGUAGE_ISO_639_1 = os.getenv("STT_LANGUAGE_ISO_639_1", "en")
STT_LANGUAGE_BCP_47 = os.getenv("STT_LANGUAGE_BCP_47", "en-US")
# VAD threshold detects how long silence is needed before a segment is committed.
# Longer values delay the final result, which eats into the session timeout.
STT_VAD_SILENCE_THRESHOLD_S = 0.7  # seconds
# How big difference between silence and speech (ElevenLabs default is 0.4).
STT_VAD_THRESHOLD = 0.6
# The minimum length of silence (in milliseconds) required to consider
# the audio as non-speech or to trigger a pause in detection.
STT_MIN_SILENCE_DURATION_MS = 300  # milliseconds
# Minimum speech duration in milliseconds:
# how long segment needs to be, to be considered speech and not noise.
STT_MIN_SPEECH_DURATION_MS = 250   # milliseconds

# WebSocket comparison gateway
GATEWAY_HOST = os.getenv("GATEWAY_HOST", "127.0.0.1")
GATEWAY_PORT = int(os.getenv("GATEWAY_PORT", "8000"))
