"""
Business logic constants for the ttsgate service.

These values are stable across environments (dev/staging/prod) and do not
need env-var overrides. For operational parameters that vary per environment
(timeouts, retention windows, bucket names), see config.py.
"""

API_TITLE = "ttsgate API"
API_VERSION = "0.1.0"

# --- Request surface ---
SUPPORTED_FORMATS: tuple[str, ...] = ("mp3", "wav", "ogg")
SUPPORTED_ENGINES: tuple[str, ...] = ("standard", "neural")
DEFAULT_FORMAT = "mp3"
DEFAULT_ENGINE = "standard"
DEFAULT_PREVIEW_TEXT = "Hello, this is a sample of my voice."

CONTENT_TYPES: dict[str, str] = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
}

# --- OpenAI speech endpoint ---
# Max characters accepted by a single audio.speech.create call
OPENAI_MAX_INPUT_CHARS = 4096

# Our format -> OpenAI response_format. WAV is requested as raw PCM per chunk
# and wrapped in a single header so multi-chunk output stays one valid file.
OPENAI_RESPONSE_FORMATS: dict[str, str] = {
    "mp3": "mp3",
    "wav": "pcm",
    "ogg": "opus",
}

# Raw PCM returned by the OpenAI speech endpoint: 24kHz, 16-bit, mono
OPENAI_PCM_SAMPLE_RATE = 24_000
OPENAI_PCM_SAMPLE_WIDTH = 2
OPENAI_PCM_CHANNELS = 1

# OpenAI voices are multilingual; language is the primary tuning locale
OPENAI_VOICES: list[dict[str, str]] = [
    {"id": "alloy", "name": "Alloy", "gender": "neutral"},
    {"id": "ash", "name": "Ash", "gender": "male"},
    {"id": "ballad", "name": "Ballad", "gender": "male"},
    {"id": "coral", "name": "Coral", "gender": "female"},
    {"id": "echo", "name": "Echo", "gender": "male"},
    {"id": "fable", "name": "Fable", "gender": "neutral"},
    {"id": "nova", "name": "Nova", "gender": "female"},
    {"id": "onyx", "name": "Onyx", "gender": "male"},
    {"id": "sage", "name": "Sage", "gender": "female"},
    {"id": "shimmer", "name": "Shimmer", "gender": "female"},
]
OPENAI_VOICE_LANGUAGE = "en-US"
OPENAI_VOICE_LANGUAGE_NAME = "US English"

# --- Quota ---
PERIOD_KEY_FORMAT = "%Y-%m"
