"""
Speech synthesis adapter and the OpenAI provider backend.

The adapter owns everything provider-independent: option validation before
any external call, the call timeout, error normalization and logging. The
provider only turns text into a fully buffered audio payload plus the number
of characters it bills for.

Usage:
    provider = OpenAISpeechProvider(get_openai_client(), settings.synthesis)
    adapter = SynthesisAdapter(provider, settings.synthesis)
    result = await adapter.synthesize("Hello world", "alloy", audio_format="mp3")
    # result.audio_bytes, result.content_type, result.billed_characters
"""

import asyncio
import io
import math
import re
import wave
from typing import Protocol

import structlog
from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from ttsgate.config import SynthesisConfig
from ttsgate.constants import (
    CONTENT_TYPES,
    DEFAULT_ENGINE,
    DEFAULT_FORMAT,
    DEFAULT_PREVIEW_TEXT,
    OPENAI_MAX_INPUT_CHARS,
    OPENAI_PCM_CHANNELS,
    OPENAI_PCM_SAMPLE_RATE,
    OPENAI_PCM_SAMPLE_WIDTH,
    OPENAI_RESPONSE_FORMATS,
    OPENAI_VOICE_LANGUAGE,
    OPENAI_VOICE_LANGUAGE_NAME,
    OPENAI_VOICES,
    SUPPORTED_ENGINES,
    SUPPORTED_FORMATS,
)
from ttsgate.errors import (
    InvalidInputError,
    InvalidVoiceError,
    SynthesisPipelineError,
    SynthesisProviderError,
    UnsupportedEngineError,
    UnsupportedFormatError,
)
from ttsgate.models.job import VoiceInfo

logger = structlog.get_logger(__name__)

# Sentence boundaries (. ! ? …), delimiter kept with the sentence
_SENTENCE_SPLIT = re.compile(r"[^.!?…]+[.!?…]+|[^.!?…]+$", re.UNICODE)
# Clause boundaries, used when a sentence alone is too long
_CLAUSE_SPLIT = re.compile(r"[^,;:]+[,;:]+|[^,;:]+$", re.UNICODE)


class SynthesisResult(BaseModel):
    """Fully materialized provider output."""

    audio_bytes: bytes
    content_type: str
    billed_characters: int = Field(ge=0)


class SpeechProvider(Protocol):
    """Contract for a text-to-speech backend."""

    name: str

    async def synthesize(
        self, text: str, voice_id: str, *, audio_format: str, engine: str
    ) -> SynthesisResult:
        """Synthesize text and return the complete audio payload."""

    async def list_voices(
        self, language_code: str | None = None, engine: str | None = None
    ) -> list[VoiceInfo]:
        """List voices offered by the provider."""


def estimate_audio_duration(text: str, words_per_minute: int = 150) -> int:
    """
    Estimate playback length in whole seconds from the word count.

    This is a heuristic (fixed speaking rate, rounded up), not a measurement
    of the synthesized audio.
    """
    words = len(text.split())
    if words == 0:
        return 0
    return (words * 60 + words_per_minute - 1) // words_per_minute


def _hard_split(piece: str, max_chars: int) -> list[str]:
    out: list[str] = []
    while len(piece) > max_chars:
        cut = piece.rfind(" ", 0, max_chars + 1)
        if cut <= 0:
            cut = max_chars
        out.append(piece[:cut].strip())
        piece = piece[cut:].strip()
    if piece:
        out.append(piece)
    return out


def split_for_provider(text: str, max_chars: int = OPENAI_MAX_INPUT_CHARS) -> list[str]:
    """
    Split text into chunks no longer than ``max_chars``.

    Sentences are packed greedily; over-long sentences are split at clause
    boundaries, then at whitespace, then hard.
    """
    text = text.strip()
    if not text:
        return []
    if len(text) <= max_chars:
        return [text]

    pieces: list[str] = []
    for match in _SENTENCE_SPLIT.finditer(text):
        sentence = match.group(0).strip()
        if not sentence:
            continue
        if len(sentence) <= max_chars:
            pieces.append(sentence)
            continue
        for clause_match in _CLAUSE_SPLIT.finditer(sentence):
            clause = clause_match.group(0).strip()
            if clause:
                pieces.extend(_hard_split(clause, max_chars))
    if not pieces:
        pieces = _hard_split(text, max_chars)

    chunks: list[str] = []
    current = ""
    for piece in pieces:
        candidate = f"{current} {piece}" if current else piece
        if len(candidate) <= max_chars:
            current = candidate
        else:
            chunks.append(current)
            current = piece
    if current:
        chunks.append(current)
    return chunks


def pcm_to_wav(pcm: bytes) -> bytes:
    """Wrap raw 24kHz 16-bit mono PCM in a WAV container."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(OPENAI_PCM_CHANNELS)
        wav.setsampwidth(OPENAI_PCM_SAMPLE_WIDTH)
        wav.setframerate(OPENAI_PCM_SAMPLE_RATE)
        wav.writeframes(pcm)
    return buffer.getvalue()


class OpenAISpeechProvider:
    """OpenAI audio.speech backend.

    Engines map to models (standard -> tts-1, neural -> tts-1-hd). Long texts
    are sent in chunks and the audio concatenated; for WAV the chunks are
    requested as raw PCM and wrapped in one header at the end.
    """

    name = "openai"

    def __init__(self, client: AsyncOpenAI, config: SynthesisConfig) -> None:
        self.client = client
        self.config = config

    def _model_for(self, engine: str) -> str:
        return self.config.neural_model if engine == "neural" else self.config.standard_model

    def billed_characters(self, text: str, engine: str) -> int:
        if engine == "neural":
            return math.ceil(len(text) * self.config.neural_cost_multiplier)
        return len(text)

    async def synthesize(
        self, text: str, voice_id: str, *, audio_format: str, engine: str
    ) -> SynthesisResult:
        model = self._model_for(engine)
        response_format = OPENAI_RESPONSE_FORMATS[audio_format]
        chunks = split_for_provider(text)

        parts: list[bytes] = []
        for chunk in chunks:
            response = await self.client.audio.speech.create(
                model=model,
                voice=voice_id,
                input=chunk,
                response_format=response_format,
            )
            parts.append(response.content)

        audio = b"".join(parts)
        if audio_format == "wav":
            audio = pcm_to_wav(audio)

        logger.debug(
            "openai_speech_synthesized",
            model=model,
            voice=voice_id,
            chunks=len(chunks),
            bytes=len(audio),
        )
        return SynthesisResult(
            audio_bytes=audio,
            content_type=CONTENT_TYPES[audio_format],
            billed_characters=self.billed_characters(text, engine),
        )

    async def list_voices(
        self, language_code: str | None = None, engine: str | None = None
    ) -> list[VoiceInfo]:
        # OpenAI voices are multilingual, so language_code does not narrow the list.
        voices = [
            VoiceInfo(
                id=voice["id"],
                name=voice["name"],
                language=OPENAI_VOICE_LANGUAGE,
                language_name=OPENAI_VOICE_LANGUAGE_NAME,
                gender=voice["gender"],
                supported_engines=list(SUPPORTED_ENGINES),
            )
            for voice in OPENAI_VOICES
        ]
        if engine:
            voices = [voice for voice in voices if engine in voice.supported_engines]
        return voices


class SynthesisAdapter:
    """Validates, bounds and normalizes calls to the speech provider."""

    def __init__(self, provider: SpeechProvider, config: SynthesisConfig) -> None:
        self.provider = provider
        self.config = config

    @staticmethod
    def validate_options(audio_format: str, engine: str) -> None:
        """
        Raises:
            UnsupportedFormatError: ``audio_format`` is not mp3, wav or ogg.
            UnsupportedEngineError: ``engine`` is not standard or neural.
        """
        if audio_format not in SUPPORTED_FORMATS:
            raise UnsupportedFormatError(
                f"Unsupported output format: {audio_format}",
                telemetry={"supported_formats": list(SUPPORTED_FORMATS)},
            )
        if engine not in SUPPORTED_ENGINES:
            raise UnsupportedEngineError(
                f"Unsupported engine: {engine}",
                telemetry={"supported_engines": list(SUPPORTED_ENGINES)},
            )

    def estimate_duration(self, text: str) -> int:
        return estimate_audio_duration(text, self.config.words_per_minute)

    async def synthesize(
        self,
        text: str,
        voice_id: str,
        audio_format: str = DEFAULT_FORMAT,
        engine: str = DEFAULT_ENGINE,
    ) -> SynthesisResult:
        """
        Synthesize text through the provider.

        Returns:
            SynthesisResult whose ``billed_characters`` is the provider's
            authoritative count, the value usage must be charged with.

        Raises:
            InvalidInputError: Missing text or voice.
            UnsupportedFormatError / UnsupportedEngineError: Before any call.
            SynthesisProviderError: Timeout, transport or provider failure.
        """
        if not text or not voice_id:
            raise InvalidInputError("Text and voice ID are required")
        self.validate_options(audio_format, engine)

        timeout = self.config.request_timeout_seconds
        try:
            result = await asyncio.wait_for(
                self.provider.synthesize(text, voice_id, audio_format=audio_format, engine=engine),
                timeout=timeout,
            )
        except SynthesisPipelineError:
            raise
        except TimeoutError as e:
            logger.warning("synthesis_timeout", provider=self.provider.name, timeout=timeout)
            raise SynthesisProviderError(
                f"Speech synthesis timed out after {timeout:g}s"
            ) from e
        except Exception as e:
            logger.warning("synthesis_provider_failed", provider=self.provider.name, error=str(e))
            raise SynthesisProviderError(f"Speech synthesis failed: {e}") from e

        if not result.audio_bytes:
            raise SynthesisProviderError("Speech synthesis failed: provider returned no audio")

        logger.info(
            "synthesis_complete",
            provider=self.provider.name,
            voice=voice_id,
            audio_format=audio_format,
            engine=engine,
            text_length=len(text),
            billed_characters=result.billed_characters,
            bytes=len(result.audio_bytes),
        )
        return result

    async def list_voices(
        self, language_code: str | None = None, engine: str | None = None
    ) -> list[VoiceInfo]:
        if engine is not None and engine not in SUPPORTED_ENGINES:
            raise UnsupportedEngineError(f"Unsupported engine: {engine}")
        try:
            return await self.provider.list_voices(language_code=language_code, engine=engine)
        except Exception as e:
            logger.warning("voice_listing_failed", provider=self.provider.name, error=str(e))
            raise SynthesisProviderError("Failed to fetch available voices") from e

    async def get_voice(self, voice_id: str) -> VoiceInfo | None:
        voices = await self.list_voices()
        return next((voice for voice in voices if voice.id == voice_id), None)

    async def preview(self, voice_id: str, sample_text: str | None = None) -> SynthesisResult:
        """Short, un-metered mp3 sample of a voice."""
        if not voice_id:
            raise InvalidInputError("Voice ID is required")
        if await self.get_voice(voice_id) is None:
            raise InvalidVoiceError(telemetry={"voice_id": voice_id})
        text = (sample_text or DEFAULT_PREVIEW_TEXT)[: self.config.preview_max_characters]
        return await self.synthesize(text, voice_id, audio_format="mp3", engine="standard")
