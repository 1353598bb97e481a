"""Speech-to-text for candidate voice notes.

Default implementation uses `faster-whisper` (install the `voice` extra).
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass

from autonaim_interview.config import Settings
from autonaim_interview.errors import TranscriptionUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class STTConfig:
    model_size: str = "small"
    # CPU by default; CUDA only when explicitly requested.
    device: str = "cpu"  # cpu|cuda|auto
    compute_type: str | None = None  # e.g. int8, float16
    language: str | None = None
    vad_filter: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> STTConfig:
        return cls(model_size=settings.stt_model, device=settings.stt_device, language=settings.stt_language)


@dataclass(frozen=True)
class TranscriptionResult:
    text: str
    language: str | None = None
    duration: float | None = None
    no_speech_prob: float | None = None


class STTProvider:
    async def transcribe(self, audio: bytes) -> TranscriptionResult:
        raise NotImplementedError


class WhisperSTT(STTProvider):
    """faster-whisper wrapper; the model is loaded lazily on first use."""

    def __init__(self, config: STTConfig | None = None) -> None:
        self._config = config or STTConfig()
        self._model = None

    @property
    def config(self) -> STTConfig:
        return self._config

    def _load_model(self):
        if self._model is not None:
            return self._model

        try:
            from faster_whisper import WhisperModel
        except ImportError as e:
            raise TranscriptionUnavailable(
                "faster-whisper is required for transcription. Install with: pip install -e '.[voice]'"
            ) from e

        device = self._config.device
        if device == "auto":
            device = "cpu"

        kwargs = {}
        if self._config.compute_type:
            kwargs["compute_type"] = self._config.compute_type

        logger.info(f"Loading faster-whisper model '{self._config.model_size}' on {device}")
        self._model = WhisperModel(self._config.model_size, device=device, **kwargs)
        return self._model

    async def transcribe(self, audio: bytes) -> TranscriptionResult:
        """
        Transcribe an encoded audio file (ogg/opus, mp3, wav...).

        Raises:
            TranscriptionUnavailable: Backend missing or failed to decode.
        """
        if not audio:
            raise TranscriptionUnavailable("Empty audio payload")

        def _run() -> TranscriptionResult:
            model = self._load_model()
            segments, info = model.transcribe(
                io.BytesIO(audio),
                language=self._config.language,
                vad_filter=self._config.vad_filter,
            )
            text = " ".join(s.text.strip() for s in segments if s.text and s.text.strip()).strip()
            return TranscriptionResult(
                text=text,
                language=getattr(info, "language", None),
                duration=getattr(info, "duration", None),
                no_speech_prob=getattr(info, "no_speech_prob", None),
            )

        try:
            return await asyncio.to_thread(_run)
        except TranscriptionUnavailable:
            raise
        except (RuntimeError, ValueError, OSError) as e:
            raise TranscriptionUnavailable(f"Transcription failed: {e}") from e
