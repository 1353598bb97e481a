"""Voice content subsystem.

Candidate voice notes are stored as opaque files and transcribed
out-of-band by the `voice.transcribe` job.
"""

from autonaim_interview.voice.files import LocalFileStore
from autonaim_interview.voice.stt import (
    STTConfig,
    STTProvider,
    TranscriptionResult,
    WhisperSTT,
)

__all__ = [
    "LocalFileStore",
    "STTConfig",
    "STTProvider",
    "TranscriptionResult",
    "WhisperSTT",
]
