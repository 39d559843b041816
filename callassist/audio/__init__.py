"""Audio persistence: incremental WAV recording of call audio."""
from .recorder import WavRecorder, build_wav_header

__all__ = [
    "WavRecorder",
    "build_wav_header",
]
