"""
WavRecorder: incremental per-call recording of PCM audio to a WAV file.

- Opens the file once and writes a 44-byte placeholder header immediately.
- write() appends PCM to the data region as it arrives; nothing is buffered in memory.
- close() patches the RIFF and data chunk sizes at their fixed offsets, then closes once.
- A crash before close() leaves a file with zero-sized chunks but intact audio bytes.
"""
from __future__ import annotations

import logging
import os
import struct
from typing import BinaryIO, Optional

import numpy as np

logger = logging.getLogger(__name__)

BITS_PER_SAMPLE = 16
WAV_HEADER_BYTES = 44
RIFF_SIZE_OFFSET = 4
DATA_SIZE_OFFSET = 40

# RMS threshold for optional silence warning (int16 scale)
RMS_SILENCE_THRESHOLD = 100
RMS_SILENCE_CHUNKS_WARN = 50


def build_wav_header(sample_rate: int, channels: int, data_bytes: int = 0) -> bytes:
    """Canonical 44-byte PCM WAV header (RIFF/WAVE, 16-byte fmt chunk, data chunk)."""
    byte_rate = sample_rate * channels * BITS_PER_SAMPLE // 8
    block_align = channels * BITS_PER_SAMPLE // 8
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_bytes,
        b"WAVE",
        b"fmt ",
        16,  # PCM fmt chunk size
        1,  # PCM format
        channels,
        sample_rate,
        byte_rate,
        block_align,
        BITS_PER_SAMPLE,
        b"data",
        data_bytes,
    )


def _rms_int16(pcm_bytes: bytes) -> float:
    """RMS of int16 samples (for optional silence logging)."""
    usable = len(pcm_bytes) - (len(pcm_bytes) % 2)
    if usable < 2:
        return 0.0
    samples = np.frombuffer(pcm_bytes[:usable], dtype=np.int16)
    return float(np.sqrt(np.mean(samples.astype(np.float32) ** 2)))


class WavRecorder:
    """One call = one WAV file, written incrementally and finalized on close()."""

    def __init__(self, path: str, sample_rate: int, channels: int) -> None:
        self._path = path
        self._sample_rate = sample_rate
        self._channels = channels
        self._data_bytes = 0
        self._closed = False
        self._low_rms_count = 0

        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._file: Optional[BinaryIO] = open(path, "wb")
        try:
            self._file.write(build_wav_header(sample_rate, channels, 0))
        except OSError:
            self._file.close()
            self._file = None
            raise
        logger.info("Recording to %s (%d Hz, %d ch)", path, sample_rate, channels)

    @property
    def path(self) -> str:
        return self._path

    @property
    def data_bytes(self) -> int:
        return self._data_bytes

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, pcm: bytes) -> None:
        """Append PCM bytes to the data region. No-op once closed. Raises OSError on disk errors."""
        if self._closed or self._file is None or not pcm:
            return
        self._file.write(pcm)
        self._data_bytes += len(pcm)

        # Warn once per run of quiet frames (helps debug capture that yields silence)
        if _rms_int16(pcm) < RMS_SILENCE_THRESHOLD:
            self._low_rms_count += 1
            if self._low_rms_count == RMS_SILENCE_CHUNKS_WARN:
                logger.warning(
                    "Recording: %d consecutive chunks with RMS < %s (possible capture silence)",
                    RMS_SILENCE_CHUNKS_WARN,
                    RMS_SILENCE_THRESHOLD,
                )
        else:
            self._low_rms_count = 0

    def close(self) -> None:
        """Patch header sizes and close the file. Idempotent."""
        if self._closed:
            return
        self._closed = True
        f = self._file
        self._file = None
        if f is None:
            return
        try:
            f.seek(RIFF_SIZE_OFFSET)
            f.write(struct.pack("<I", 36 + self._data_bytes))
            f.seek(DATA_SIZE_OFFSET)
            f.write(struct.pack("<I", self._data_bytes))
        except OSError as e:
            logger.warning("Failed to patch WAV header for %s: %s", self._path, e)
        finally:
            try:
                f.close()
            except OSError as e:
                logger.warning("Failed to close recording %s: %s", self._path, e)
        logger.info("Recording closed: %s (%d data bytes)", self._path, self._data_bytes)
