"""Pytest configuration and fixtures for call-assist tests."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_repo_on_path() -> None:
    """Allow tests to import callassist without installing it."""
    repo_root = Path(__file__).resolve().parents[1]
    path_str = str(repo_root)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)


_ensure_repo_on_path()

from callassist.config import Settings  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment: recordings under tmp_path, fast transport timers."""
    return Settings(
        _env_file=None,
        DEEPGRAM_API_KEY="test-key",
        RECORDING_DIR=str(tmp_path / "recordings"),
        RECONNECT_BASE_DELAY_SEC=60.0,
        RECONNECT_MAX_DELAY_SEC=60.0,
        KEEPALIVE_INTERVAL_SEC=60.0,
        CLOUDFLARE_ACCOUNT_ID="",
        CLOUDFLARE_API_TOKEN="",
        SUPERMEMORY_API_KEY="",
    )


@pytest.fixture
def pcm_frame():
    """20 ms of stereo 16 kHz int16 audio with a non-silent signal."""
    import numpy as np

    samples = (np.sin(np.linspace(0, 40 * np.pi, 320 * 2)) * 8000).astype("<i2")
    return samples.tobytes()
