"""Streaming speech recognition: wire protocol, status state machine, transcript stitching."""
from .base import (
    Caption,
    ConnectionState,
    RecognizedUtterance,
    SessionStatus,
    StreamingConfig,
    StreamMetadata,
    Word,
    build_listen_url,
)
from .streaming_session import StreamingTranscriptionSession

__all__ = [
    "Caption",
    "ConnectionState",
    "RecognizedUtterance",
    "SessionStatus",
    "StreamingConfig",
    "StreamMetadata",
    "StreamingTranscriptionSession",
    "Word",
    "build_listen_url",
]
