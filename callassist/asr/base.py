"""
Streaming recognition types: session config, connection status state machine,
and the events a StreamingTranscriptionSession publishes.

Status transitions (anything else raises InvalidStatusTransition):

    idle -> connecting -> open -> closing -> closed
    error is reachable from every non-closed state
    closed / error -> connecting   (automatic reconnect)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import urlencode

from callassist.errors import InvalidStatusTransition


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    ERROR = "error"


_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.IDLE: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.CLOSING, ConnectionState.ERROR}
    ),
    ConnectionState.CONNECTING: frozenset(
        {
            ConnectionState.OPEN,
            ConnectionState.CLOSING,
            ConnectionState.CLOSED,
            ConnectionState.ERROR,
        }
    ),
    ConnectionState.OPEN: frozenset(
        {ConnectionState.CLOSING, ConnectionState.CLOSED, ConnectionState.ERROR}
    ),
    ConnectionState.CLOSING: frozenset({ConnectionState.CLOSED, ConnectionState.ERROR}),
    ConnectionState.CLOSED: frozenset({ConnectionState.CONNECTING, ConnectionState.CLOSING}),
    ConnectionState.ERROR: frozenset(
        {
            ConnectionState.CONNECTING,
            ConnectionState.CLOSING,
            ConnectionState.CLOSED,
            ConnectionState.ERROR,
        }
    ),
}


def can_transition(current: ConnectionState, target: ConnectionState) -> bool:
    return target in _TRANSITIONS[current]


@dataclass(frozen=True)
class SessionStatus:
    """Tagged status: code/reason only for closed, message only for error."""

    state: ConnectionState
    code: Optional[int] = None
    reason: Optional[str] = None
    message: Optional[str] = None

    def transition(
        self,
        target: ConnectionState,
        *,
        code: Optional[int] = None,
        reason: Optional[str] = None,
        message: Optional[str] = None,
    ) -> "SessionStatus":
        if not can_transition(self.state, target):
            raise InvalidStatusTransition(self.state.value, target.value)
        if target is ConnectionState.CLOSED:
            return SessionStatus(target, code=code, reason=reason)
        if target is ConnectionState.ERROR:
            return SessionStatus(target, message=message or "unknown error")
        return SessionStatus(target)


@dataclass
class StreamingConfig:
    """Connection parameters for one /v1/listen stream."""

    api_key: str
    sample_rate: int
    channels: int
    url: str = "wss://api.deepgram.com/v1/listen"
    language: Optional[str] = None
    model: Optional[str] = None
    punctuate: bool = True
    interim_results: bool = True
    endpointing_ms: Optional[int] = None
    utterance_end_ms: Optional[int] = None
    vad_events: bool = True
    smart_format: bool = True
    numerals: bool = True
    utterances: bool = True
    multichannel: bool = False
    diarize: bool = False
    keywords: list[str] = field(default_factory=list)
    keyterms: list[str] = field(default_factory=list)

    # Transport tuning
    max_queued_frames: int = 250
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 10.0
    keepalive_interval: float = 2.0
    keepalive_silence: float = 8.0


def build_listen_url(config: StreamingConfig) -> str:
    """Query string for the listen endpoint. Boolean flags are only sent when enabled."""
    params: list[tuple[str, str]] = [
        ("encoding", "linear16"),
        ("sample_rate", str(config.sample_rate)),
        ("channels", str(config.channels)),
    ]
    if config.language:
        params.append(("language", config.language))
    if config.model:
        params.append(("model", config.model))
    if config.punctuate:
        params.append(("punctuate", "true"))
    if config.interim_results:
        params.append(("interim_results", "true"))
    if config.endpointing_ms is not None:
        params.append(("endpointing", str(max(0, round(config.endpointing_ms)))))
    if config.utterance_end_ms is not None:
        params.append(("utterance_end_ms", str(max(0, round(config.utterance_end_ms)))))
    if config.vad_events:
        params.append(("vad_events", "true"))
    if config.smart_format:
        params.append(("smart_format", "true"))
    if config.numerals:
        params.append(("numerals", "true"))
    if config.utterances:
        params.append(("utterances", "true"))
    if config.multichannel:
        params.append(("multichannel", "true"))
    if config.diarize:
        params.append(("diarize", "true"))
    for keyword in config.keywords:
        if keyword.strip():
            params.append(("keywords", keyword.strip()))
    for keyterm in config.keyterms:
        if keyterm.strip():
            params.append(("keyterm", keyterm.strip()))
    return f"{config.url}?{urlencode(params)}"


@dataclass(frozen=True)
class Word:
    """One recognized word; start/end are seconds from stream start."""

    word: str = ""
    punctuated_word: Optional[str] = None
    start: Optional[float] = None
    end: Optional[float] = None
    speaker: Optional[int] = None

    @property
    def token(self) -> str:
        return (self.punctuated_word if self.punctuated_word is not None else self.word).strip()


@dataclass(frozen=True)
class Caption:
    """Interim (non-final) text for one channel."""

    channel_index: int
    text: str


@dataclass(frozen=True)
class RecognizedUtterance:
    """Finalized span of speech from the provider, before labeling."""

    channel_index: int
    text: str
    start_ms: Optional[int] = None
    end_ms: Optional[int] = None
    speaker_id: Optional[int] = None


@dataclass(frozen=True)
class StreamMetadata:
    request_id: Optional[str] = None
    channels: Optional[int] = None
    duration: Optional[float] = None
