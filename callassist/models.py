"""
Call-level data model: session info, start parameters, utterances, transcript turns.

Speaker ids are Optional[int] everywhere (None = provider gave no speaker tag).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class CallMode(str, Enum):
    MULTICHANNEL = "multichannel"  # each audio channel belongs to one party
    DIARIZED = "diarized"  # one mixed channel, provider attributes speakers


@dataclass
class StartParams:
    """Caller-supplied options for one call. Validated/clamped by the orchestrator."""

    mode: Optional[CallMode] = None  # None = settings default
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    model: Optional[str] = None
    language: Optional[str] = None
    endpointing_ms: Optional[int] = None
    utterance_end_ms: Optional[int] = None
    keywords: list[str] = field(default_factory=list)
    keyterms: list[str] = field(default_factory=list)
    you_channel_index: Optional[int] = 0
    diarize_you_speaker_id: Optional[int] = None
    auto_save_to_memory: Optional[bool] = None
    auto_suggest: Optional[bool] = None
    auto_summary: Optional[bool] = None


@dataclass(frozen=True)
class SessionInfo:
    session_id: str
    mode: CallMode
    sample_rate: int
    channels: int
    started_at: int  # unix ms
    recording_path: str


@dataclass(frozen=True)
class Utterance:
    """Finalized, labeled utterance. utterance_id is assigned by the orchestrator."""

    session_id: str
    utterance_id: str
    channel_index: int
    speaker_id: Optional[int]
    speaker_label: str
    text: str
    start_ms: Optional[int] = None
    end_ms: Optional[int] = None


@dataclass(frozen=True)
class Turn:
    """One entry of the rolling transcript window."""

    speaker_label: str
    text: str

    def as_line(self) -> str:
        return f"{self.speaker_label}: {self.text}"


@dataclass(frozen=True)
class PendingSuggestion:
    utterance_id: str
    utterance_text: str
