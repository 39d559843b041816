"""
Schemas for the call API.

StartCallRequest mirrors StartParams; omitted optional fields fall back to settings.
Responses are built from the orchestrator's dataclasses via from_*() helpers.
"""
from __future__ import annotations

from pydantic import BaseModel, Field

from callassist.models import CallMode, SessionInfo, StartParams, Turn


class StartCallRequest(BaseModel):
    """Request body for POST /api/call/start."""

    mode: CallMode | None = Field(None, description="multichannel (one party per channel) or diarized")
    sample_rate: int | None = Field(None, description="PCM sample rate of the audio the client will send")
    channels: int | None = Field(None, description="Interleaved channel count")
    model: str | None = Field(None, description="Recognition model; server default when omitted")
    language: str | None = Field(None, description="Recognition language; server default when omitted")
    endpointing_ms: int | None = None
    utterance_end_ms: int | None = None
    keywords: list[str] = Field(default_factory=list)
    keyterms: list[str] = Field(default_factory=list)
    you_channel_index: int | None = Field(0, description="Channel carrying the user's microphone (multichannel)")
    diarize_you_speaker_id: int | None = Field(
        None, description="Speaker id the provider assigns to the user (diarized); null = unknown"
    )
    auto_save_to_memory: bool | None = None
    auto_suggest: bool | None = None
    auto_summary: bool | None = None

    def to_params(self) -> StartParams:
        return StartParams(
            mode=self.mode,
            sample_rate=self.sample_rate,
            channels=self.channels,
            model=self.model,
            language=self.language,
            endpointing_ms=self.endpointing_ms,
            utterance_end_ms=self.utterance_end_ms,
            keywords=list(self.keywords),
            keyterms=list(self.keyterms),
            you_channel_index=self.you_channel_index,
            diarize_you_speaker_id=self.diarize_you_speaker_id,
            auto_save_to_memory=self.auto_save_to_memory,
            auto_suggest=self.auto_suggest,
            auto_summary=self.auto_summary,
        )


class SessionInfoResponse(BaseModel):
    session_id: str
    mode: CallMode
    sample_rate: int
    channels: int
    started_at: int = Field(..., description="Unix ms")
    recording_path: str

    @classmethod
    def from_info(cls, info: SessionInfo) -> "SessionInfoResponse":
        return cls(
            session_id=info.session_id,
            mode=info.mode,
            sample_rate=info.sample_rate,
            channels=info.channels,
            started_at=info.started_at,
            recording_path=info.recording_path,
        )


class StopCallResponse(BaseModel):
    stopped: bool = True


class QuestionResponse(BaseModel):
    """Most recent question-like turn in the rolling window, if any."""

    speaker_label: str | None = None
    text: str | None = None

    @classmethod
    def from_turn(cls, turn: Turn | None) -> "QuestionResponse":
        if turn is None:
            return cls()
        return cls(speaker_label=turn.speaker_label, text=turn.text)
