"""Transcript handling: speaker labels and the rolling transcript window."""
from .labels import LabelConfig, caption_label, is_their_turn, speaker_label
from .rolling import (
    QuestionHeuristics,
    RollingTranscriptBuffer,
    format_turns,
    looks_like_question,
    should_trigger_suggestion,
)

__all__ = [
    "LabelConfig",
    "QuestionHeuristics",
    "RollingTranscriptBuffer",
    "caption_label",
    "format_turns",
    "is_their_turn",
    "looks_like_question",
    "should_trigger_suggestion",
    "speaker_label",
]
