"""
Speaker labeling policy. Pure functions of (mode, config, channel, speaker).

Multichannel: the "you" channel is "You", every other channel is "Them".
Diarized: with a configured "you" speaker id, that speaker is "You" and the rest "Them";
without one, speakers are numbered ("Speaker 1", ...) or "Speaker" when untagged.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from callassist.models import CallMode

YOU = "You"
THEM = "Them"
LIVE = "Live"
SPEAKER = "Speaker"


@dataclass(frozen=True)
class LabelConfig:
    you_channel_index: int = 0
    diarize_you_speaker_id: Optional[int] = None


def speaker_label(
    mode: CallMode,
    config: LabelConfig,
    channel_index: int,
    speaker_id: Optional[int],
) -> str:
    """Final label for an utterance."""
    if mode is CallMode.MULTICHANNEL:
        return YOU if channel_index == config.you_channel_index else THEM
    if config.diarize_you_speaker_id is not None and speaker_id is not None:
        return YOU if speaker_id == config.diarize_you_speaker_id else THEM
    if speaker_id is not None:
        return f"{SPEAKER} {speaker_id + 1}"
    return SPEAKER


def caption_label(mode: CallMode, config: LabelConfig, channel_index: int) -> str:
    """Interim captions carry no speaker tag, so diarized mode just says "Live"."""
    if mode is CallMode.MULTICHANNEL:
        return YOU if channel_index == config.you_channel_index else THEM
    return LIVE


def is_their_turn(
    mode: CallMode,
    config: LabelConfig,
    channel_index: int,
    speaker_id: Optional[int],
) -> bool:
    """True when the utterance is attributable to the other party (eligible for suggestions)."""
    if mode is CallMode.MULTICHANNEL:
        return channel_index != config.you_channel_index
    if config.diarize_you_speaker_id is None or speaker_id is None:
        return False
    return speaker_id != config.diarize_you_speaker_id
