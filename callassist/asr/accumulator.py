"""
Per-channel transcript accumulation for streaming results.

Interim results only drive captions. Final segments are stitched into one buffer per
channel until the provider signals end of turn; then the buffered words become one
or more utterances.

The stitching rule is tuned against Deepgram's incremental finals: a final segment
may repeat and extend the previous one ("hello" -> "hello there") or be re-sent
verbatim. It is a heuristic, not a general alignment algorithm.
"""
from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Optional

from callassist.asr.base import RecognizedUtterance, Word

_SPACE_BEFORE_PUNCT = re.compile(r"\s+([,.;:!?])")


def merge_final_segment(buffer: str, segment: str) -> str:
    """
    Stitch a final segment onto the channel buffer.

    - empty buffer: take the segment
    - segment extends the buffer (buffer is its prefix): replace
    - buffer already ends with the segment: duplicate, keep buffer
    - otherwise append with one separating space
    """
    new = segment.strip()
    if not new:
        return buffer
    if not buffer:
        return new
    if new == buffer or new.startswith(buffer):
        return new
    if buffer.endswith(new):
        return buffer
    return f"{buffer}{'' if buffer.endswith(' ') else ' '}{new}"


def text_from_words(words: list[Word]) -> str:
    """Join word tokens (punctuated form preferred), removing spaces before punctuation."""
    joined = " ".join(t for t in (w.token for w in words) if t).strip()
    if not joined:
        return ""
    return _SPACE_BEFORE_PUNCT.sub(r"\1", joined)


def has_speaker_labels(words: list[Word]) -> bool:
    return any(w.speaker is not None for w in words)


def split_speaker_turns(words: list[Word]) -> list[tuple[Optional[int], list[Word]]]:
    """
    Split words into contiguous runs by speaker, preserving order.
    An untagged word inherits the last known speaker.
    """
    turns: list[tuple[Optional[int], list[Word]]] = []
    last_known: Optional[int] = None
    for w in words:
        speaker = w.speaker if w.speaker is not None else last_known
        if speaker is not None:
            last_known = speaker
        if not turns or turns[-1][0] != speaker:
            turns.append((speaker, []))
        turns[-1][1].append(w)
    return [(speaker, run) for speaker, run in turns if run]


def majority_speaker(words: list[Word]) -> Optional[int]:
    """Most frequent speaker tag; ties go to the speaker seen first."""
    counts = Counter(w.speaker for w in words if w.speaker is not None)
    if not counts:
        return None
    # Counter preserves first-insertion order, and max() keeps the first maximum
    return max(counts, key=lambda s: counts[s])


def _seconds_to_ms(value: Optional[float]) -> Optional[int]:
    return None if value is None else int(round(value * 1000))


_UNSET: Any = object()


@dataclass
class ChannelAccumulator:
    """Interim/final state for one audio channel. Reset after every finalization."""

    last_caption: str = ""
    final_text: str = ""
    words: list[Word] = field(default_factory=list)

    def accept_caption(self, transcript: str) -> Optional[str]:
        """Return the caption text to emit, or None when empty or identical to the last one."""
        cleaned = transcript.strip()
        if not cleaned or cleaned == self.last_caption:
            return None
        self.last_caption = cleaned
        return cleaned

    def add_final(self, transcript: str, words: list[Word]) -> None:
        self.final_text = merge_final_segment(self.final_text, transcript)
        self.words.extend(words)

    def reset(self) -> None:
        self.last_caption = ""
        self.final_text = ""
        self.words = []

    def finalize(
        self,
        channel_index: int,
        diarize: bool,
        end_ms_override: Optional[int] = _UNSET,
    ) -> list[RecognizedUtterance]:
        """
        Turn buffered text/words into utterances and reset.

        end_ms_override: when given (even None), replaces the end time derived from words.
        """
        final_text = self.final_text.strip()
        words = list(self.words)
        out: list[RecognizedUtterance] = []

        if diarize and has_speaker_labels(words):
            for speaker, run in split_speaker_turns(words):
                text = text_from_words(run) or final_text
                if not text:
                    continue
                end_ms = _seconds_to_ms(run[-1].end) if end_ms_override is _UNSET else end_ms_override
                out.append(
                    RecognizedUtterance(
                        channel_index=channel_index,
                        text=text,
                        start_ms=_seconds_to_ms(run[0].start),
                        end_ms=end_ms,
                        speaker_id=speaker,
                    )
                )
        else:
            text = final_text or text_from_words(words)
            if text:
                start_ms = _seconds_to_ms(words[0].start) if words else None
                if end_ms_override is not _UNSET:
                    end_ms = end_ms_override
                else:
                    end_ms = _seconds_to_ms(words[-1].end) if words else None
                out.append(
                    RecognizedUtterance(
                        channel_index=channel_index,
                        text=text,
                        start_ms=start_ms,
                        end_ms=end_ms,
                        speaker_id=majority_speaker(words) if diarize else None,
                    )
                )

        self.reset()
        return out


def parse_words(raw: Any) -> list[Word]:
    """Parse alternatives[0].words, skipping entries that aren't objects."""
    if not isinstance(raw, list):
        return []
    words: list[Word] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        speaker = item.get("speaker")
        start = item.get("start")
        end = item.get("end")
        punctuated = item.get("punctuated_word")
        words.append(
            Word(
                word=item.get("word") if isinstance(item.get("word"), str) else "",
                punctuated_word=punctuated if isinstance(punctuated, str) else None,
                start=float(start) if isinstance(start, (int, float)) and not isinstance(start, bool) else None,
                end=float(end) if isinstance(end, (int, float)) and not isinstance(end, bool) else None,
                speaker=speaker if isinstance(speaker, int) and not isinstance(speaker, bool) else None,
            )
        )
    return words
