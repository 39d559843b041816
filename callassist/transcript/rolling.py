"""
RollingTranscriptBuffer: the last N labeled turns of the call, oldest first.

Also holds the text heuristics that read it: whether a turn should trigger a reply
suggestion, and whether a turn looks like a question. Thresholds are empirically
tuned and configurable through QuestionHeuristics.
"""
from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass
from typing import Iterable, Optional

from callassist.models import Turn
from callassist.transcript.labels import THEM, YOU

_TRIGGER_OPENER = re.compile(
    r"^(what|why|how|when|where|who|can|could|would|should|do|does|did|is|are|will)\b",
    re.IGNORECASE,
)
_QUESTION_OPENER = re.compile(
    r"^(what|why|how|when|where|who|which|can|could|would|should|do|does|did|is|are|will|have|has|had)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class QuestionHeuristics:
    suggest_min_chars: int = 12
    suggest_long_chars: int = 64
    question_min_chars: int = 6
    question_max_chars: int = 220


DEFAULT_HEURISTICS = QuestionHeuristics()


def should_trigger_suggestion(text: str, heuristics: QuestionHeuristics = DEFAULT_HEURISTICS) -> bool:
    """Long enough, and a question, an interrogative opener, or a long statement."""
    trimmed = text.strip()
    if len(trimmed) < heuristics.suggest_min_chars:
        return False
    if "?" in trimmed:
        return True
    if _TRIGGER_OPENER.match(trimmed):
        return True
    return len(trimmed) >= heuristics.suggest_long_chars


def looks_like_question(text: str, heuristics: QuestionHeuristics = DEFAULT_HEURISTICS) -> bool:
    trimmed = text.strip()
    if len(trimmed) < heuristics.question_min_chars:
        return False
    if "?" in trimmed:
        return True
    return bool(_QUESTION_OPENER.match(trimmed)) and len(trimmed) <= heuristics.question_max_chars


class RollingTranscriptBuffer:
    """Bounded list of turns; pushing beyond max_turns drops the oldest."""

    def __init__(self, max_turns: int = 16) -> None:
        self._turns: deque[Turn] = deque(maxlen=max(1, max_turns))

    @property
    def max_turns(self) -> int:
        return self._turns.maxlen or 0

    def __len__(self) -> int:
        return len(self._turns)

    def push(self, speaker_label: str, text: str) -> Turn:
        turn = Turn(speaker_label=speaker_label, text=text)
        self._turns.append(turn)
        return turn

    def clear(self) -> None:
        self._turns.clear()

    def snapshot(self) -> list[Turn]:
        return list(self._turns)

    def tail(self, max_turns: int) -> list[Turn]:
        n = max(0, int(max_turns))
        if n == 0:
            return []
        return list(self._turns)[-n:]

    def format_tail(self, max_turns: int) -> str:
        """'Label: text' lines for the most recent turns."""
        return format_turns(self.tail(max_turns))

    def most_recent_question(
        self,
        lookback: int = 24,
        heuristics: QuestionHeuristics = DEFAULT_HEURISTICS,
    ) -> Optional[Turn]:
        """
        Walk the last `lookback` turns backwards. Prefer a "Them" question, then a question
        from anyone other than "You", then any question.
        """
        window = self.tail(max(1, lookback))
        most_recent: Optional[Turn] = None
        most_recent_not_you: Optional[Turn] = None
        for turn in reversed(window):
            if not looks_like_question(turn.text, heuristics):
                continue
            if turn.speaker_label == THEM:
                return turn
            if most_recent is None:
                most_recent = turn
            if most_recent_not_you is None and turn.speaker_label != YOU:
                most_recent_not_you = turn
        return most_recent_not_you or most_recent


def format_turns(turns: Iterable[Turn]) -> str:
    return "\n".join(t.as_line() for t in turns)
