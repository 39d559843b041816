"""
Typed event dispatch.

Every component publishes on an EventBus keyed by EventType; consumers subscribe
explicitly per type (or to all types). Payloads are plain dataclasses so they can
be sent as JSON to a UI without translation.
"""
from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, is_dataclass
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    STATUS = "status"
    CAPTION = "caption"
    UTTERANCE = "utterance"
    METADATA = "metadata"
    SUGGESTION = "suggestion"
    SUMMARY = "summary"
    ERROR = "error"
    STARTED = "started"
    STOPPED = "stopped"


Handler = Callable[[Any], None]
CatchAllHandler = Callable[[EventType, Any], None]


class EventBus:
    """
    Synchronous publish/subscribe. publish() calls handlers in subscription order;
    a failing handler is logged and does not stop the others.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[Handler]] = defaultdict(list)
        self._catch_all: list[CatchAllHandler] = []

    def subscribe(self, event_type: EventType, handler: Handler) -> Callable[[], None]:
        """Register handler for one event type. Returns an unsubscribe callable."""
        self._handlers[event_type].append(handler)

        def _unsubscribe() -> None:
            try:
                self._handlers[event_type].remove(handler)
            except ValueError:
                pass

        return _unsubscribe

    def subscribe_all(self, handler: CatchAllHandler) -> Callable[[], None]:
        """Register handler(event_type, payload) for every event type."""
        self._catch_all.append(handler)

        def _unsubscribe() -> None:
            try:
                self._catch_all.remove(handler)
            except ValueError:
                pass

        return _unsubscribe

    def publish(self, event_type: EventType, payload: Any) -> None:
        for handler in list(self._handlers.get(event_type, ())):
            try:
                handler(payload)
            except Exception:
                logger.exception("Event handler failed for %s", event_type.value)
        for handler in list(self._catch_all):
            try:
                handler(event_type, payload)
            except Exception:
                logger.exception("Catch-all event handler failed for %s", event_type.value)


# --- Orchestrator-level payloads (what the UI sees) ---


@dataclass(frozen=True)
class StatusEvent:
    session_id: str
    state: str
    code: Optional[int] = None
    reason: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class CaptionEvent:
    session_id: str
    channel_index: int
    speaker_label: str
    text: str


@dataclass(frozen=True)
class MetadataEvent:
    session_id: str
    request_id: Optional[str] = None
    channels: Optional[int] = None
    duration: Optional[float] = None


@dataclass(frozen=True)
class SuggestionEvent:
    session_id: str
    utterance_id: str
    suggestion: str


@dataclass(frozen=True)
class SummaryEvent:
    session_id: str
    summary: str


@dataclass(frozen=True)
class ErrorEvent:
    session_id: str
    message: str


@dataclass(frozen=True)
class StoppedEvent:
    session_id: str


def event_to_json(event_type: EventType, payload: Any) -> str:
    """Serialize one event as {"type": ..., **fields} for the WebSocket client."""
    body: dict[str, Any] = {"type": event_type.value}
    if is_dataclass(payload) and not isinstance(payload, type):
        body.update(asdict(payload))
    elif isinstance(payload, dict):
        body.update(payload)
    return json.dumps(body, default=str)
