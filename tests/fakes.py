"""Test doubles for the recognition WebSocket and the chat/memory collaborators."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp


@dataclass
class FakeMessage:
    type: aiohttp.WSMsgType
    data: Any


class FakeWebSocket:
    """Enough of aiohttp.ClientWebSocketResponse for StreamingTranscriptionSession."""

    def __init__(self) -> None:
        self.sent_bytes: list[bytes] = []
        self.sent_text: list[str] = []
        self.closed = False
        self.close_code: Optional[int] = None
        self.send_failures = 0
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send_bytes(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("socket closed")
        if self.send_failures > 0:
            self.send_failures -= 1
            raise ConnectionResetError("connection reset by peer")
        self.sent_bytes.append(data)

    async def send_str(self, data: str) -> None:
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.sent_text.append(data)

    async def close(self, code: int = 1000) -> bool:
        if self.closed:
            return False
        self.closed = True
        self.close_code = code
        self._incoming.put_nowait(None)
        return True

    def exception(self) -> Optional[BaseException]:
        return None

    def feed(self, payload: dict) -> None:
        """Server -> client JSON message."""
        self._incoming.put_nowait(FakeMessage(aiohttp.WSMsgType.TEXT, json.dumps(payload)))

    def drop(self, code: int = 1006) -> None:
        """Server closes the connection without being asked."""
        self.closed = True
        self.close_code = code
        self._incoming.put_nowait(None)

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> FakeMessage:
        msg = await self._incoming.get()
        if msg is None:
            raise StopAsyncIteration
        return msg

    @property
    def control_messages(self) -> list[str]:
        return [json.loads(t)["type"] for t in self.sent_text]


class FakeConnector:
    """Connector callable; hands out a new FakeWebSocket per successful connect."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.sockets: list[FakeWebSocket] = []

    async def __call__(self, url: str, headers: dict[str, str]) -> FakeWebSocket:
        self.calls.append((url, headers))
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionRefusedError("connection refused")
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws

    @property
    def last_socket(self) -> FakeWebSocket:
        return self.sockets[-1]


class FakeChat:
    """ChatService double. Set `gate` to hold completions until the test releases them."""

    def __init__(self, reply: str = "Happy to send it over today.", error: Optional[Exception] = None) -> None:
        self.reply = reply
        self.error = error
        self.gate: Optional[asyncio.Event] = None
        self.calls: list[dict[str, Any]] = []

    async def complete(self, prompt: str, context: Optional[str] = None, temperature: float = 0.5) -> str:
        self.calls.append({"prompt": prompt, "context": context, "temperature": temperature})
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.reply


class FakeMemory:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.added: list[dict[str, Any]] = []

    async def add_memory(self, content: str, custom_id: str, metadata: dict[str, Any]) -> dict[str, Any]:
        if self.error is not None:
            raise self.error
        self.added.append({"content": content, "custom_id": custom_id, "metadata": metadata})
        return {"id": f"doc-{len(self.added)}"}


def results_message(
    transcript: str,
    *,
    channel: int = 0,
    channels: int = 2,
    is_final: bool = False,
    speech_final: bool = False,
    words: Optional[list[dict[str, Any]]] = None,
) -> dict[str, Any]:
    """A /v1/listen "Results" message."""
    return {
        "type": "Results",
        "channel_index": [channel, channels],
        "is_final": is_final,
        "speech_final": speech_final,
        "channel": {"alternatives": [{"transcript": transcript, "words": words or []}]},
    }


def word(text: str, start: float, end: float, speaker: Optional[int] = None) -> dict[str, Any]:
    item: dict[str, Any] = {"word": text.lower().strip(".,?!"), "punctuated_word": text, "start": start, "end": end}
    if speaker is not None:
        item["speaker"] = speaker
    return item


async def settle(rounds: int = 10) -> None:
    """Let scheduled tasks (reader, background work) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
