"""
StreamingTranscriptionSession: one long-lived WebSocket to the streaming recognizer.

- start(): open the socket (Token auth header), flush audio queued while disconnected,
  start the keepalive task and the reader task.
- send_audio(): send PCM when open; otherwise keep it in a bounded queue (oldest dropped)
  so a transient disconnect cannot grow memory without limit.
- Failed connect or unexpected close: one reconnect timer with exponential backoff (capped). Never after stop().
- Reader: Results / UtteranceEnd / Metadata JSON messages -> captions, utterances, metadata
  published on self.events. Malformed messages are dropped.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import defaultdict, deque
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from callassist.asr.accumulator import ChannelAccumulator, parse_words
from callassist.asr.base import (
    Caption,
    ConnectionState,
    SessionStatus,
    StreamingConfig,
    StreamMetadata,
    build_listen_url,
)
from callassist.errors import MissingCredentialsError
from callassist.events import EventBus, EventType

logger = logging.getLogger(__name__)

KEEPALIVE_MESSAGE = json.dumps({"type": "KeepAlive"})
CLOSE_STREAM_MESSAGE = json.dumps({"type": "CloseStream"})

# (url, headers) -> connected websocket (aiohttp.ClientWebSocketResponse or compatible)
Connector = Callable[[str, dict[str, str]], Awaitable[Any]]


class StreamingTranscriptionSession:
    """
    One recognition stream. Publishes on self.events:
    STATUS (SessionStatus), CAPTION (Caption), UTTERANCE (RecognizedUtterance),
    METADATA (StreamMetadata).
    """

    def __init__(
        self,
        config: StreamingConfig,
        connector: Optional[Connector] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._connector = connector or self._aiohttp_connect
        self._clock = clock
        self.events = EventBus()

        self._http: Optional[aiohttp.ClientSession] = None
        self._ws: Any = None
        self._status = SessionStatus(ConnectionState.IDLE)
        self._stopping = False

        self._reconnect_attempts = 0
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._last_audio_sent = 0.0

        self._audio_queue: deque[bytes] = deque(maxlen=max(1, config.max_queued_frames))
        self._send_lock = asyncio.Lock()
        self._channels: dict[int, ChannelAccumulator] = defaultdict(ChannelAccumulator)

    # --- status ---

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def is_open(self) -> bool:
        ws = self._ws
        return self._status.state is ConnectionState.OPEN and ws is not None and not ws.closed

    @property
    def queued_frames(self) -> int:
        return len(self._audio_queue)

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def has_pending_reconnect(self) -> bool:
        return self._reconnect_handle is not None

    def _set_status(self, state: ConnectionState, **details: Any) -> None:
        self._status = self._status.transition(state, **details)
        logger.debug("Stream status -> %s", self._status)
        self.events.publish(EventType.STATUS, self._status)

    # --- connection lifecycle ---

    async def _aiohttp_connect(self, url: str, headers: dict[str, str]) -> aiohttp.ClientWebSocketResponse:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        return await self._http.ws_connect(url, headers=headers)

    async def start(self) -> None:
        """Open the stream. No-op if already open or connecting.

        Only a missing API key raises. A failed connect publishes `error` and
        schedules a reconnect, so audio sent meanwhile is queued.
        """
        if self._status.state in (ConnectionState.OPEN, ConnectionState.CONNECTING):
            return
        if not (self._config.api_key or "").strip():
            raise MissingCredentialsError("Deepgram API key is missing")

        self._stopping = False
        self._last_audio_sent = 0.0
        self._channels.clear()
        self._cancel_reconnect()
        self._set_status(ConnectionState.CONNECTING)

        url = build_listen_url(self._config)
        headers = {"Authorization": f"Token {self._config.api_key}"}
        try:
            ws = await self._connector(url, headers)
        except Exception as e:
            logger.warning("Stream connect failed: %s", e)
            if not self._stopping:
                self._set_status(ConnectionState.ERROR, message=str(e) or type(e).__name__)
                self._schedule_reconnect()
            return

        if self._stopping:
            # stop() ran while we were connecting
            await _close_quietly(ws)
            if self._status.state is not ConnectionState.CLOSED:
                self._set_status(ConnectionState.CLOSED)
            return

        self._ws = ws
        self._reconnect_attempts = 0
        self._set_status(ConnectionState.OPEN)
        logger.info(
            "Stream open (%d Hz, %d ch, multichannel=%s, diarize=%s)",
            self._config.sample_rate,
            self._config.channels,
            self._config.multichannel,
            self._config.diarize,
        )
        self._start_keepalive()
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        await self._flush_audio_queue()

    async def stop(self) -> None:
        """Graceful close: CloseStream then close. Cancels timers; never reconnects afterwards."""
        if self._stopping:
            return
        self._stopping = True
        self._set_status(ConnectionState.CLOSING)
        self._stop_keepalive()
        self._cancel_reconnect()

        ws = self._ws
        if ws is not None:
            try:
                if not ws.closed:
                    await ws.send_str(CLOSE_STREAM_MESSAGE)
            except Exception as e:
                logger.debug("CloseStream send failed: %s", e)
            await _close_quietly(ws)

        reader = self._reader_task
        if reader is not None and not reader.done():
            try:
                await asyncio.wait_for(reader, timeout=5.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                reader.cancel()
        self._reader_task = None
        self._ws = None

        if self._status.state is not ConnectionState.CLOSED:
            self._set_status(ConnectionState.CLOSED)
        if self._http is not None:
            await self._http.close()
            self._http = None
        logger.info("Stream stopped")

    # --- reconnect ---

    def reconnect_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt N: base * 2**N, capped at the ceiling."""
        base = self._config.reconnect_base_delay
        ceiling = self._config.reconnect_max_delay
        return min(ceiling, base * (2 ** max(0, attempt)))

    def _schedule_reconnect(self) -> None:
        if self._reconnect_handle is not None or self._stopping:
            return
        delay = self.reconnect_delay(self._reconnect_attempts)
        self._reconnect_attempts += 1
        logger.info("Reconnecting in %.1fs (attempt %d)", delay, self._reconnect_attempts)
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        if self._stopping:
            return
        self._reconnect_task = asyncio.ensure_future(self._reconnect())

    async def _reconnect(self) -> None:
        # start() schedules the next attempt itself when the connect fails
        await self.start()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    # --- keepalive ---

    def _start_keepalive(self) -> None:
        self._stop_keepalive()
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    def _stop_keepalive(self) -> None:
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.keepalive_interval)
            ws = self._ws
            if ws is None or ws.closed or not self._last_audio_sent:
                continue
            if self._clock() - self._last_audio_sent < self._config.keepalive_silence:
                continue
            try:
                await ws.send_str(KEEPALIVE_MESSAGE)
                logger.debug("KeepAlive sent")
            except Exception as e:
                # the reader surfaces the broken socket
                logger.debug("KeepAlive send failed: %s", e)

    # --- audio ---

    async def send_audio(self, frame: bytes) -> None:
        """Send one PCM frame, or queue it (bounded, oldest dropped) while not open."""
        if not frame:
            return
        if not self.is_open:
            if len(self._audio_queue) == self._audio_queue.maxlen:
                logger.debug("Audio queue full (%d); dropping oldest frame", self._audio_queue.maxlen)
            self._audio_queue.append(frame)
            return
        async with self._send_lock:
            await self._send_frame(frame)

    async def _send_frame(self, frame: bytes) -> bool:
        ws = self._ws
        if ws is None:
            self._audio_queue.append(frame)
            return False
        try:
            await ws.send_bytes(frame)
            self._last_audio_sent = self._clock()
            return True
        except Exception as e:
            logger.warning("Audio send failed: %s", e)
            self._audio_queue.appendleft(frame)
            if self._status.state is ConnectionState.OPEN:
                self._set_status(ConnectionState.ERROR, message=str(e) or type(e).__name__)
            # closing ends the reader, which schedules the reconnect
            await _close_quietly(ws)
            return False

    async def _flush_audio_queue(self) -> None:
        async with self._send_lock:
            if self._audio_queue:
                logger.info("Flushing %d queued audio frames", len(self._audio_queue))
            while self._audio_queue and self._ws is not None:
                frame = self._audio_queue.popleft()
                if not await self._send_frame(frame):
                    break

    # --- reader ---

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self.handle_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self.handle_message(msg.data.decode("utf-8", errors="replace"))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    err = ws.exception()
                    self._set_status(ConnectionState.ERROR, message=str(err or "websocket error"))
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Stream reader failed: %s", e)
            if self._status.state not in (ConnectionState.CLOSED, ConnectionState.ERROR):
                self._set_status(ConnectionState.ERROR, message=str(e) or type(e).__name__)
        finally:
            self._on_socket_closed(ws)

    def _on_socket_closed(self, ws: Any) -> None:
        self._stop_keepalive()
        if self._ws is ws:
            self._ws = None
        if self._status.state is not ConnectionState.CLOSED:
            code = getattr(ws, "close_code", None)
            self._set_status(ConnectionState.CLOSED, code=code, reason="")
        if not self._stopping:
            logger.warning("Stream closed unexpectedly (code=%s)", getattr(ws, "close_code", None))
            self._schedule_reconnect()

    def handle_message(self, raw: str) -> None:
        """Dispatch one JSON message. Anything that isn't a typed JSON object is dropped."""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            return
        if not isinstance(message, dict):
            return
        logger.debug("Stream message: %s", message.get("type"))
        kind = message.get("type")
        if kind == "Results":
            self._handle_results(message)
        elif kind == "UtteranceEnd":
            self._handle_utterance_end(message)
        elif kind == "Metadata":
            self._handle_metadata(message)

    def _handle_results(self, message: dict[str, Any]) -> None:
        channel_index = _parse_channel_index(message)
        transcript, words = _parse_transcript(message)
        acc = self._channels[channel_index]

        if message.get("is_final") is not True:
            text = acc.accept_caption(transcript)
            if text is not None:
                self.events.publish(EventType.CAPTION, Caption(channel_index=channel_index, text=text))
            return

        acc.add_final(transcript, words)
        if message.get("speech_final") is True:
            self._finalize(channel_index)

    def _handle_utterance_end(self, message: dict[str, Any]) -> None:
        raw_channels = message.get("channel")
        if isinstance(raw_channels, list) and raw_channels and all(_is_int(c) for c in raw_channels):
            channels = list(raw_channels)
        else:
            channels = [_parse_channel_index(message)]
        last_word_end = message.get("last_word_end")
        end_ms = int(round(last_word_end * 1000)) if _is_number(last_word_end) else None
        for channel_index in channels:
            self._finalize(channel_index, end_ms_override=end_ms)

    def _handle_metadata(self, message: dict[str, Any]) -> None:
        request_id = message.get("request_id")
        channels = message.get("channels")
        duration = message.get("duration")
        self.events.publish(
            EventType.METADATA,
            StreamMetadata(
                request_id=request_id if isinstance(request_id, str) else None,
                channels=channels if _is_int(channels) else None,
                duration=float(duration) if _is_number(duration) else None,
            ),
        )

    def _finalize(self, channel_index: int, **kwargs: Any) -> None:
        acc = self._channels[channel_index]
        for utterance in acc.finalize(channel_index, self._config.diarize, **kwargs):
            self.events.publish(EventType.UTTERANCE, utterance)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_channel_index(message: dict[str, Any]) -> int:
    raw = message.get("channel_index")
    if isinstance(raw, list) and raw and _is_int(raw[0]):
        return raw[0]
    return 0


def _parse_transcript(message: dict[str, Any]) -> tuple[str, list]:
    channel = message.get("channel")
    if not isinstance(channel, dict):
        return "", []
    alternatives = channel.get("alternatives")
    if not isinstance(alternatives, list) or not alternatives or not isinstance(alternatives[0], dict):
        return "", []
    alt0 = alternatives[0]
    transcript = alt0.get("transcript")
    return (transcript if isinstance(transcript, str) else ""), parse_words(alt0.get("words"))


async def _close_quietly(ws: Any) -> None:
    try:
        await ws.close()
    except Exception as e:
        logger.debug("WebSocket close failed: %s", e)
