"""
CallSessionOrchestrator: owns the single active call.

One call = one WavRecorder + one StreamingTranscriptionSession. Audio frames from the
caller go to both; recognition events come back through the session's EventBus, get
labeled, and are republished on self.events for the UI.

Out of band (background tasks, never awaited by the caller):
- reply suggestions for the other party's turns: one generation in flight, one pending
  slot that a newer trigger overwrites (no queue);
- utterance persistence to memory (fire-and-forget);
- an end-of-call summary after stop().

Results arriving for a call that is no longer active are dropped, not cancelled.
Public methods are meant to run on one event loop; a threaded host must serialize calls.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Optional

from callassist.asr.base import Caption, RecognizedUtterance, SessionStatus, StreamingConfig, StreamMetadata
from callassist.asr.streaming_session import StreamingTranscriptionSession
from callassist.audio.recorder import WavRecorder
from callassist.config import Settings
from callassist.errors import MissingCredentialsError
from callassist.events import (
    CaptionEvent,
    ErrorEvent,
    EventBus,
    EventType,
    MetadataEvent,
    StatusEvent,
    StoppedEvent,
    SuggestionEvent,
    SummaryEvent,
)
from callassist.models import CallMode, PendingSuggestion, SessionInfo, StartParams, Turn, Utterance
from callassist.services.chat import ChatService, build_suggestion_prompt, build_summary_prompt
from callassist.services.memory import MemoryService, create_stable_custom_id, format_grounding_context
from callassist.transcript.labels import LabelConfig, caption_label, is_their_turn, speaker_label
from callassist.transcript.rolling import (
    QuestionHeuristics,
    RollingTranscriptBuffer,
    format_turns,
    should_trigger_suggestion,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[StreamingConfig], StreamingTranscriptionSession]
RecorderFactory = Callable[[str, int, int], WavRecorder]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


class CallSessionOrchestrator:
    """Construct once at startup and pass it to whatever drives calls (HTTP layer, tests)."""

    def __init__(
        self,
        settings: Settings,
        chat: Optional[ChatService] = None,
        memory: Optional[MemoryService] = None,
        session_factory: Optional[SessionFactory] = None,
        recorder_factory: Optional[RecorderFactory] = None,
    ) -> None:
        self._settings = settings
        self._chat = chat
        self._memory = memory
        self._session_factory: SessionFactory = session_factory or StreamingTranscriptionSession
        self._recorder_factory: RecorderFactory = recorder_factory or WavRecorder
        self.events = EventBus()

        self._heuristics = QuestionHeuristics(
            suggest_min_chars=settings.SUGGEST_MIN_CHARS,
            suggest_long_chars=settings.SUGGEST_LONG_CHARS,
            question_min_chars=settings.QUESTION_MIN_CHARS,
            question_max_chars=settings.QUESTION_MAX_CHARS,
        )
        self._start_lock = asyncio.Lock()

        # Active call state
        self._info: Optional[SessionInfo] = None
        self._session: Optional[StreamingTranscriptionSession] = None
        self._recorder: Optional[WavRecorder] = None
        self._mode = CallMode.MULTICHANNEL
        self._labels = LabelConfig()
        self._auto_save_to_memory = settings.AUTO_SAVE_TO_MEMORY
        self._auto_suggest = settings.AUTO_SUGGEST
        self._auto_summary = settings.AUTO_SUMMARY
        self._unsubscribers: list[Callable[[], None]] = []
        self._wired_session_id: Optional[str] = None

        self._turns = RollingTranscriptBuffer(settings.ROLLING_TRANSCRIPT_MAX_TURNS)
        self._suggestion_in_flight = False
        self._pending_suggestion: Optional[PendingSuggestion] = None
        self._background: set[asyncio.Task] = set()

    # --- queries ---

    @property
    def active_session(self) -> Optional[SessionInfo]:
        return self._info

    def _is_active(self, session_id: str) -> bool:
        return self._info is not None and self._info.session_id == session_id

    def get_transcript_tail(self, max_turns: int = 12) -> str:
        return self._turns.format_tail(max_turns)

    def get_most_recent_question(self, lookback: Optional[int] = None) -> Optional[Turn]:
        n = lookback if lookback is not None else self._settings.QUESTION_LOOKBACK_TURNS
        return self._turns.most_recent_question(n, self._heuristics)

    # --- lifecycle ---

    def _recording_path(self, session_id: str) -> str:
        now = datetime.now(timezone.utc)
        stamp = now.strftime("%Y-%m-%d_%H-%M-%S-") + f"{now.microsecond // 1000:03d}"
        return os.path.join(self._settings.RECORDING_DIR, f"call_{stamp}_{session_id[:8]}.wav")

    def _streaming_config(
        self, params: StartParams, mode: CallMode, api_key: str, sample_rate: int, channels: int
    ) -> StreamingConfig:
        s = self._settings
        return StreamingConfig(
            api_key=api_key,
            sample_rate=sample_rate,
            channels=channels,
            url=s.DEEPGRAM_URL,
            model=params.model or s.DEEPGRAM_MODEL,
            language=params.language or s.DEEPGRAM_LANGUAGE,
            endpointing_ms=params.endpointing_ms if params.endpointing_ms is not None else s.ENDPOINTING_MS,
            utterance_end_ms=params.utterance_end_ms if params.utterance_end_ms is not None else s.UTTERANCE_END_MS,
            multichannel=mode is CallMode.MULTICHANNEL and channels >= 2,
            diarize=mode is CallMode.DIARIZED,
            keywords=list(params.keywords or []),
            keyterms=list(params.keyterms or []),
            max_queued_frames=s.AUDIO_QUEUE_MAX_FRAMES,
            reconnect_base_delay=s.RECONNECT_BASE_DELAY_SEC,
            reconnect_max_delay=s.RECONNECT_MAX_DELAY_SEC,
            keepalive_interval=s.KEEPALIVE_INTERVAL_SEC,
            keepalive_silence=s.KEEPALIVE_SILENCE_SEC,
        )

    async def start(self, params: StartParams) -> SessionInfo:
        """
        Start a call, or return the active one unchanged.

        Raises MissingCredentialsError when no recognition API key is configured, or
        whatever the recorder raises; nothing is left half-constructed. A recognizer
        that cannot connect yet does not fail the call: it reports `error` and retries.
        """
        async with self._start_lock:
            if self._info is not None:
                return self._info

            api_key = (self._settings.DEEPGRAM_API_KEY or "").strip()
            if not api_key:
                raise MissingCredentialsError("DEEPGRAM_API_KEY not configured")

            s = self._settings
            mode = CallMode(params.mode or s.CALL_MODE)
            channels = max(1, int(round(params.channels if params.channels is not None else s.CHANNELS)))
            sample_rate = params.sample_rate if params.sample_rate is not None else s.SAMPLE_RATE
            sample_rate = max(s.MIN_SAMPLE_RATE, int(round(sample_rate)))
            you_channel = params.you_channel_index if params.you_channel_index is not None else 0
            you_channel = max(0, min(channels - 1, int(round(you_channel))))
            you_speaker = (
                max(0, int(round(params.diarize_you_speaker_id)))
                if params.diarize_you_speaker_id is not None
                else None
            )

            session_id = str(uuid.uuid4())
            recording_path = self._recording_path(session_id)
            labels = LabelConfig(you_channel_index=you_channel, diarize_you_speaker_id=you_speaker)

            self._mode = mode
            self._labels = labels
            self._auto_save_to_memory = _flag(params.auto_save_to_memory, self._settings.AUTO_SAVE_TO_MEMORY)
            self._auto_suggest = _flag(params.auto_suggest, self._settings.AUTO_SUGGEST)
            self._auto_summary = _flag(params.auto_summary, self._settings.AUTO_SUMMARY)
            self._turns.clear()
            self._suggestion_in_flight = False
            self._pending_suggestion = None

            session: Optional[StreamingTranscriptionSession] = None
            recorder: Optional[WavRecorder] = None
            try:
                recorder = self._recorder_factory(recording_path, sample_rate, channels)
                session = self._session_factory(
                    self._streaming_config(params, mode, api_key, sample_rate, channels)
                )
                self._session = session
                self._recorder = recorder
                self._wired_session_id = session_id
                self._unsubscribers = self._wire(session, session_id)
                await session.start()
            except BaseException:
                logger.exception("Call start failed; tearing down")
                # the call never became active: its closing status is not forwarded
                for unsubscribe in self._unsubscribers:
                    unsubscribe()
                self._unsubscribers = []
                self._session = None
                self._recorder = None
                self._wired_session_id = None
                await self._teardown(session, recorder, [])
                raise

            self._info = SessionInfo(
                session_id=session_id,
                mode=mode,
                sample_rate=sample_rate,
                channels=channels,
                started_at=_now_ms(),
                recording_path=recording_path,
            )
            logger.info("Call %s started (%s, %d Hz, %d ch)", session_id, mode.value, sample_rate, channels)
            self.events.publish(EventType.STARTED, self._info)
            return self._info

    async def stop(self, session_id: str) -> None:
        """Stop the active call. Unknown or inactive ids are ignored."""
        info = self._info
        if info is None or info.session_id != session_id:
            return
        turns = self._turns.snapshot()
        started_at = info.started_at
        ended_at = _now_ms()

        # Inactive from here on: frames, late results and repeat stops are ignored
        self._info = None
        self._wired_session_id = None
        self._turns.clear()
        self._pending_suggestion = None
        session, recorder = self._session, self._recorder
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        self._session = None
        self._recorder = None
        await self._teardown(session, recorder, unsubscribers)

        logger.info("Call %s stopped (%d turns in window)", session_id, len(turns))
        self.events.publish(EventType.STOPPED, StoppedEvent(session_id=session_id))

        if self._auto_summary and turns and self._chat is not None:
            self._spawn(self._generate_summary(session_id, turns, started_at, ended_at))

    async def _teardown(
        self,
        session: Optional[StreamingTranscriptionSession],
        recorder: Optional[WavRecorder],
        unsubscribers: list[Callable[[], None]],
    ) -> None:
        """Best-effort: stop the stream and close the recording independently."""
        if session is not None:
            try:
                await session.stop()
            except Exception as e:
                logger.warning("Stream stop failed: %s", e)
        for unsubscribe in unsubscribers:
            unsubscribe()
        if recorder is not None:
            try:
                recorder.close()
            except Exception as e:
                logger.warning("Recorder close failed: %s", e)

    async def aclose(self) -> None:
        """Stop the active call (if any) and wait for background work. Used on shutdown."""
        if self._info is not None:
            await self.stop(self._info.session_id)
        await self.wait_for_background()

    async def wait_for_background(self) -> None:
        """Wait until suggestion/summary/memory tasks (including ones they spawn) finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # --- audio ---

    async def handle_audio_frame(self, session_id: str, pcm: bytes) -> None:
        """Record and forward one PCM frame. Frames for any other session id are ignored."""
        if not self._is_active(session_id):
            return
        session, recorder = self._session, self._recorder
        if session is None or recorder is None:
            return
        try:
            recorder.write(pcm)
        except OSError as e:
            logger.warning("Recording write failed: %s", e)
            self._publish_error(session_id, e)
        await session.send_audio(pcm)

    # --- session event wiring ---

    def _wire(self, session: StreamingTranscriptionSession, session_id: str) -> list[Callable[[], None]]:
        bus = session.events
        return [
            bus.subscribe(EventType.STATUS, lambda status: self._on_status(session_id, status)),
            bus.subscribe(EventType.CAPTION, lambda caption: self._on_caption(session_id, caption)),
            bus.subscribe(EventType.UTTERANCE, lambda utt: self._on_utterance(session_id, utt)),
            bus.subscribe(EventType.METADATA, lambda meta: self._on_metadata(session_id, meta)),
        ]

    def _on_status(self, session_id: str, status: SessionStatus) -> None:
        self.events.publish(
            EventType.STATUS,
            StatusEvent(
                session_id=session_id,
                state=status.state.value,
                code=status.code,
                reason=status.reason,
                message=status.message,
            ),
        )

    def _on_caption(self, session_id: str, caption: Caption) -> None:
        if session_id != self._wired_session_id:
            return
        self.events.publish(
            EventType.CAPTION,
            CaptionEvent(
                session_id=session_id,
                channel_index=caption.channel_index,
                speaker_label=caption_label(self._mode, self._labels, caption.channel_index),
                text=caption.text,
            ),
        )

    def _on_metadata(self, session_id: str, meta: StreamMetadata) -> None:
        self.events.publish(
            EventType.METADATA,
            MetadataEvent(
                session_id=session_id,
                request_id=meta.request_id,
                channels=meta.channels,
                duration=meta.duration,
            ),
        )

    def _on_utterance(self, session_id: str, recognized: RecognizedUtterance) -> None:
        # Results draining from a stopped stream belong to no call
        if session_id != self._wired_session_id:
            return
        utterance = Utterance(
            session_id=session_id,
            utterance_id=str(uuid.uuid4()),
            channel_index=recognized.channel_index,
            speaker_id=recognized.speaker_id,
            speaker_label=speaker_label(self._mode, self._labels, recognized.channel_index, recognized.speaker_id),
            text=recognized.text,
            start_ms=recognized.start_ms,
            end_ms=recognized.end_ms,
        )
        self.events.publish(EventType.UTTERANCE, utterance)
        self._turns.push(utterance.speaker_label, utterance.text)

        if self._auto_suggest and is_their_turn(
            self._mode, self._labels, utterance.channel_index, utterance.speaker_id
        ):
            self._maybe_queue_suggestion(
                session_id, PendingSuggestion(utterance_id=utterance.utterance_id, utterance_text=utterance.text)
            )
        if self._auto_save_to_memory and self._memory is not None:
            self._spawn(self._persist_utterance(utterance))

    # --- suggestions ---

    def _maybe_queue_suggestion(self, session_id: str, request: PendingSuggestion) -> None:
        if not self._is_active(session_id) or self._chat is None:
            return
        if not should_trigger_suggestion(request.utterance_text, self._heuristics):
            return
        if self._suggestion_in_flight:
            # depth-1 coalescing: the newest trigger replaces whatever was waiting
            self._pending_suggestion = request
            return
        self._suggestion_in_flight = True
        self._spawn(self._run_suggestion(session_id, request))

    async def _grounding_context(self, query: str) -> str:
        search = getattr(self._memory, "search_documents", None)
        if search is None:
            return ""
        try:
            docs = await search(query, self._settings.MEMORY_SEARCH_LIMIT)
        except Exception as e:
            logger.warning("Knowledge base lookup failed: %s", e)
            return ""
        return format_grounding_context(docs)

    async def _run_suggestion(self, session_id: str, request: PendingSuggestion) -> None:
        try:
            transcript_tail = self._turns.format_tail(self._settings.SUGGESTION_TAIL_TURNS)
            context = await self._grounding_context(request.utterance_text)
            suggestion = await self._chat.complete(
                build_suggestion_prompt(request.utterance_text, transcript_tail),
                context or None,
                self._settings.SUGGESTION_TEMPERATURE,
            )
            if not (suggestion or "").strip():
                return
            if not self._is_active(session_id):
                logger.debug("Dropping suggestion for inactive call %s", session_id)
                return
            self.events.publish(
                EventType.SUGGESTION,
                SuggestionEvent(session_id=session_id, utterance_id=request.utterance_id, suggestion=suggestion),
            )
        except Exception as e:
            if self._is_active(session_id):
                logger.warning("Suggestion failed: %s", e)
                self._publish_error(session_id, e)
            else:
                logger.debug("Suggestion failed for inactive call %s: %s", session_id, e)
        finally:
            # A newer call resets this state itself; only the owning call continues the chain
            if self._is_active(session_id):
                self._suggestion_in_flight = False
                pending = self._pending_suggestion
                self._pending_suggestion = None
                if pending is not None:
                    self._suggestion_in_flight = True
                    self._spawn(self._run_suggestion(session_id, pending))

    # --- memory / summary ---

    async def _persist_utterance(self, utterance: Utterance) -> None:
        stable_input = "|".join(
            str(part)
            for part in (
                utterance.session_id,
                utterance.channel_index,
                "" if utterance.speaker_id is None else utterance.speaker_id,
                "" if utterance.start_ms is None else utterance.start_ms,
                "" if utterance.end_ms is None else utterance.end_ms,
                utterance.text,
            )
        )
        metadata: dict[str, Any] = {
            "type": "call_utterance",
            "source": "call",
            "callId": utterance.session_id,
            "speaker": utterance.speaker_label,
            "channelIndex": utterance.channel_index,
        }
        if utterance.speaker_id is not None:
            metadata["speakerId"] = utterance.speaker_id
        if utterance.start_ms is not None:
            metadata["startMs"] = utterance.start_ms
        if utterance.end_ms is not None:
            metadata["endMs"] = utterance.end_ms
        try:
            await self._memory.add_memory(
                f"{utterance.speaker_label}: {utterance.text}",
                create_stable_custom_id("call_utt", stable_input),
                metadata,
            )
        except Exception as e:
            logger.warning("Saving utterance to memory failed: %s", e)
            if self._is_active(utterance.session_id):
                self._publish_error(utterance.session_id, e)

    async def _generate_summary(self, session_id: str, turns: list[Turn], started_at: int, ended_at: int) -> None:
        def _superseded() -> bool:
            return self._info is not None and self._info.session_id != session_id

        try:
            summary = await self._chat.complete(
                build_summary_prompt(format_turns(turns)),
                None,
                self._settings.SUMMARY_TEMPERATURE,
            )
            if not (summary or "").strip():
                return
            if _superseded():
                logger.info("Discarding summary for %s: another call is active", session_id)
                return
            self.events.publish(EventType.SUMMARY, SummaryEvent(session_id=session_id, summary=summary))

            if self._memory is None:
                return
            await self._memory.add_memory(
                summary,
                create_stable_custom_id("call_summary", session_id),
                {
                    "type": "call_summary",
                    "source": "call",
                    "callId": session_id,
                    "startedAt": started_at,
                    "endedAt": ended_at,
                },
            )
        except Exception as e:
            if _superseded():
                logger.debug("Summary failed for superseded call %s: %s", session_id, e)
                return
            logger.warning("Summary failed for %s: %s", session_id, e)
            self._publish_error(session_id, e)

    # --- helpers ---

    def _publish_error(self, session_id: str, error: BaseException) -> None:
        self.events.publish(EventType.ERROR, ErrorEvent(session_id=session_id, message=_error_message(error)))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task


def _flag(value: Optional[bool], default: bool) -> bool:
    return default if value is None else bool(value)
