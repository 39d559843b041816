"""Application configuration. Loads from env vars."""
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """App settings. Override via environment variables."""

    # Streaming recognition (Deepgram /v1/listen). Key is required to start a call.
    DEEPGRAM_API_KEY: str = ""
    DEEPGRAM_URL: str = "wss://api.deepgram.com/v1/listen"
    DEEPGRAM_MODEL: str = "general"
    DEEPGRAM_LANGUAGE: str = "en"
    ENDPOINTING_MS: int = 450  # provider-side silence before a result is final
    UTTERANCE_END_MS: int = 1100  # gap that produces an UtteranceEnd message

    # Audio defaults: PCM 16-bit; the client may override rate/channels per call
    SAMPLE_RATE: int = 16000
    CHANNELS: int = 2
    MIN_SAMPLE_RATE: int = 8000

    # Transport resilience
    AUDIO_QUEUE_MAX_FRAMES: int = 250  # frames kept while disconnected (oldest dropped)
    RECONNECT_BASE_DELAY_SEC: float = 1.0
    RECONNECT_MAX_DELAY_SEC: float = 10.0
    KEEPALIVE_INTERVAL_SEC: float = 2.0
    KEEPALIVE_SILENCE_SEC: float = 8.0  # send KeepAlive when no audio for this long

    # Recording: one WAV per call, written incrementally
    RECORDING_DIR: str = "./recordings"

    # Call assist behaviour
    CALL_MODE: Literal["multichannel", "diarized"] = "multichannel"
    AUTO_SAVE_TO_MEMORY: bool = True
    AUTO_SUGGEST: bool = True
    AUTO_SUMMARY: bool = True
    ROLLING_TRANSCRIPT_MAX_TURNS: int = 16
    SUGGESTION_TAIL_TURNS: int = 10

    # Heuristic thresholds (tuned empirically; keep configurable)
    SUGGEST_MIN_CHARS: int = 12
    SUGGEST_LONG_CHARS: int = 64
    QUESTION_MIN_CHARS: int = 6
    QUESTION_MAX_CHARS: int = 220
    QUESTION_LOOKBACK_TURNS: int = 24

    # Chat completion: Cloudflare Workers AI text generation
    CLOUDFLARE_ACCOUNT_ID: str = ""
    CLOUDFLARE_API_TOKEN: str = ""
    CHAT_CF_MODEL: str = "@cf/meta/llama-3.1-8b-instruct"
    CHAT_MAX_TOKENS: int = 1024
    CHAT_TIMEOUT_SEC: float = 45.0
    SUGGESTION_TEMPERATURE: float = 0.5
    SUMMARY_TEMPERATURE: float = 0.4

    # Memory / retrieval (Supermemory-compatible document API)
    SUPERMEMORY_API_KEY: str = ""
    SUPERMEMORY_BASE_URL: str = "https://api.supermemory.ai"
    SUPERMEMORY_CONTAINER_TAG: str = "callassist"
    MEMORY_TIMEOUT_SEC: float = 30.0
    MEMORY_SEARCH_LIMIT: int = 4

    # Logging: level (DEBUG, INFO, WARNING, ERROR); file path empty = console only.
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
