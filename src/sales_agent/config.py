"""
Configuration management for the restock voice agent.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_base_url: str
    port: int = 3001
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""

    # OpenAI (LLM + optional TTS)
    openai_api_key: str = ""
    openai_live_model: str = "gpt-4o-mini"
    openai_analysis_model: str = "gpt-4.1"
    openai_tts_model: str = "tts-1"
    openai_tts_voice: str = "nova"

    # Speech providers
    # - tts_provider: "azure" | "openai" | "none" (carrier <Say> only)
    # - stt_provider: "twilio" (carrier-native SpeechResult) | "azure"
    tts_provider: str = "azure"
    stt_provider: str = "twilio"
    azure_speech_key: str = ""
    azure_speech_region: str = ""
    azure_custom_voice_name: str = "luna"

    # Agent settings
    agent_name: str = "Sarah"
    company_name: str = "US Food Supplies"
    system_prompt: str = ""
    system_prompt_file: str = ""
    gather_timeout_seconds: int = 10
    speech_language: str = "en-US"

    # Storage / housekeeping
    conversation_history_dir: str = "conversation_history"
    temp_audio_dir: str = "temp_audio"
    audio_cleanup_seconds: float = 30.0
    session_grace_seconds: float = 60.0

    @property
    def base_url(self) -> str:
        """Public base URL without a trailing slash."""
        return self.public_base_url.rstrip("/")

    @property
    def history_path(self) -> Path:
        return Path(self.conversation_history_dir)

    @property
    def audio_path(self) -> Path:
        return Path(self.temp_audio_dir)

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_base_url:
            missing.append("PUBLIC_BASE_URL")
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.twilio_phone_number:
            missing.append("TWILIO_PHONE_NUMBER")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        tts = (self.tts_provider or "azure").strip().lower()
        if tts not in ("azure", "openai", "none"):
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'azure', 'openai' or 'none'."
            )

        stt = (self.stt_provider or "twilio").strip().lower()
        if stt not in ("twilio", "azure"):
            raise ConfigError(
                f"Invalid STT_PROVIDER '{self.stt_provider}'. Expected 'twilio' or 'azure'."
            )

        if tts == "azure" or stt == "azure":
            if not self.azure_speech_key:
                missing.append("AZURE_SPEECH_KEY")
            if not self.azure_speech_region:
                missing.append("AZURE_SPEECH_REGION")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_base_url=self.public_base_url,
            port=self.port,
            log_level=self.log_level,
            live_model=self.openai_live_model,
            analysis_model=self.openai_analysis_model,
            tts_provider=self.tts_provider,
            stt_provider=self.stt_provider,
            azure_region=self.azure_speech_region or "NOT SET",
            azure_voice=self.azure_custom_voice_name,
            agent_name=self.agent_name,
            company_name=self.company_name,
            gather_timeout_seconds=self.gather_timeout_seconds,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            twilio_phone_set=bool(self.twilio_phone_number),
            openai_key_set=bool(self.openai_api_key),
            azure_key_set=bool(self.azure_speech_key),
        )


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_base_url=os.getenv("PUBLIC_BASE_URL", ""),
        port=_get_int("PORT", 3001),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER", ""),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_live_model=os.getenv("OPENAI_LIVE_MODEL", "gpt-4o-mini"),
        openai_analysis_model=os.getenv("OPENAI_ANALYSIS_MODEL", "gpt-4.1"),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "tts-1"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "nova"),

        # Speech providers
        tts_provider=os.getenv("TTS_PROVIDER", "azure").strip().lower(),
        stt_provider=os.getenv("STT_PROVIDER", "twilio").strip().lower(),
        azure_speech_key=os.getenv("AZURE_SPEECH_KEY", ""),
        azure_speech_region=os.getenv("AZURE_SPEECH_REGION", ""),
        azure_custom_voice_name=os.getenv("AZURE_CUSTOM_VOICE_NAME", "luna"),

        # Agent settings
        agent_name=os.getenv("AGENT_NAME", "Sarah"),
        company_name=os.getenv("COMPANY_NAME", "US Food Supplies"),
        system_prompt=os.getenv("SYSTEM_PROMPT", ""),
        system_prompt_file=os.getenv("SYSTEM_PROMPT_FILE", ""),
        gather_timeout_seconds=_get_int("GATHER_TIMEOUT_SECONDS", 10),
        speech_language=os.getenv("SPEECH_LANGUAGE", "en-US"),

        # Storage / housekeeping
        conversation_history_dir=os.getenv("CONVERSATION_HISTORY_DIR", "conversation_history"),
        temp_audio_dir=os.getenv("TEMP_AUDIO_DIR", "temp_audio"),
        audio_cleanup_seconds=_get_float("AUDIO_CLEANUP_SECONDS", 30.0),
        session_grace_seconds=_get_float("SESSION_GRACE_SECONDS", 60.0),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
