"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("callbooking.config")


class Settings(BaseSettings):
    # Public URL Twilio uses to reach us (no trailing slash required)
    public_base_url: str = "http://localhost:8080"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    gather_timeout: int = 6
    min_speech_confidence: float = 0.0

    # ElevenLabs TTS
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = ""
    elevenlabs_url: str = "https://api.elevenlabs.io"
    tts_stability: float = 0.45
    tts_similarity_boost: float = 0.85
    tts_style: float = 0.3
    tts_cache_size: int = 256
    # Twilio abandons a webhook after 15s; LLM replies take up to llm_timeout_seconds
    tts_timeout_seconds: float = 4.0

    # CRM
    crm_webhook_url: str = ""
    crm_timeout_seconds: float = 10.0

    # Script
    agent_name: str = "Nicola"
    company_name: str = "Greenbug Energy"
    calendar_timezone: str = "Europe/London"

    # Conversation limits
    max_turns: int = 14
    max_state_retries: int = 3

    # Availability
    slot_capacity: int = 2
    lookahead_days: int = 14
    window_fallback: bool = False

    # LLM free-conversation mode ("rules" or "llm")
    conversation_mode: str = "rules"
    llm_provider: str = "claude"
    anthropic_api_key: str = ""
    llm_model: str = "claude-3-5-haiku-latest"
    llm_timeout_seconds: float = 8.0

    # Admin auth
    admin_api_key: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def base_url(self) -> str:
        return self.public_base_url.rstrip("/")

    @property
    def llm_enabled(self) -> bool:
        return self.conversation_mode == "llm"

    def missing_telephony(self) -> list[str]:
        """Names of the Twilio variables needed to place a call that are unset."""
        required = {
            "TWILIO_ACCOUNT_SID": self.twilio_account_sid,
            "TWILIO_AUTH_TOKEN": self.twilio_auth_token,
            "TWILIO_FROM_NUMBER": self.twilio_from_number,
            "PUBLIC_BASE_URL": self.public_base_url,
        }
        return [name for name, value in required.items() if not value]

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []
        _placeholders = {"sk-ant-...", "AC...", "your-voice-id"}

        if self.conversation_mode not in ("rules", "llm"):
            raise ValueError(
                f"CONVERSATION_MODE must be 'rules' or 'llm', got {self.conversation_mode!r}."
            )

        # LLM key: required only when the LLM strategy is switched on
        if self.llm_enabled and self.llm_provider == "claude":
            if not self.anthropic_api_key or self.anthropic_api_key in _placeholders:
                raise ValueError(
                    "ANTHROPIC_API_KEY is missing or still a placeholder. "
                    "Set it in .env or use CONVERSATION_MODE=rules."
                )

        if self.max_state_retries < 1 or self.max_turns < 1:
            raise ValueError("MAX_TURNS and MAX_STATE_RETRIES must be at least 1.")

        # Admin API key: warn if unset
        if not self.admin_api_key:
            if self.debug:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are open (DEBUG=true)."
                )
            else:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are locked in production. "
                    "Set ADMIN_API_KEY in .env to enable admin access."
                )

        missing = self.missing_telephony()
        if missing or self.twilio_account_sid in _placeholders:
            warnings.append(
                "Twilio not fully configured (%s). Outbound calls won't work."
                % ", ".join(missing or ["TWILIO_ACCOUNT_SID"])
            )

        if not self.elevenlabs_api_key or not self.elevenlabs_voice_id:
            warnings.append(
                "ELEVENLABS_API_KEY / ELEVENLABS_VOICE_ID not set. Prompts use Twilio <Say>."
            )

        if not self.crm_webhook_url:
            warnings.append("CRM_WEBHOOK_URL not set. Bookings will only be logged.")

        return warnings


settings = Settings()
