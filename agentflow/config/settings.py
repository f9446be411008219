# /agentflow/config/settings.py

import sys
from typing import Dict, List, Any
from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings


class FlowConfig(BaseModel):
    """
    Tuning knobs for conversation flow behaviour.
    Each environment gets its own copy through get_flow_config().
    """
    # Consecutive failed answers before a conversation is flagged for an operator.
    max_errors_before_escalation: int = 5
    analytics_enabled: bool = True

    class Config:
        frozen = True


_ENVIRONMENT_OVERRIDES: Dict[str, Dict[str, Any]] = {
    "development": {},
    "test": {},
    "staging": {"max_errors_before_escalation": 8},
    "production": {},
}


def get_flow_config(environment: str) -> FlowConfig:
    overrides = _ENVIRONMENT_OVERRIDES.get(environment, _ENVIRONMENT_OVERRIDES["development"])
    return FlowConfig(**overrides)


class Settings(BaseSettings):
    # Deployment
    environment: str = "production"
    api_version: str = "v1"
    service_name: str = "agentflow-whatsapp"
    workers: int = 4
    log_level: str = "INFO"
    api_key: str | None = None
    cors_allowed_origins: str = ""

    # WhatsApp Cloud (Meta)
    whatsapp_verify_token: str = ""
    whatsapp_app_secret: str | None = None
    whatsapp_access_token: str | None = None
    whatsapp_phone_id: str | None = None
    whatsapp_graph_url: str = "https://graph.facebook.com/v18.0"

    # Karix
    karix_api_key: str | None = None
    karix_api_url: str = "https://rcmapi.instaalerts.zone/services/rcm/sendMessage"

    # AI APIs
    openai_api_key: str | None = None
    azure_openai_endpoint: str | None = None
    azure_openai_api_key: str | None = None
    azure_openai_api_version: str = "2024-02-15-preview"
    gemini_api_key: str | None = None
    ai_default_provider: str = "gpt"
    ai_default_model: str = "gpt-4"
    ai_gemini_model: str = "gemini-1.5-flash"
    ai_max_tokens: int = 1024
    ai_temperature: float = 0.7
    ai_max_attempts: int = 3
    ai_base_delay_seconds: float = 2.0
    ai_timeout_seconds: float = 30.0
    ai_history_limit: int = 10

    # Persistence
    persistence_backend: str = "memory"
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_database: str = "agentflow"
    persistence_timeout_seconds: float = 10.0
    persistence_max_attempts: int = 3
    persistence_base_delay_seconds: float = 0.5

    # Rate limiting
    rate_limit_backend: str = "memory"
    redis_url: str = "redis://localhost:6379"
    rate_limit_per_minute: int = 100
    user_rate_limit_per_minute: int = 10
    rate_limit_window_seconds: int = 60
    trusted_webhook_ips: str = ""
    spam_max_message_length: int = 1000
    spam_repeated_run_length: int = 10
    spam_special_char_ratio: float = 0.5

    # Observability
    alerting_webhook_url: str | None = None
    handoff_webhook_url: str | None = None

    # Webhooks
    webhook_inline_processing: bool = False

    # ---------------- Validators ---------------- #

    @field_validator("persistence_backend")
    @classmethod
    def persistence_backend_must_be_known(cls, v):
        if v not in ("memory", "mongo"):
            raise ValueError("PERSISTENCE_BACKEND must be 'memory' or 'mongo'")
        return v

    @field_validator("rate_limit_backend")
    @classmethod
    def rate_limit_backend_must_be_known(cls, v):
        if v not in ("memory", "redis"):
            raise ValueError("RATE_LIMIT_BACKEND must be 'memory' or 'redis'")
        return v

    @property
    def trusted_ips(self) -> List[str]:
        """TRUSTED_WEBHOOK_IPS is a comma-separated list."""
        return [ip.strip() for ip in self.trusted_webhook_ips.split(",") if ip.strip()]

    @property
    def flow(self) -> FlowConfig:
        return get_flow_config(self.environment)

    @property
    def uses_azure_openai(self) -> bool:
        endpoint = self.azure_openai_endpoint
        return bool(endpoint and endpoint.startswith("https://") and self.azure_openai_api_key)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.environment == "production":
            if not settings_obj.whatsapp_verify_token:
                raise ValueError("WHATSAPP_VERIFY_TOKEN is required in production")
            if not (settings_obj.openai_api_key or settings_obj.uses_azure_openai or settings_obj.gemini_api_key):
                raise ValueError("At least one AI API key must be provided")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
