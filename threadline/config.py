from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Empty database_url keeps every conversation in process memory only.
    database_url: str = ""
    redis_url: str = ""
    debug: bool = False
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    agent_number: str = ""
    agent_name: str = "Assistant"

    a1base_api_key: str = ""
    a1base_api_secret: str = ""
    a1base_account_id: str = ""
    a1base_base_url: str = "https://api.a1base.com/v1"

    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    llm_timeout_seconds: float = 30.0

    split_paragraphs: bool = False
    split_delay_seconds: float = 0.5
    context_window: int = 10
    # Threads and users mirrored into the in-memory buffer behind the database.
    fallback_cache_size: int = 1000
    sms_max_length: int = 1200

    onboarding_enabled: bool = True
    onboarding_config_path: str = ""
    group_onboarding_enabled: bool = False
    group_onboarding_config_path: str = ""
    memory_extraction_enabled: bool = True
    group_respond_only_when_mentioned: bool = False

    webhook_secret: str = ""
    webhook_max_age_seconds: int = 300

    alert_bot_token: str = ""
    alert_chat_id: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()
