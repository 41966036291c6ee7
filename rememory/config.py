"""Settings via pydantic-settings with REMEMORY_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the container and the Python app.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="REMEMORY_", env_file=".env", populate_by_name=True)

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("rememory", validation_alias="DB_USER")
    db_password: str = Field("rememory_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("rememory", validation_alias="DB_NAME")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    # Full SQLAlchemy URL override (e.g. sqlite+aiosqlite:///:memory: in tests)
    database_url: str = ""
    auto_create_schema: bool = True
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = ["http://localhost:5173"]

    # Identity: static bearer accepted in development only
    dev_static_bearer: str = Field("", validation_alias="DEV_STATIC_BEARER")
    dev_static_uid: str = "dev-static-user"

    # Generative-language API
    llm_api_key: str = Field("", validation_alias="LLM_API_KEY")
    llm_api_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    llm_model: str = "gemini-2.5-flash"
    llm_fallback_models: list[str] = ["gemini-2.5-pro", "gemini-2.0-flash"]
    chat_temperature: float = 0.8
    chat_max_tokens: int = 400
    summary_temperature: float = 0.3
    summary_max_tokens: int = 400
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 60  # seconds

    # Session lifecycle
    session_days: int = 30
    reminder_days: int = 3

    # Conversation window + compaction
    prompt_window_size: int = 12
    compaction_threshold: int = 300
    compaction_batch_size: int = 200
    compaction_prune_count: int = 150
    compaction_inline: bool = False
    compaction_max_attempts: int = 3
    compaction_retry_backoff: float = 2.0  # seconds, doubled per attempt
    delete_batch_size: int = 500
    history_page_default: int = 25
    history_page_max: int = 200

    # Expiration sweep
    sweep_enabled: bool = True
    sweep_cron: str = "0 */6 * * *"

    # Email notifications
    email_webhook_url: str = "https://api.sendgrid.com/v3/mail/send"
    email_api_key: str = Field("", validation_alias="SENDGRID_API_KEY")
    email_from: str = "no-reply@rememory.app"
    email_timeout: int = 15  # seconds

    # Chat rate limiting (per owner)
    rate_limit_max_requests: int = 12
    rate_limit_window_seconds: int = 60

    @model_validator(mode="after")
    def _validate_conversation(self) -> "Settings":
        if not 10 <= self.prompt_window_size <= 12:
            raise ValueError("prompt_window_size must be between 10 and 12")
        if not (
            self.compaction_prune_count <= self.compaction_batch_size <= self.compaction_threshold
        ):
            raise ValueError(
                f"compaction_prune_count ({self.compaction_prune_count}) <= "
                f"compaction_batch_size ({self.compaction_batch_size}) <= "
                f"compaction_threshold ({self.compaction_threshold}) must hold"
            )
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
