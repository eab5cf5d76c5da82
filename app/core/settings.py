from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = Field(default="sqlite+pysqlite:///./olympus.db", validation_alias="DATABASE_URL")
    db_auto_create: bool = Field(default=True, validation_alias="DB_AUTO_CREATE")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str | None = Field(default=None, validation_alias="LOG_FILE")

    openai_api_key: str | None = Field(default=None, validation_alias="OPENAI_API_KEY")
    openai_text_model: str = Field(default="gpt-4o-mini", validation_alias="OPENAI_TEXT_MODEL")
    openai_summary_model: str | None = Field(default=None, validation_alias="OPENAI_SUMMARY_MODEL")
    openai_timeout_seconds: float = Field(default=60.0, validation_alias="OPENAI_TIMEOUT_SECONDS")
    openai_max_retries: int = Field(default=2, validation_alias="OPENAI_MAX_RETRIES")

    quota_cooldown_seconds: int = Field(default=15 * 60, validation_alias="QUOTA_COOLDOWN_SECONDS")

    premium_chapters_total: int = Field(default=10, validation_alias="PREMIUM_CHAPTERS_TOTAL")
    unlock_bundle_size: int = Field(default=10, validation_alias="UNLOCK_BUNDLE_SIZE")
    payment_unlock_bundle_size: int = Field(default=3, validation_alias="PAYMENT_UNLOCK_BUNDLE_SIZE")

    daily_unlock_token: str | None = Field(default=None, validation_alias="DAILY_UNLOCK_TOKEN")

    @property
    def summary_model(self) -> str:
        return self.openai_summary_model or self.openai_text_model


settings = Settings()
