from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = Field(default="Mini CRM API", alias="APP_NAME")
    app_env: str = Field(default="local", alias="APP_ENV")
    debug: bool = Field(default=True, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    database_url: str | None = Field(default=None, alias="DATABASE_URL")
    db_host: str = Field(default="localhost", alias="DB_HOST")
    db_port: int = Field(default=3306, alias="DB_PORT")
    db_user: str = Field(default="crm_user", alias="DB_USER")
    db_password: str = Field(default="crm_pass", alias="DB_PASSWORD")
    db_name: str = Field(default="mini_crm_db", alias="DB_NAME")
    db_pool_size: int = Field(default=5, alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=5, alias="DB_MAX_OVERFLOW")

    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    segment_refresh_enabled: bool = Field(default=True, alias="SEGMENT_REFRESH_ENABLED")
    segment_refresh_interval_minutes: int = Field(
        default=60,
        alias="SEGMENT_REFRESH_INTERVAL_MINUTES",
    )
    campaign_stats_sync_enabled: bool = Field(default=True, alias="CAMPAIGN_STATS_SYNC_ENABLED")
    campaign_stats_sync_interval_seconds: int = Field(
        default=120,
        alias="CAMPAIGN_STATS_SYNC_INTERVAL_SECONDS",
    )
    campaign_stats_sync_lookback_minutes: int = Field(
        default=60,
        alias="CAMPAIGN_STATS_SYNC_LOOKBACK_MINUTES",
    )

    segment_empty_root_policy: str = Field(default="match_all", alias="SEGMENT_EMPTY_ROOT_POLICY")
    segment_max_depth: int = Field(default=8, alias="SEGMENT_MAX_DEPTH")
    segment_eval_batch_size: int = Field(default=500, alias="SEGMENT_EVAL_BATCH_SIZE")
    segment_preview_sample_size: int = Field(default=10, alias="SEGMENT_PREVIEW_SAMPLE_SIZE")

    receipt_batch_max: int = Field(default=1000, alias="RECEIPT_BATCH_MAX")

    vendor_base_url: str | None = Field(default=None, alias="VENDOR_BASE_URL")
    vendor_api_key: str | None = Field(default=None, alias="VENDOR_API_KEY")
    vendor_timeout: float = Field(default=10.0, alias="VENDOR_TIMEOUT")
    vendor_mock_mode: bool = Field(default=True, alias="VENDOR_MOCK_MODE")

    ai_rules_base_url: str | None = Field(default=None, alias="AI_RULES_BASE_URL")
    ai_rules_api_key: str | None = Field(default=None, alias="AI_RULES_API_KEY")
    ai_rules_model: str = Field(default="gpt-4o-mini", alias="AI_RULES_MODEL")
    ai_rules_timeout: float = Field(default=20.0, alias="AI_RULES_TIMEOUT")

    model_config = SettingsConfigDict(
        env_file=(".env", ),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+pymysql://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
            f"?charset=utf8mb4"
        )


settings = Settings()
