from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    log_level: str = "INFO"
    log_file_path: Path | None = None
    log_rotation_mb: int = Field(default=10, ge=1, le=1024)
    log_retention_files: int = Field(default=5, ge=1, le=100)
    timezone: str = "America/New_York"
    db_path: Path = Path("data/trade_autopilot.sqlite3")
    bot_config_path: Path = Path("config/bot_config.yaml")

    # AI providers
    preferred_provider: Literal["gemini", "groq", "openai", "ollama"] = "gemini"
    provider_order_csv: str = "gemini,groq,openai,ollama"
    gemini_daily_limit: int = Field(default=500, ge=0, le=1_000_000)
    groq_daily_limit: int = Field(default=5000, ge=0, le=1_000_000)
    openai_daily_limit: int = Field(default=1000, ge=0, le=1_000_000)
    ollama_daily_limit: int = Field(default=100_000, ge=0, le=10_000_000)
    provider_timeout_seconds: float = Field(default=10.0, ge=0.5, le=300)
    provider_retry_attempts: int = Field(default=3, ge=1, le=10)
    provider_enable_fallback: bool = True
    provider_backoff_base_seconds: float = Field(default=1.0, ge=0, le=30)
    provider_backoff_cap_seconds: float = Field(default=5.0, ge=0, le=120)

    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai"
    gemini_model: str = "gemini-1.5-flash"
    groq_api_key: str = ""
    groq_base_url: str = "https://api.groq.com/openai/v1"
    groq_model: str = "llama-3.1-8b-instant"
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "qwen2.5"
    provider_max_output_tokens: int = Field(default=1200, ge=64, le=8192)

    # Scan loop
    candidate_limit: int = Field(default=30, ge=1, le=200)
    watchlist_csv: str = "AAPL,MSFT,NVDA,AMZN,GOOGL,META,TSLA,AMD,JPM,XOM"
    decision_retention: int = Field(default=100, ge=1, le=10_000)
    history_retention_days: int = Field(default=30, ge=1, le=365)
    volatility_threshold_percent: float = Field(default=5.0, ge=0, le=100)

    # Emergency / terminal state thresholds
    emergency_drawdown_percent: float = Field(default=30.0, ge=0, le=100)
    drawdown_breach_limit: int = Field(default=3, ge=1, le=100)
    max_consecutive_failures: int = Field(default=3, ge=1, le=100)
    max_emergency_stops: int = Field(default=2, ge=1, le=100)

    # Alerts
    alert_webhook_url: str = ""
    alert_webhook_timeout_seconds: int = Field(default=10, ge=2, le=60)
    alert_event_types_csv: str = "quota_exhausted,emergency_stop,drawdown_pause,bot_error,trade_failed"

    # Host
    api_host: str = "0.0.0.0"
    api_port: int = Field(default=8501, ge=1, le=65535)
    paper_starting_cash: float = Field(default=10000, ge=100, le=10_000_000)
    service_heartbeat_seconds: int = Field(default=15, ge=5, le=300)

    @model_validator(mode="after")
    def validate_backoff(self) -> "Settings":
        if self.provider_backoff_cap_seconds < self.provider_backoff_base_seconds:
            raise ValueError("PROVIDER_BACKOFF_CAP_SECONDS must be >= PROVIDER_BACKOFF_BASE_SECONDS")
        return self

    def provider_limits(self) -> dict[str, int]:
        return {
            "gemini": self.gemini_daily_limit,
            "groq": self.groq_daily_limit,
            "openai": self.openai_daily_limit,
            "ollama": self.ollama_daily_limit,
        }

    def provider_order(self) -> list[str]:
        return [item.strip() for item in self.provider_order_csv.split(",") if item.strip()]


settings = Settings()
