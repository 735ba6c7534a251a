"""Environment-driven configuration with Pydantic v2."""

from typing import Dict, List, Optional
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class WebhookDeliveryConfig(BaseModel):
    """Delivery tuning for one webhook category."""
    timeout: float = Field(gt=0, le=120)
    max_retries: int = Field(ge=0, le=10)
    circuit_breaker: bool = True


def default_webhook_delivery() -> Dict[str, WebhookDeliveryConfig]:
    tiers = {
        "Goal": (5, 2), "Habit": (10, 3), "ProjectIdea": (15, 5), "Task": (5, 2),
        "Reminder": (8, 3), "Note": (10, 2), "Insight": (12, 3), "Learning": (10, 3),
        "Career": (10, 3), "Metric": (8, 2), "Idea": (10, 3), "System": (12, 4),
        "Automation": (15, 4), "Person": (8, 2),
    }
    delivery = {
        category: WebhookDeliveryConfig(timeout=timeout, max_retries=retries)
        for category, (timeout, retries) in tiers.items()
    }
    # Sensitive payloads are never short-circuited
    delivery["Sensitive"] = WebhookDeliveryConfig(timeout=20, max_retries=5, circuit_breaker=False)
    return delivery


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=3010, env="PORT", ge=1024, le=65535)
    debug: bool = Field(default=False, env="DEBUG")
    workers: int = Field(default=1, env="WORKERS", ge=1, le=8)
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"], env="CORS_ORIGINS")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    # Analysis service (Anthropic Messages API)
    anthropic_api_key: Optional[str] = Field(default=None, env="ANTHROPIC_API_KEY")
    anthropic_api_url: str = Field(default="https://api.anthropic.com/v1/messages", env="ANTHROPIC_API_URL")
    analysis_model: str = Field(default="claude-3-5-sonnet-20241022", env="ANALYSIS_MODEL")
    analysis_max_tokens: int = Field(default=4000, env="ANALYSIS_MAX_TOKENS", ge=1)
    analysis_timeout: float = Field(default=30.0, env="ANALYSIS_TIMEOUT", gt=0, le=300)
    analysis_concurrency: int = Field(default=3, env="ANALYSIS_CONCURRENCY", ge=1, le=50)
    analysis_max_retries: int = Field(default=3, env="ANALYSIS_MAX_RETRIES", ge=0, le=10)
    analysis_cache_ttl: float = Field(default=24 * 60 * 60, env="ANALYSIS_CACHE_TTL", gt=0)
    analysis_cache_sweep_interval: float = Field(default=600, env="ANALYSIS_CACHE_SWEEP_INTERVAL", gt=0)

    # Spreadsheet logging (Google Sheets v4)
    google_sheets_client_email: Optional[str] = Field(default=None, env="GOOGLE_SHEETS_CLIENT_EMAIL")
    google_sheets_private_key: Optional[str] = Field(default=None, env="GOOGLE_SHEETS_PRIVATE_KEY")
    master_sheet_id: Optional[str] = Field(default=None, env="MASTER_SHEET_ID")
    master_sheet_range: str = Field(default="Master Log!A:F", env="MASTER_SHEET_RANGE")
    sheets_timeout: float = Field(default=15.0, env="SHEETS_TIMEOUT", gt=0, le=300)
    sheets_concurrency: int = Field(default=3, env="SHEETS_CONCURRENCY", ge=1, le=50)
    sheets_max_retries: int = Field(default=3, env="SHEETS_MAX_RETRIES", ge=0, le=10)
    sheets_batch_size: int = Field(default=10, env="SHEETS_BATCH_SIZE", ge=1, le=500)
    sheets_batch_max_wait: float = Field(default=3.0, env="SHEETS_BATCH_MAX_WAIT", gt=0, le=60)
    sheets_cache_ttl: float = Field(default=5 * 60, env="SHEETS_CACHE_TTL", gt=0)
    sheets_cache_sweep_interval: float = Field(default=300, env="SHEETS_CACHE_SWEEP_INTERVAL", gt=0)

    # Webhook delivery
    webhook_urls: Dict[str, str] = Field(default_factory=dict, env="WEBHOOK_URLS")
    webhook_timeout: float = Field(default=10.0, env="WEBHOOK_TIMEOUT", gt=0, le=120)
    webhook_concurrency: int = Field(default=5, env="WEBHOOK_CONCURRENCY", ge=1, le=50)
    webhook_max_retries: int = Field(default=3, env="WEBHOOK_MAX_RETRIES", ge=0, le=10)
    webhook_cache_ttl: float = Field(default=3 * 60, env="WEBHOOK_CACHE_TTL", gt=0)
    webhook_cache_sweep_interval: float = Field(default=180, env="WEBHOOK_CACHE_SWEEP_INTERVAL", gt=0)
    # Per-category overrides of timeout, max_retries and circuit breaking (JSON)
    webhook_delivery: Dict[str, WebhookDeliveryConfig] = Field(
        default_factory=default_webhook_delivery, env="WEBHOOK_DELIVERY"
    )
    webhook_secret: Optional[str] = Field(default=None, env="WEBHOOK_SECRET")
    circuit_breaker_enabled: bool = Field(default=True, env="CIRCUIT_BREAKER_ENABLED")
    circuit_breaker_threshold: int = Field(default=5, env="CIRCUIT_BREAKER_THRESHOLD", ge=1)
    circuit_breaker_reset_timeout: float = Field(default=60.0, env="CIRCUIT_BREAKER_RESET_TIMEOUT", gt=0)

    # Retry backoff shared by all queues: base * 2 ** retries, capped
    retry_base_delay: float = Field(default=1.0, env="RETRY_BASE_DELAY", gt=0, le=60)
    retry_max_delay: float = Field(default=60.0, env="RETRY_MAX_DELAY", gt=0)

    # Dead letters for terminally failed requests
    dead_letter_enabled: bool = Field(default=True, env="DEAD_LETTER_ENABLED")
    dead_letter_capacity: int = Field(default=500, env="DEAD_LETTER_CAPACITY", ge=1)

    # Performance monitoring
    metrics_max_count: int = Field(default=1000, env="METRICS_MAX_COUNT", ge=10)
    metrics_window: float = Field(default=300.0, env="METRICS_WINDOW", gt=0)
    health_score_threshold: float = Field(default=0.7, env="HEALTH_SCORE_THRESHOLD", ge=0, le=1)

    @field_validator("google_sheets_private_key")
    @classmethod
    def unescape_private_key(cls, v):
        """Service account keys arrive with literal \\n sequences from .env files."""
        if v:
            return v.replace("\\n", "\n")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v

    def delivery_for(self, category: str) -> WebhookDeliveryConfig:
        """Delivery config for ``category``, falling back to the global webhook settings."""
        config = self.webhook_delivery.get(category)
        if config is None:
            config = WebhookDeliveryConfig(timeout=self.webhook_timeout,
                                           max_retries=self.webhook_max_retries)
        return config

    @property
    def sheets_configured(self) -> bool:
        """Check whether a master sheet and credentials are available."""
        return bool(
            self.master_sheet_id
            and self.google_sheets_client_email
            and self.google_sheets_private_key
        )

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }


