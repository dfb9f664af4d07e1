from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "storefront-checkout"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    env: str = "development"
    log_level: str = "INFO"
    log_json: bool = True

    database_url: str = "sqlite+aiosqlite:///./checkout.db"

    gateway_api_key: str
    gateway_api_base: str = "https://api.mollie.com/v2"
    gateway_timeout_seconds: float = 10.0

    service_api_key: str
    frontend_return_url: str = "https://your-frontend.com/pay-return"

    # checkout behaviour
    idempotency_window_seconds: int = 900
    redirect_ttl_seconds: int = 1800
    poll_interval_seconds: float = 10.0
    poll_max_attempts: int = 30
    display_locale: str = "en_KE"
    default_currency: str = "KES"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"


settings = Settings()
