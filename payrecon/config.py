from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration read from environment variables."""

    # General
    api_bearer_token: str = "testtoken"
    api_basic_username: str = "admin"
    api_basic_password: str = "admin"
    app_env: str = "local"
    app_version: str | None = None

    # Where webhook secrets are read from: "settings" (env) or "database"
    gateway_config_source: str = "settings"
    # Seconds before an outbound gateway call is abandoned
    gateway_timeout_seconds: float = 10.0

    # Airwallex config
    airwallex_test_mode: bool = True
    airwallex_test_webhook_secret: str = ""
    airwallex_live_webhook_secret: str = ""
    airwallex_client_id: str = ""
    airwallex_api_key: str = ""
    airwallex_base_url: str = "https://api-demo.airwallex.com"

    # Stripe config
    stripe_test_mode: bool = True
    stripe_test_webhook_secret: str = ""
    stripe_live_webhook_secret: str = ""
    stripe_secret_key: str = ""

    # PayPal config
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_base_url: str = "https://api-m.sandbox.paypal.com"

    # Transbank config
    tbk_api_key_id: str = "597055555532"
    tbk_api_key_secret: str = "579B532A7440BB0C9079DED94D31EA1615BACEB56610332264630D42D0A36B1C"
    tbk_test_mode: bool = True

    # Database (PostgreSQL)
    db_host: str = ""
    db_port: int = 5432
    db_user: str = ""
    db_password: str = ""
    db_name: str = ""
    db_schema: str = "payments"
    db_pool_min: int = 1
    db_pool_max: int = 10
    db_connect_timeout: int = 5

    @property
    def db_enabled(self) -> bool:
        return bool(self.db_host and self.db_user and self.db_name)

    @property
    def db_dsn(self) -> str:
        if not self.db_enabled:
            return ""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Pydantic v2 settings config
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
