from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Cellar"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"
    app_domain: str = "localhost"
    app_base_url: str = "http://localhost:8000"

    # Database settings
    database_url: str
    dedicated_store_url_template: str = ""  # e.g. "postgresql+asyncpg://user:pw@db-host/{name}"
    dedicated_pool_size: int = 5

    # Security settings
    secret_key: str
    jwt_algorithm: str = "HS256"
    admin_api_key: str | None = None

    # Redis settings
    redis_url: str | None = None
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str | None = None

    # Billing provider (PayPal) settings
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_mode: str = "sandbox"  # "sandbox" | "live"
    paypal_webhook_id: str | None = None
    paypal_plan_ids: dict[str, str] = {}  # local plan id -> provider plan id
    billing_timeout_seconds: float = 10.0

    # Webhook settings
    webhook_signing_secret: str | None = None
    webhook_dedupe_ttl_seconds: int = 86400
    webhook_dedupe_max_entries: int = 10000

    # Rate limiting
    ip_requests_per_minute: int = 100

    # Background jobs
    enable_scheduler: bool = True

    # CORS settings
    allowed_origins: list[str] = ["http://localhost:3000", "http://localhost:8000"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


settings = Settings()
