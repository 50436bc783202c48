from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    supabase_url: str
    supabase_service_role_key: str
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    jwt_audience: str = "authenticated"
    payment_provider: str = "worldpay"
    payment_webhook_secret: str | None = None
    payment_webhook_signature_header: str = "X-WP-Signature"
    site_url: str | None = None
    order_link_allowed_origins: str = "http://localhost:5173,http://localhost:8080"
    internal_api_secret: str | None = None
    ledger_reservation_lease_seconds: int = 300
    observability_export_url: str | None = None
    observability_export_bearer_token: str | None = None
    observability_export_timeout_seconds: float = 3.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
