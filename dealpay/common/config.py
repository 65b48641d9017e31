"""Central environment-driven settings for the payments service.

Loaded once per process at import time. Behavior is controlled by environment
variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "payments"
    log_level: str = "INFO"
    postgres_dsn: str
    api_key: str
    kafka_bootstrap_servers: str = "kafka:9092"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True
    workers_enabled: bool = True

    # Providers disagree on malformed bodies; both default to acknowledging.
    mypos_reject_malformed_body: bool = False
    viva_wallet_reject_malformed_body: bool = False

    inventory_allow_negative_stock: bool = False
    fulfillment_max_retries: int = 3

    viva_wallet_base_url: str = "https://api.vivapayments.com"
    viva_wallet_accounts_url: str = "https://accounts.vivapayments.com"
    viva_wallet_checkout_url: str = "https://www.vivapayments.com/web/checkout"
    viva_wallet_client_id: str = ""
    viva_wallet_client_secret: str = ""
    viva_wallet_source_code: str = "8339"
    viva_wallet_timeout_seconds: float = 10.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
