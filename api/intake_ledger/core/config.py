from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

StoreBackend = Literal["postgres", "memory"]


class Settings(BaseSettings):
    app_name: str = "intake-ledger-api"
    environment: str = "dev"
    store_backend: StoreBackend = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    kv_table: str = "kv_entries"
    list_page_size: int = 100
    mapbox_access_token: str | None = None
    mapbox_base_url: str = "https://api.mapbox.com"
    geocode_timeout_seconds: float = 10.0
    allowed_hosts: list[str] = []
    cors_allow_origins: list[str] = ["*"]
    cors_allow_methods: list[str] = ["GET", "POST", "PUT", "OPTIONS"]
    cors_allow_headers: list[str] = ["Content-Type"]
    cors_max_age_seconds: int = 86400
    object_store_bucket: str | None = None
    object_store_endpoint_url: str | None = None
    object_store_region: str | None = None
    object_store_access_key_id: str | None = None
    object_store_secret_access_key: str | None = None
    object_store_public_base_url: str | None = None
    object_store_key_prefix: str = "uploads"
    upload_max_bytes: int = 10 * 1024 * 1024
    otel_enabled: bool = True
    otel_service_name: str = "intake-ledger-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="IL_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
