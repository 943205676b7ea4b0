from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "vatcheck-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    vies_base_url: str = "https://ec.europa.eu/taxation_customs/vies/rest-api"
    vies_timeout_seconds: float = 20.0
    vies_status_timeout_seconds: float = 10.0
    requester_member_state: str | None = None
    requester_vat_number: str | None = None

    cache_ttl_seconds: float = 24 * 60 * 60
    status_ttl_seconds: float = 30.0

    slow_lane_jurisdictions: list[str] = ["FR"]
    slow_lane_max_attempts: int = 50
    slow_lane_backoff_seconds: list[float] = [10, 20, 40, 60, 90, 120, 180, 240, 300]
    slow_lane_congestion_backoff_seconds: list[float] = [30, 60, 120, 180, 300, 600]
    slow_lane_jitter_seconds: float = 1.0
    slow_lane_min_call_gap_seconds: float = 2.0
    slow_lane_congestion_cooldown_seconds: float = 60.0
    slow_lane_unavailable_delay_seconds: float = 60.0

    fast_lane_workers: int = 6
    fast_lane_max_attempts: int = 4
    fast_lane_backoff_seconds: list[float] = [0.5, 1.0, 2.0]
    fast_lane_congestion_backoff_seconds: list[float] = [2.0, 4.0, 8.0]
    fast_lane_jitter_seconds: float = 0.25
    fast_lane_global_gap_seconds: float = 0.1
    fast_lane_partition_gap_seconds: float = 1.0
    fast_lane_partition_gap_overrides: dict[str, float] = {}

    job_retention_hours: float = 6.0
    housekeeping_interval_seconds: float = 600.0

    otel_enabled: bool = True
    otel_service_name: str = "vatcheck-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: Annotated[dict[str, str], NoDecode] = {}
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="VATCHECK_", extra="ignore")

    @field_validator("otel_exporter_otlp_headers", mode="before")
    @classmethod
    def _parse_otlp_headers(cls, value: object) -> object:
        """Accept the OTLP ``key=value,key2=value2`` header format."""
        if value is None:
            return {}
        if not isinstance(value, str):
            return value
        headers: dict[str, str] = {}
        for pair in value.split(","):
            name, sep, header_value = pair.partition("=")
            if sep and name.strip():
                headers[name.strip()] = header_value.strip()
        return headers


@lru_cache
def get_settings() -> Settings:
    return Settings()
