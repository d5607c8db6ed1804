from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ETCD_CLIENT_PORT = 2379


class Settings(BaseSettings):
    app_name: str = Field(default="etcd-cluster-status")
    app_env: str = Field(default="dev")
    app_version: str = Field(default="0.1.0")

    database_url: str = Field(default="")

    log_level: str = Field(default="INFO")
    log_file: str = Field(default="")
    log_db_queries: bool = Field(default=False)
    log_db_query_params: bool = Field(default=False)
    log_sql_max_length: int = Field(default=400)

    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8000)
    metrics_enabled: bool = Field(default=True)

    pki_dir: str = Field(default="data/pki")
    etcd_client_port: int = Field(default=DEFAULT_ETCD_CLIENT_PORT)
    healthcheck_timeout_seconds: float = Field(default=10.0)
    healthcheck_dial_timeout_seconds: float = Field(default=2.0)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        if not self.database_url:
            raise ValueError("DATABASE_URL must be set in .env or environment variables.")
        issues: list[str] = []
        if self.healthcheck_timeout_seconds <= 0:
            issues.append("HEALTHCHECK_TIMEOUT_SECONDS must be positive.")
        if self.healthcheck_dial_timeout_seconds <= 0:
            issues.append("HEALTHCHECK_DIAL_TIMEOUT_SECONDS must be positive.")
        if not 0 < self.etcd_client_port < 65536:
            issues.append("ETCD_CLIENT_PORT must be a valid TCP port.")
        if issues:
            raise ValueError(" ".join(issues))
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
