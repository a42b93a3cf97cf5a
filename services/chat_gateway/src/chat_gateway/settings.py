import json
from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_env: str = "dev"
    log_level: str = "INFO"
    endpoints_config: str = Field(..., validation_alias="ENDPOINTS_CONFIG")
    aws_region: str | None = Field(default=None, validation_alias="AWS_REGION")
    backend_connect_timeout_seconds: int = Field(
        default=5, validation_alias="BACKEND_CONNECT_TIMEOUT_SECONDS"
    )
    backend_read_timeout_seconds: int = Field(
        default=120, validation_alias="BACKEND_READ_TIMEOUT_SECONDS"
    )
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(
        default=["*"], validation_alias="CORS_ALLOW_ORIGINS"
    )
    host: str = Field(default="127.0.0.1", validation_alias="GATEWAY_HOST")
    port: int = Field(default=8900, validation_alias="GATEWAY_PORT")

    @field_validator("endpoints_config")
    @classmethod
    def _config_path_not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("ENDPOINTS_CONFIG must not be empty")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value):
        # comma-separated ("a,b" or "*") or a JSON list
        if not isinstance(value, str):
            return value
        value = value.strip()
        if value.startswith("["):
            return json.loads(value)
        return [origin.strip() for origin in value.split(",") if origin.strip()]

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of: {', '.join(sorted(_LOG_LEVELS))}")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
