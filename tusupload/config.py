"""Configuration management using pydantic-settings"""

import os
from typing import Dict
from urllib.parse import urlparse

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

VALID_LOG_LEVELS = ["debug", "info", "warning", "error"]


class Settings(BaseSettings):
    """Client settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # tus endpoint
    tus_upload_url: str = Field(default="http://localhost:1080/files/", description="tus creation endpoint")
    tus_chunk_size: int = Field(default=1024 * 1024, description="PATCH chunk size in bytes")
    tus_custom_headers: Dict[str, str] = Field(default_factory=dict, description="Extra headers sent on every request (JSON)")
    tus_timeout: float = Field(default=30.0, description="Per-request timeout in seconds")

    # Retry policy for 5xx and transport errors
    tus_retry_attempts: int = Field(default=3, description="Retries per exchange before failing")
    tus_retry_base_delay: float = Field(default=1.0, description="First backoff delay in seconds")
    tus_retry_max_delay: float = Field(default=30.0, description="Backoff delay cap in seconds")

    # Local storage
    tus_file_store_path: str = Field(default="./data/tus-files", description="Directory holding files waiting for upload")
    database_url: str = "sqlite:///./data/tus-uploads.db"

    # Server Configuration
    port: int = 8916
    host: str = "0.0.0.0"

    # Application Configuration
    environment: str = Field(default="production", validation_alias="ENVIRONMENT")
    log_level: str = Field(default="error", description="Log level: debug, info, warning, error (default: error for production)")

    @field_validator("tus_upload_url")
    @classmethod
    def validate_upload_url(cls, v: str) -> str:
        """Only http(s) endpoints can speak tus"""
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"tus_upload_url must be an http(s) URL, got: {v}")
        return v

    @field_validator("tus_chunk_size")
    @classmethod
    def validate_chunk_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("tus_chunk_size must be a positive number of bytes")
        return v

    @field_validator("tus_retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        if v < 0:
            raise ValueError("tus_retry_attempts cannot be negative")
        return v

    @field_validator("tus_timeout", "tus_retry_base_delay", "tus_retry_max_delay")
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Durations cannot be negative")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v):
        """Normalize log level and reject unknown values"""
        if isinstance(v, str):
            v = v.strip().lower()
        if v not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {v}. Valid values: {VALID_LOG_LEVELS}")
        return v

    @model_validator(mode="before")
    @classmethod
    def map_node_env(cls, data: dict) -> dict:
        """Map NODE_ENV to ENVIRONMENT if ENVIRONMENT is not set"""
        if isinstance(data, dict):
            if "NODE_ENV" in data and "ENVIRONMENT" not in data:
                data["ENVIRONMENT"] = data["NODE_ENV"]
        return data

    @model_validator(mode="after")
    def validate_retry_window(self) -> "Settings":
        if self.tus_retry_max_delay < self.tus_retry_base_delay:
            raise ValueError("tus_retry_max_delay must be >= tus_retry_base_delay")
        return self

    @property
    def effective_log_level(self) -> str:
        """Production defaults to ERROR unless LOG_LEVEL is explicitly set"""
        if self.environment == "production" and not os.getenv("LOG_LEVEL"):
            return "error"
        return self.log_level


# Global settings instance
settings = Settings()
