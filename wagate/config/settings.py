"""wagate configuration via environment / .env file."""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Durable store ---
    REDIS_URL: str = "redis://localhost:6379/0"
    STORE_BACKEND: Literal["redis", "memory"] = "redis"
    KEY_PREFIX: str = "whatsapp"
    SESSION_TTL_SECONDS: int = 30 * 24 * 3600
    CONNECTED_TTL_SECONDS: int = 24 * 3600

    # --- Connection lifecycle ---
    BOOTSTRAP_MODE: Literal["pairing_code", "qr"] = "pairing_code"
    CONNECT_DEADLINE_SECONDS: float = 30.0
    RECONNECT_DELAY_SECONDS: float = 5.0
    MAX_RECONNECT_ATTEMPTS: int | None = None
    PAIRING_CODE_DELAY_SECONDS: float = 0.0

    # --- Protocol library ---
    SOCKET_FACTORY: str = ""

    # --- Auth ---
    API_KEYS: Annotated[list[str], NoDecode] = []

    # --- Rate limiting (requests per client per window; 0 disables) ---
    RATE_LIMIT_MAX_REQUESTS: int = 500
    RATE_LIMIT_WINDOW_SECONDS: float = 15 * 60
    CONNECT_RATE_LIMIT_MAX_REQUESTS: int = 100
    CONNECT_RATE_LIMIT_WINDOW_SECONDS: float = 60 * 60

    # --- Logging ---
    LOG_LEVEL: str = "INFO"

    @field_validator("API_KEYS", mode="before")
    @classmethod
    def _split_api_keys(cls, v: object) -> object:
        if isinstance(v, str):
            return [k.strip() for k in v.split(",") if k.strip()]
        return v

    @field_validator("CONNECT_DEADLINE_SECONDS")
    @classmethod
    def _deadline_range(cls, v: float) -> float:
        if not 10.0 <= v <= 45.0:
            raise ValueError("CONNECT_DEADLINE_SECONDS must be between 10 and 45")
        return v

    @field_validator("MAX_RECONNECT_ATTEMPTS")
    @classmethod
    def _non_negative_cap(cls, v: int | None) -> int | None:
        if v is not None and v < 0:
            raise ValueError("MAX_RECONNECT_ATTEMPTS must be >= 0")
        return v

    @field_validator("RATE_LIMIT_MAX_REQUESTS", "CONNECT_RATE_LIMIT_MAX_REQUESTS")
    @classmethod
    def _non_negative_limit(cls, v: int) -> int:
        if v < 0:
            raise ValueError("rate limits must be >= 0")
        return v

    @field_validator("RATE_LIMIT_WINDOW_SECONDS", "CONNECT_RATE_LIMIT_WINDOW_SECONDS")
    @classmethod
    def _positive_window(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("rate limit windows must be positive")
        return v

    @model_validator(mode="after")
    def _connected_within_session(self) -> "Settings":
        if self.CONNECTED_TTL_SECONDS <= 0:
            raise ValueError("CONNECTED_TTL_SECONDS must be positive")
        if self.CONNECTED_TTL_SECONDS > self.SESSION_TTL_SECONDS:
            raise ValueError("CONNECTED_TTL_SECONDS cannot exceed SESSION_TTL_SECONDS")
        return self


settings = Settings()
