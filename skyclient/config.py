"""
config.py — Client Configuration
==================================
Environment-driven settings plus the validated transfer configuration
the orchestrator runs with.
"""

import os
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from skyclient.core.chunker import DEFAULT_CHUNK_SIZE, LEAF_SIZE

DEFAULT_PORTAL_URL = "https://siasky.net"


def _split_urls(value: str) -> List[str]:
    return [url.strip() for url in value.split(",") if url.strip()]


class Settings:
    """Client configuration from environment."""

    PORTAL_URLS: List[str] = _split_urls(
        os.getenv("SKYNET_PORTAL_URLS", DEFAULT_PORTAL_URL)
    )
    API_KEY: Optional[str] = os.getenv("SKYNET_API_KEY") or None
    CUSTOM_USER_AGENT: Optional[str] = os.getenv("SKYNET_USER_AGENT") or None
    CHUNK_SIZE: int = int(os.getenv("SKYNET_CHUNK_SIZE", str(DEFAULT_CHUNK_SIZE)))
    ATTEMPT_LIMIT: int = int(os.getenv("SKYNET_ATTEMPT_LIMIT", "3"))
    BACKOFF_BASE: float = float(os.getenv("SKYNET_BACKOFF_BASE", "0.5"))
    ATTEMPT_TIMEOUT: float = float(os.getenv("SKYNET_ATTEMPT_TIMEOUT", "30"))
    OPERATION_TIMEOUT: float = float(os.getenv("SKYNET_OPERATION_TIMEOUT", "600"))
    FAN_OUT: int = int(os.getenv("SKYNET_FAN_OUT", "4"))


settings = Settings()


class TransferConfig(BaseModel):
    """Validated knobs for one client's transfers."""

    portal_urls: List[str] = Field(default_factory=lambda: [DEFAULT_PORTAL_URL])
    api_key: Optional[str] = Field(default=None, repr=False)
    custom_user_agent: Optional[str] = None

    chunk_size: int = DEFAULT_CHUNK_SIZE
    fan_out: int = Field(default=4, ge=1)

    attempt_limit: int = Field(default=3, ge=1)
    backoff_base: float = Field(default=0.5, ge=0)
    backoff_max: float = Field(default=8.0, ge=0)
    rate_limit_backoff: float = Field(default=1.0, ge=0)
    attempt_timeout: float = Field(default=30.0, gt=0)
    operation_timeout: Optional[float] = Field(default=600.0, gt=0)

    # Consecutive failures before a portal is benched, and for how long
    failure_threshold: int = Field(default=3, ge=1)
    cooldown: float = Field(default=30.0, ge=0)

    upload_path: str = "/skynet/skyfile"
    tus_path: str = "/skynet/tus"
    download_path: str = "/"
    file_fieldname: str = "file"
    directory_fieldname: str = "files[]"
    skykey_path: str = "/skynet/skykey"
    skykeys_path: str = "/skynet/skykeys"
    add_skykey_path: str = "/skynet/addskykey"
    create_skykey_path: str = "/skynet/createskykey"

    @field_validator("portal_urls")
    @classmethod
    def _normalise_portals(cls, value: List[str]) -> List[str]:
        urls = [url.rstrip("/") for url in value if url and url.strip()]
        if not urls:
            raise ValueError("At least one portal URL is required")
        return urls

    @field_validator("chunk_size")
    @classmethod
    def _check_chunk_size(cls, value: int) -> int:
        if value <= 0 or value % LEAF_SIZE:
            raise ValueError(
                f"chunk_size must be a positive multiple of {LEAF_SIZE} bytes"
            )
        return value

    @model_validator(mode="after")
    def _check_backoff(self) -> "TransferConfig":
        if self.backoff_max < self.backoff_base:
            raise ValueError("backoff_max must not be smaller than backoff_base")
        return self

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff after the given (1-based) failed attempt."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    @classmethod
    def from_settings(cls, source: Settings = settings, **overrides) -> "TransferConfig":
        values = dict(
            portal_urls=source.PORTAL_URLS,
            api_key=source.API_KEY,
            custom_user_agent=source.CUSTOM_USER_AGENT,
            chunk_size=source.CHUNK_SIZE,
            attempt_limit=source.ATTEMPT_LIMIT,
            backoff_base=source.BACKOFF_BASE,
            attempt_timeout=source.ATTEMPT_TIMEOUT,
            operation_timeout=source.OPERATION_TIMEOUT,
            fan_out=source.FAN_OUT,
        )
        values.update(overrides)
        return cls(**values)


class UploadOptions(BaseModel):
    """Per-call upload options."""

    skykey_name: Optional[str] = None
    skykey_id: Optional[str] = None


class DownloadOptions(BaseModel):
    """Per-call download options."""

    skykey_name: Optional[str] = None
    skykey_id: Optional[str] = None
