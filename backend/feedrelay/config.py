"""Relay settings loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RelaySettings(BaseSettings):
    """Relay settings.

    Relay fields read ``RELAY_<FIELD>`` (``RELAY_PORT``, ``RELAY_LOG_DIR``, ...).
    The XTS fields read ``XTS_API_URL``, ``XTS_APP_KEY``, ``XTS_SECRET_KEY``
    and ``XTS_SOURCE``. Keyword arguments override the environment.
    """

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        case_sensitive=False,
        frozen=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)
    log_dir: Path = Path("logs")
    log_level: str = "INFO"
    shutdown_timeout: float = Field(default=10.0, gt=0)
    sim_interval: float = Field(default=1.0, gt=0)

    # XTS market data API. Both keys set and non-blank -> real feed
    xts_api_url: str = Field(default="https://mtrade.arhamshare.com", validation_alias="XTS_API_URL")
    xts_app_key: str = Field(default="", validation_alias="XTS_APP_KEY")
    xts_secret_key: str = Field(default="", validation_alias="XTS_SECRET_KEY")
    xts_source: str = Field(default="WEBAPI", validation_alias="XTS_SOURCE")

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @property
    def use_xts(self) -> bool:
        return bool(self.xts_app_key and self.xts_secret_key)
