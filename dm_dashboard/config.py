from __future__ import annotations

from typing import Annotated, Any, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _split_origins(raw: Any) -> List[str]:
    """
    Normalize CORS allow origins from env.

    Supports:
      - list[str] (already parsed)
      - "*"
      - comma-separated string: "https://a.com, https://b.com"
    """
    if raw is None:
        return ["*"]

    if isinstance(raw, list):
        items = [str(x).strip() for x in raw]
        items = [x for x in items if x]
        return items or ["*"]

    s = str(raw).strip()
    if not s or s == "*":
        return ["*"]

    parts = [p.strip() for p in s.split(",")]
    parts = [p for p in parts if p]
    return parts or ["*"]


class Settings(BaseSettings):
    """
    Central app settings.

    Everything is env-driven (or .env); nothing here is required to boot
    because bot tokens are supplied at runtime through the validate-token route.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # App identity
    env: str = Field(default="local", alias="APP_ENV")
    app_name: str = Field(default="discord-dm-dashboard", alias="APP_NAME")
    app_version: str = Field(default="1.0.0", alias="APP_VERSION")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Server runtime (uvicorn)
    host: str = Field(default="127.0.0.1", alias="HOST")  # set 0.0.0.0 for LAN / container
    port: int = Field(default=8000, alias="PORT")
    reload: bool = Field(default=False, alias="RELOAD")

    # NoDecode: the raw env string goes to _split_origins instead of json.loads
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["*"], alias="CORS_ALLOW_ORIGINS")

    # Discord REST
    discord_api_base: str = Field(default="https://discord.com/api/v10", alias="DISCORD_API_BASE")
    discord_cdn_base: str = Field(default="https://cdn.discordapp.com", alias="DISCORD_CDN_BASE")

    # HTTP
    http_timeout_s: float = Field(default=15.0, alias="HTTP_TIMEOUT_S")
    http_user_agent: str = Field(
        default="DiscordBot (discord-dm-dashboard, 1.0)",
        alias="HTTP_USER_AGENT",
    )

    # Member listing (Discord caps a page at 1000; the dashboard pages by 100)
    member_fetch_limit: int = Field(default=1000, alias="MEMBER_FETCH_LIMIT")
    member_page_size: int = Field(default=100, alias="MEMBER_PAGE_SIZE")

    # Bulk send pacing
    send_delay_default_ms: int = Field(default=0, alias="SEND_DELAY_DEFAULT_MS")
    send_delay_max_ms: int = Field(default=10000, alias="SEND_DELAY_MAX_MS")

    # -------------------------
    # Validators / normalizers
    # -------------------------

    @field_validator("log_level", mode="before")
    @classmethod
    def _norm_log_level(cls, v: Any) -> str:
        s = ("" if v is None else str(v)).strip().upper()
        return s or "INFO"

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _norm_cors_allow_origins(cls, v: Any) -> list[str]:
        return _split_origins(v)

    @field_validator("host", mode="before")
    @classmethod
    def _norm_host(cls, v: Any) -> str:
        s = ("" if v is None else str(v)).strip()
        return s or "127.0.0.1"

    @field_validator("discord_api_base", "discord_cdn_base", mode="before")
    @classmethod
    def _norm_base_url(cls, v: Any) -> str:
        s = ("" if v is None else str(v)).strip().rstrip("/")
        if not s.startswith(("http://", "https://")):
            raise ValueError("must start with http:// or https://")
        return s

    @field_validator("http_timeout_s")
    @classmethod
    def _check_timeout(cls, v: float) -> float:
        # "0" or absurd timeouts would wedge refreshes and batches
        if v <= 0:
            raise ValueError("HTTP_TIMEOUT_S must be > 0")
        if v > 120:
            raise ValueError("HTTP_TIMEOUT_S is too high (max 120s)")
        return v

    @field_validator("member_page_size")
    @classmethod
    def _check_page_size(cls, v: int) -> int:
        if not 1 <= v <= 1000:
            raise ValueError("MEMBER_PAGE_SIZE must be between 1 and 1000")
        return v

    @field_validator("member_fetch_limit", "send_delay_default_ms", "send_delay_max_ms")
    @classmethod
    def _check_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    # -------------------------
    # Derived helpers
    # -------------------------

    @property
    def is_prod(self) -> bool:
        return str(self.env).strip().lower() in ("prod", "production")

    def avatar_url(self, entity_id: str, avatar_hash: Optional[str]) -> Optional[str]:
        if not avatar_hash:
            return None
        return f"{self.discord_cdn_base}/avatars/{entity_id}/{avatar_hash}.png"


settings = Settings()
