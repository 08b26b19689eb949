from __future__ import annotations

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings

DEFAULT_VISION_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
DEFAULT_GEO_LOOKUP_URL = (
    "http://ip-api.com/json/{ip}?fields=status,country,regionName,city,isp"
)


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    redis_url: str | None = Field(None, alias="REDIS_URL")
    redis_token: str | None = Field(
        None,
        alias="REDIS_TOKEN",
        description="Password for the remote store when not embedded in the URL",
    )
    kv_prefix: str = Field("labscan", alias="KV_PREFIX")
    data_dir: str | None = Field("data", alias="DATA_DIR")

    subjects_ttl_days: int = Field(30, alias="SUBJECTS_TTL_DAYS", ge=1)
    codes_ttl_days: int = Field(30, alias="CODES_TTL_DAYS", ge=1)
    config_ttl_days: int = Field(30, alias="CONFIG_TTL_DAYS", ge=1)
    journal_ttl_days: int = Field(21, alias="JOURNAL_TTL_DAYS", ge=1)

    normal_weekly_limit: int = Field(10, alias="NORMAL_WEEKLY_LIMIT", ge=0)
    pro_weekly_limit: int = Field(50, alias="PRO_WEEKLY_LIMIT", ge=0)
    normal_max_images: int = Field(3, alias="NORMAL_MAX_IMAGES", ge=1)
    pro_max_images: int = Field(10, alias="PRO_MAX_IMAGES", ge=1)
    unlimited_max_images: int = Field(30, alias="UNLIMITED_MAX_IMAGES", ge=1)
    quota_timezone: str = Field("Asia/Shanghai", alias="QUOTA_TIMEZONE")

    journal_max_entries: int = Field(500, alias="JOURNAL_MAX_ENTRIES", ge=1)

    admission_capacity: int = Field(2, alias="ADMISSION_CAPACITY", ge=1)
    inference_timeout_s: float = Field(60.0, alias="INFERENCE_TIMEOUT_S", gt=0)

    idle_check_interval_s: float = Field(120.0, alias="IDLE_CHECK_INTERVAL_S", gt=0)
    idle_light_after_s: float = Field(120.0, alias="IDLE_LIGHT_AFTER_S", gt=0)
    idle_deep_after_s: float = Field(300.0, alias="IDLE_DEEP_AFTER_S", gt=0)

    gemini_api_key: str = Field(
        "",
        alias="GEMINI_API_KEY",
        description="One or more API keys separated by commas",
    )
    vision_model: str = Field("gemini-2.5-flash", alias="VISION_MODEL")
    vision_base_url: str = Field(DEFAULT_VISION_BASE_URL, alias="VISION_BASE_URL")

    geo_enabled: bool = Field(True, alias="GEO_ENABLED")
    geo_lookup_url: str = Field(DEFAULT_GEO_LOOKUP_URL, alias="GEO_LOOKUP_URL")
    geo_timeout_s: float = Field(3.0, alias="GEO_TIMEOUT_S", gt=0)

    admin_token: str = Field("test-admin-token", alias="ADMIN_TOKEN")
    cors_origins: str = Field(
        "*",
        alias="CORS_ORIGINS",
        description="Allowed browser origins separated by commas; empty disables CORS",
    )
    trusted_proxies: list[str] = Field(
        default_factory=lambda: ["127.0.0.1", "testclient"],
        alias="TRUSTED_PROXIES",
    )

    model_config = ConfigDict(
        extra="ignore",
        env_file=".env",
        case_sensitive=False,
        populate_by_name=True,
    )

    @property
    def api_keys(self) -> list[str]:
        return [k.strip() for k in self.gemini_api_key.split(",") if k.strip()]

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
