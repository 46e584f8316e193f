from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Values already in the process environment win over the project .env file.
_project_root = Path(__file__).resolve().parents[1]
load_dotenv(_project_root / ".env", override=False)

_TEST_KEY_PREFIXES = ("kei_test_", "openai_test_")


class Settings(BaseSettings):
    POD_DB_URL: str = "sqlite:///./pod_pipeline.db"
    POD_UPLOADS_DIR: str = "./uploads"
    POD_UPLOADS_URL_PREFIX: str = "/uploads"
    LOG_LEVEL: str = "INFO"

    OPENAI_API_KEY: str | None = None
    OPENAI_IMAGE_MODEL: str = "gpt-image-1"
    OPENAI_COPY_MODEL: str = "gpt-4o-mini"
    OPENAI_VISION_MODEL: str = "gpt-4o-mini"
    PROVIDER_REQUEST_TIMEOUT_SECONDS: float = 120.0

    KIE_API_KEY: str | None = None
    KIE_GENERATE_URL: str = "https://api.kie.ai/api/v1/gpt4o-image/generate"
    KIE_EDIT_URL: str | None = None

    PRINTFUL_API_KEY: str | None = None
    PRINTFUL_BASE_URL: str = "https://api.printful.com"
    PRINTFUL_CATALOG_CACHE_SECONDS: float = 3600.0

    SHOPIFY_ADMIN_ACCESS_TOKEN: str | None = None
    SHOPIFY_ADMIN_API_VERSION: str = "2025-10"
    SHOPIFY_REQUEST_TIMEOUT_SECONDS: float = 20.0

    PLACEHOLDER_IMAGE_BASE_URL: str = "https://via.placeholder.com/1024"

    PUBLISH_MAX_RETRIES: int = 2
    PUBLISH_RETRY_BASE_DELAY_SECONDS: float = 1.0
    PUBLISH_RETRY_JITTER_SECONDS: float = 0.5

    DESIGN_POLL_INTERVAL_SECONDS: float = 2.5
    DESIGN_POLL_DEADLINE_SECONDS: float = 30.0
    REVISION_POLL_INTERVAL_SECONDS: float = 2.5
    REVISION_POLL_DEADLINE_SECONDS: float = 20.0
    REVISION_RETRY_POLL_INTERVAL_SECONDS: float = 3.0
    REVISION_RETRY_POLL_DEADLINE_SECONDS: float = 70.0
    MOCKUP_POLL_INTERVAL_SECONDS: float = 3.0
    MOCKUP_POLL_DEADLINE_SECONDS: float = 60.0
    LIFESTYLE_POLL_INTERVAL_SECONDS: float = 2.5
    LIFESTYLE_POLL_DEADLINE_SECONDS: float = 30.0

    FINALIZE_STALE_AFTER_SECONDS: float = 600.0
    ALLOW_REVISE_AFTER_FINALIZE: bool = True

    @field_validator("KIE_GENERATE_URL", "PRINTFUL_BASE_URL", "PLACEHOLDER_IMAGE_BASE_URL", "POD_UPLOADS_URL_PREFIX")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator(
        "DESIGN_POLL_INTERVAL_SECONDS",
        "REVISION_POLL_INTERVAL_SECONDS",
        "REVISION_RETRY_POLL_INTERVAL_SECONDS",
        "MOCKUP_POLL_INTERVAL_SECONDS",
        "LIFESTYLE_POLL_INTERVAL_SECONDS",
    )
    @classmethod
    def validate_poll_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Poll intervals must be positive")
        return value

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


def is_usable_key(value: str | None) -> bool:
    """Blank keys and test placeholders never reach a provider."""
    if not value or not value.strip():
        return False
    return not value.strip().startswith(_TEST_KEY_PREFIXES)


settings = Settings()
