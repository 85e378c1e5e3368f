# settings.py
from functools import lru_cache
from typing import Dict

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Concept server settings.

    - Reads from .env / environment
    - Cascade limits are process-wide; every engine built by the app uses them
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Service metadata ---
    SERVICE_NAME: str = "concept-server"
    SERVICE_VERSION: str = "0.1.0"

    # --- HTTP ---
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    REQUESTING_BASE_URL: str = "/api"

    # --- Logging ---
    LOG_LEVEL: str = "INFO"

    # --- Engine ---
    MAX_CASCADE_DEPTH: int = Field(default=20, ge=1)
    STRICT_RESPONSES: bool = False

    # Routes served straight from a concept, bypassing Requesting.request.
    # route -> justification
    PASSTHROUGH_INCLUSIONS: Dict[str, str] = {
        "/api/Dictionary/translateTermFromL1": "public dictionary lookup",
        "/api/Dictionary/translateTermFromL2": "public dictionary lookup",
    }

    @field_validator("REQUESTING_BASE_URL")
    @classmethod
    def _normalize_base_url(cls, v: str) -> str:
        v = "/" + v.strip().strip("/")
        return v if v != "/" else ""

    @field_validator("LOG_LEVEL")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.strip().upper()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
