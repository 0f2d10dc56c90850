from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

MAX_PROCESSING_ATTEMPTS = 3

DEFAULT_ALLOWED_MIME_TYPES: tuple[str, ...] = (
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
    "application/pdf",
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"

    database_url: str = "sqlite:///./pennywise.db"
    redis_url: str = "redis://localhost:6379/0"

    # vision | heuristic | hybrid
    extraction_method: Literal["vision", "heuristic", "hybrid"] = "hybrid"

    receipt_ai_enabled: bool = True
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    receipt_ai_timeout_seconds: float = 30.0
    receipt_ai_max_tokens: int = 2000

    vision_acceptance_threshold: float = 0.5
    max_processing_attempts: int = MAX_PROCESSING_ATTEMPTS

    max_upload_bytes: int = 10 * 1024 * 1024
    allowed_mime_types: tuple[str, ...] = DEFAULT_ALLOWED_MIME_TYPES

    pdf_dpi: int = 300
    pdf_max_pages: int = 10
    max_image_dimension: int = 2000

    tesseract_cmd: str | None = None
    tesseract_lang: str = "eng"
    tesseract_psm: int = 6

    work_dir: Path = Path(".pennywise_work")


settings = Settings()
