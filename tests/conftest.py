from __future__ import annotations

import os
import shutil
from pathlib import Path

import pytest

# Set env before any pennywise imports (settings/engine are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.pennywise_test.db")
os.environ.setdefault("WORK_DIR", ".tmp_pennywise_work_test")
# Vision stays off unless a test enables it explicitly.
os.environ["RECEIPT_AI_ENABLED"] = "false"
os.environ["EXTRACTION_METHOD"] = "hybrid"


@pytest.fixture(autouse=True)
def _reset_db_and_workdir() -> None:
    import pennywise.models  # noqa: F401
    from pennywise.core.db import engine
    from pennywise.core.models import Base
    from pennywise.modules.extraction.ocr import set_ocr_engine

    set_ocr_engine(None)

    work_dir = Path(os.environ["WORK_DIR"])
    if work_dir.exists():
        shutil.rmtree(work_dir)

    # Reset DB schema
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

    yield

    set_ocr_engine(None)


@pytest.fixture
def make_image(tmp_path):
    from PIL import Image

    def _make(name: str = "receipt.png", size: tuple[int, int] = (600, 900), fmt: str = "PNG") -> Path:
        path = tmp_path / name
        Image.new("RGB", size, color=(240, 240, 235)).save(path, format=fmt)
        return path

    return _make


@pytest.fixture
def enable_vision(monkeypatch):
    from pennywise.core.config import settings

    monkeypatch.setattr(settings, "receipt_ai_enabled", True)
    monkeypatch.setattr(settings, "openai_api_key", "sk-test")
    return settings
