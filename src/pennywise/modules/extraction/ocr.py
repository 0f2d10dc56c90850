from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import pytesseract
from PIL import Image, UnidentifiedImageError

from pennywise.core.config import settings
from pennywise.core.logging import get_logger, log_event, log_exception, monotonic_ms
from pennywise.modules.extraction.errors import OcrError

logger = get_logger(__name__)


@dataclass(frozen=True)
class OcrPage:
    text: str
    # Engine-native scale, 0-100.
    confidence: float


class OcrEngine:
    """Shared handle around a local OCR engine.

    Lifecycle is explicit: `start()` once (implementations start lazily on the
    first `recognize()`), `session()` per document to serialize access,
    `shutdown()` on process exit.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        self._started = True

    def shutdown(self) -> None:
        self._started = False

    @contextmanager
    def session(self) -> Iterator[OcrEngine]:
        with self._lock:
            yield self

    def recognize(self, path: Path) -> OcrPage:  # pragma: no cover
        raise NotImplementedError


class TesseractOcrEngine(OcrEngine):
    def __init__(
        self,
        *,
        lang: str | None = None,
        psm: int | None = None,
        tesseract_cmd: str | None = None,
    ) -> None:
        super().__init__()
        self._lang = lang or settings.tesseract_lang
        self._psm = psm if psm is not None else settings.tesseract_psm
        self._tesseract_cmd = tesseract_cmd or settings.tesseract_cmd

    @property
    def _config(self) -> str:
        return f"--psm {self._psm}"

    def start(self) -> None:
        if self._started:
            return
        if self._tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self._tesseract_cmd
        try:
            version = pytesseract.get_tesseract_version()
        except pytesseract.TesseractNotFoundError as e:
            log_exception(logger, "ocr.engine.start.failure", engine="tesseract")
            raise OcrError("Tesseract binary not found") from e
        self._started = True
        log_event(
            logger,
            "ocr.engine.start",
            engine="tesseract",
            version=str(version),
            lang=self._lang,
            psm=self._psm,
        )

    def shutdown(self) -> None:
        if not self._started:
            return
        self._started = False
        log_event(logger, "ocr.engine.shutdown", engine="tesseract")

    def recognize(self, path: Path) -> OcrPage:
        start = time.monotonic()
        image = _load_image(path)
        if not self._started:
            self.start()
        try:
            text = pytesseract.image_to_string(image, lang=self._lang, config=self._config)
            data = pytesseract.image_to_data(
                image,
                lang=self._lang,
                config=self._config,
                output_type=pytesseract.Output.DICT,
            )
        except (pytesseract.TesseractError, RuntimeError) as e:
            raise OcrError(f"OCR failed: {e}") from e
        finally:
            image.close()

        confidence = _mean_word_confidence(data.get("conf") or [])
        log_event(
            logger,
            "ocr.page.recognized",
            engine="tesseract",
            path=str(path),
            chars=len(text or ""),
            confidence=round(confidence, 2),
            duration_ms=monotonic_ms(start),
        )
        return OcrPage(text=(text or "").strip(), confidence=confidence)


def _load_image(path: Path) -> Image.Image:
    try:
        image = Image.open(path)
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise OcrError(f"Cannot decode image {Path(path).name}: {e}") from e
    if image.mode not in {"RGB", "L"}:
        image = image.convert("RGB")
    return image


def _mean_word_confidence(raw: list[object]) -> float:
    # Tesseract reports -1 for non-word boxes (blocks, paragraphs, lines).
    values: list[float] = []
    for x in raw:
        try:
            conf = float(x)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            continue
        if conf >= 0:
            values.append(conf)
    if not values:
        return 0.0
    return sum(values) / len(values)


_engine: OcrEngine | None = None
_engine_lock = threading.Lock()


def get_ocr_engine() -> OcrEngine:
    global _engine  # noqa: PLW0603
    if _engine is not None:
        return _engine
    with _engine_lock:
        if _engine is None:
            _engine = TesseractOcrEngine()
    return _engine


def set_ocr_engine(engine: OcrEngine | None) -> OcrEngine | None:
    """Swap the process-wide engine, returning the previous one."""
    global _engine  # noqa: PLW0603
    with _engine_lock:
        previous = _engine
        _engine = engine
    return previous


def shutdown_ocr_engine() -> None:
    engine = set_ocr_engine(None)
    if engine is not None:
        engine.shutdown()
