from __future__ import annotations

import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path

from pdf2image import convert_from_path
from PIL import Image, ImageEnhance, ImageFilter, ImageOps
from pypdf import PdfReader

from pennywise.core.config import settings
from pennywise.core.logging import get_logger, log_event, log_exception, monotonic_ms
from pennywise.modules.extraction.errors import NormalizationError

logger = get_logger(__name__)

BRIGHTNESS = 1.1
CONTRAST = 1.2

_MIME_BY_SUFFIX = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".pdf": "application/pdf",
}


@dataclass(frozen=True)
class NormalizedPage:
    path: Path
    mime_type: str
    page_number: int
    is_original: bool = False


@dataclass
class NormalizedDocument:
    """OCR-ready pages plus the scratch directory that holds them.

    `cleanup()` removes the scratch directory; the source file is never touched.
    """

    pages: list[NormalizedPage]
    workdir: Path
    degraded: bool = False
    source_page_count: int = 0
    _cleaned: bool = field(default=False, repr=False)

    @property
    def first_page(self) -> NormalizedPage:
        return self.pages[0]

    def cleanup(self) -> None:
        if self._cleaned:
            return
        self._cleaned = True
        if self.workdir.exists():
            shutil.rmtree(self.workdir, ignore_errors=True)
            log_event(logger, "extraction.normalize.cleanup", workdir=str(self.workdir))

    def __enter__(self) -> NormalizedDocument:
        return self

    def __exit__(self, *_exc) -> None:
        self.cleanup()


def guess_mime_type(path: Path) -> str:
    return _MIME_BY_SUFFIX.get(path.suffix.lower(), "image/png")


def normalize(file_path: str | Path, mime_type: str) -> NormalizedDocument:
    """Turn an uploaded image or PDF into canonical raster pages.

    Never raises for processing problems: when rasterization or image
    enhancement fails the original file is returned as the only page and the
    caller decides whether that is fatal.
    """
    src = Path(file_path)
    workdir = _make_workdir()
    start = time.monotonic()
    is_pdf = mime_type == "application/pdf"

    try:
        if is_pdf:
            pages, page_count = _rasterize_pdf(src, workdir)
        else:
            pages = [_preprocess_image(src, workdir)]
            page_count = 1
    except Exception as e:  # noqa: BLE001
        log_exception(
            logger,
            "extraction.normalize.failure",
            path=str(src),
            mime_type=mime_type,
            error=str(e),
            duration_ms=monotonic_ms(start),
        )
        original = NormalizedPage(path=src, mime_type=mime_type, page_number=1, is_original=True)
        return NormalizedDocument(
            pages=[original], workdir=workdir, degraded=True, source_page_count=1
        )

    log_event(
        logger,
        "extraction.normalize",
        path=str(src),
        mime_type=mime_type,
        page_count=len(pages),
        source_page_count=page_count,
        duration_ms=monotonic_ms(start),
    )
    return NormalizedDocument(pages=pages, workdir=workdir, source_page_count=page_count)


def _make_workdir() -> Path:
    root = settings.work_dir
    root.mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix="receipt-", dir=root))


def _pdf_page_count(src: Path) -> int:
    reader = PdfReader(str(src))
    return len(reader.pages)


def _rasterize_pdf(src: Path, workdir: Path) -> tuple[list[NormalizedPage], int]:
    page_count = _pdf_page_count(src)
    if page_count <= 0:
        raise NormalizationError("PDF has no pages")
    last_page = min(page_count, max(1, settings.pdf_max_pages))
    # Rendered straight to disk so only one page is held in memory at a time.
    raw_paths = convert_from_path(
        str(src),
        dpi=settings.pdf_dpi,
        first_page=1,
        last_page=last_page,
        fmt="png",
        output_folder=str(workdir),
        output_file="raw",
        paths_only=True,
    )
    if not raw_paths:
        raise NormalizationError("PDF rasterization produced no pages")

    bound = (settings.max_image_dimension, settings.max_image_dimension)
    pages: list[NormalizedPage] = []
    for idx, raw_path in enumerate(raw_paths, start=1):
        out = workdir / f"page_{idx:03d}.png"
        with Image.open(raw_path) as raw:
            raw.load()
            image = raw if raw.mode in {"RGB", "L"} else raw.convert("RGB")
            image.thumbnail(bound, Image.Resampling.LANCZOS)
            image.save(out, format="PNG")
        Path(raw_path).unlink(missing_ok=True)
        pages.append(NormalizedPage(path=out, mime_type="image/png", page_number=idx))
    return pages, page_count


def _preprocess_image(src: Path, workdir: Path) -> NormalizedPage:
    with Image.open(src) as raw:
        raw.load()
        if getattr(raw, "n_frames", 1) > 1:
            raw.seek(0)
        image = ImageOps.exif_transpose(raw) or raw
        image = image.convert("RGB")

    # thumbnail() only ever shrinks, preserving aspect ratio.
    bound = (settings.max_image_dimension, settings.max_image_dimension)
    image.thumbnail(bound, Image.Resampling.LANCZOS)

    image = ImageOps.autocontrast(image)
    image = ImageEnhance.Brightness(image).enhance(BRIGHTNESS)
    image = ImageEnhance.Contrast(image).enhance(CONTRAST)
    image = image.filter(ImageFilter.SHARPEN)
    image = ImageOps.grayscale(image)

    out = workdir / f"{src.stem}_processed.png"
    image.save(out, format="PNG", optimize=True)
    return NormalizedPage(path=out, mime_type="image/png", page_number=1)
