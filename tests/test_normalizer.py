from __future__ import annotations

from pathlib import Path

from PIL import Image

from pennywise.modules.extraction import normalizer
from pennywise.modules.extraction.normalizer import normalize


def test_large_image_is_downscaled_and_grayscaled(make_image):
    src = make_image("big.jpg", size=(4000, 1000), fmt="JPEG")

    doc = normalize(src, "image/jpeg")
    try:
        assert not doc.degraded
        assert len(doc.pages) == 1
        page = doc.first_page
        assert page.mime_type == "image/png"
        assert page.path != src
        with Image.open(page.path) as out:
            assert out.size == (2000, 500)
            assert out.mode == "L"
    finally:
        doc.cleanup()


def test_small_image_is_not_upscaled(make_image):
    src = make_image("small.png", size=(300, 200))

    with normalize(src, "image/png") as doc:
        with Image.open(doc.first_page.path) as out:
            assert out.size == (300, 200)


def test_corrupted_image_falls_back_to_original(tmp_path):
    src = tmp_path / "broken.png"
    src.write_bytes(b"\x89PNG not really")

    doc = normalize(src, "image/png")
    assert doc.degraded
    assert doc.first_page.path == src
    assert doc.first_page.is_original
    doc.cleanup()
    # The source file is never removed by cleanup.
    assert src.exists()


def test_cleanup_removes_scratch_files_and_is_idempotent(make_image):
    doc = normalize(make_image(), "image/png")
    produced = doc.first_page.path
    assert produced.exists()

    doc.cleanup()
    doc.cleanup()
    assert not produced.exists()
    assert not doc.workdir.exists()


def test_pdf_pages_are_rasterized_in_order_and_bounded(monkeypatch, tmp_path):
    src = tmp_path / "statement.pdf"
    src.write_bytes(b"%PDF-1.4 stub")
    calls: list[dict] = []

    def _convert(path, **kwargs):
        calls.append(kwargs)
        count = kwargs["last_page"] - kwargs["first_page"] + 1
        out_dir = Path(kwargs["output_folder"])
        paths = []
        for n in range(1, count + 1):
            raw = out_dir / f"{kwargs['output_file']}-{n:02d}.png"
            Image.new("RGB", (3000, 1500), color=(255, 255, 255)).save(raw, format="PNG")
            paths.append(str(raw))
        return paths

    monkeypatch.setattr(normalizer, "_pdf_page_count", lambda _src: 12)
    monkeypatch.setattr(normalizer, "convert_from_path", _convert)

    with normalize(src, "application/pdf") as doc:
        assert not doc.degraded
        assert doc.source_page_count == 12
        assert [p.page_number for p in doc.pages] == list(range(1, 11))
        assert doc.pages[0].path.name == "page_001.png"
        with Image.open(doc.pages[-1].path) as out:
            assert max(out.size) == 2000
        # Full-resolution renders are removed once downscaled.
        assert sorted(p.name for p in doc.workdir.iterdir()) == [p.path.name for p in doc.pages]

    assert len(calls) == 1
    assert calls[0]["dpi"] == 300
    assert calls[0]["last_page"] == 10
    assert calls[0]["paths_only"] is True


def test_pdf_rasterization_failure_degrades(monkeypatch, tmp_path):
    src = tmp_path / "statement.pdf"
    src.write_bytes(b"%PDF-1.4 stub")

    def _boom(*_args, **_kwargs):
        raise RuntimeError("poppler missing")

    monkeypatch.setattr(normalizer, "_pdf_page_count", lambda _src: 1)
    monkeypatch.setattr(normalizer, "convert_from_path", _boom)

    with normalize(src, "application/pdf") as doc:
        assert doc.degraded
        assert doc.first_page.path == src
        assert doc.first_page.mime_type == "application/pdf"
