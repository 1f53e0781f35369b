from __future__ import annotations

import base64
import io

import fitz
import httpx
import pytest
from PIL import Image

from review_normalize import (
    NormalizationError,
    is_pdf_reference,
    normalize_reference,
)

PNG_PREFIX = "data:image/png;base64,"


def _pdf_bytes(width: float = 200, height: float = 100) -> bytes:
    doc = fitz.open()
    page = doc.new_page(width=width, height=height)
    page.insert_text((20, 50), "Poster")
    doc.new_page(width=width, height=height)
    data = doc.tobytes()
    doc.close()
    return data


def _decode(data_url: str) -> Image.Image:
    assert data_url.startswith(PNG_PREFIX)
    return Image.open(io.BytesIO(base64.b64decode(data_url[len(PNG_PREFIX):])))


def test_is_pdf_reference_is_case_insensitive() -> None:
    assert is_pdf_reference("https://cdn.example.test/Flyer.PDF")
    assert is_pdf_reference("brochure.pdf")
    assert not is_pdf_reference("https://cdn.example.test/pic.jpg")
    assert not is_pdf_reference("")


@pytest.mark.parametrize("reference", [
    "https://cdn.example.test/pic.jpg",
    "data:image/png;base64,AAAA",
    "pic.jpg",
])
def test_non_pdf_references_pass_through(reference: str) -> None:
    assert normalize_reference(reference) == reference


def test_local_pdf_first_page_rendered_at_scale(tmp_path) -> None:
    path = tmp_path / "flyer.pdf"
    path.write_bytes(_pdf_bytes())

    image = _decode(normalize_reference(str(path)))
    assert image.format == "PNG"
    assert image.size == (300, 150)


def test_remote_pdf_is_fetched(tmp_path) -> None:
    pdf = _pdf_bytes()
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, content=pdf, headers={"Content-Type": "application/pdf"})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    data_url = normalize_reference("https://cdn.example.test/flyer.pdf", http_client=client, scale=1.0)

    assert seen == ["https://cdn.example.test/flyer.pdf"]
    assert _decode(data_url).size == (200, 100)


def test_remote_pdf_http_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="missing")

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(NormalizationError) as info:
        normalize_reference("https://cdn.example.test/flyer.pdf", http_client=client)
    assert "Failed to render PDF to image" in str(info.value)
    assert "404" in str(info.value)


def test_corrupt_pdf(tmp_path) -> None:
    path = tmp_path / "broken.pdf"
    path.write_bytes(b"this is not a pdf")
    with pytest.raises(NormalizationError, match="Failed to render PDF to image"):
        normalize_reference(str(path))


def test_missing_local_pdf(tmp_path) -> None:
    with pytest.raises(NormalizationError, match="Failed to render PDF to image"):
        normalize_reference(str(tmp_path / "nope.pdf"))


def test_local_png_embedded_as_is(tmp_path) -> None:
    path = tmp_path / "pic.png"
    Image.new("RGB", (4, 3), "red").save(path)

    data_url = normalize_reference(str(path))
    assert data_url == PNG_PREFIX + base64.b64encode(path.read_bytes()).decode("ascii")


def test_local_bmp_reencoded_to_png(tmp_path) -> None:
    path = tmp_path / "scan.bmp"
    Image.new("RGB", (5, 5), "blue").save(path)

    image = _decode(normalize_reference(str(path)))
    assert image.size == (5, 5)


def test_each_call_renders_again(tmp_path) -> None:
    path = tmp_path / "flyer.pdf"
    path.write_bytes(_pdf_bytes())
    first = normalize_reference(str(path))
    path.write_bytes(_pdf_bytes(width=100, height=100))
    second = normalize_reference(str(path))
    assert first != second
    assert _decode(second).size == (150, 150)


def test_overlong_local_name_is_normalization_error() -> None:
    with pytest.raises(NormalizationError, match="Failed to read image"):
        normalize_reference("a" * 300 + ".png")


def test_missing_local_image_passes_through(tmp_path) -> None:
    reference = str(tmp_path / "nowhere" / "absent.png")
    assert normalize_reference(reference) == reference
