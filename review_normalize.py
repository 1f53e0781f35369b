#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Turn an image reference from the input CSV into something the scoring
endpoint can look at.

    - *.pdf (URL or local path) -> first page rendered to a PNG data URL
    - local image file          -> base64 data URL
    - anything else             -> returned unchanged
"""
from __future__ import annotations

import base64
import io
import mimetypes
import stat
from pathlib import Path

import fitz  # PyMuPDF
import httpx
from PIL import Image

DEFAULT_SCALE = 1.5
PDF_EXTENSIONS = (".pdf",)
FETCH_TIMEOUT = 60.0

# Formats the vision endpoint accepts as-is; everything else goes through Pillow.
WEB_IMAGE_MIMES = {"image/png", "image/jpeg", "image/gif", "image/webp"}
IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tif", ".tiff"}


class NormalizationError(Exception):
    pass


def is_pdf_reference(reference: str) -> bool:
    return (reference or "").lower().endswith(PDF_EXTENSIONS)


def is_remote(reference: str) -> bool:
    return reference.lower().startswith(("http://", "https://"))


###############################################################################
# PDF rendering                                                               #
###############################################################################

def fetch_bytes(reference: str, http_client: httpx.Client | None = None) -> bytes:
    """Read a remote URL with httpx, or a local path from disk."""
    if not is_remote(reference):
        return Path(reference).expanduser().read_bytes()

    if http_client is not None:
        resp = http_client.get(reference, follow_redirects=True)
    else:
        with httpx.Client(timeout=FETCH_TIMEOUT) as client:
            resp = client.get(reference, follow_redirects=True)
    resp.raise_for_status()
    return resp.content


def pdf_first_page_to_data_url(data: bytes, scale: float = DEFAULT_SCALE) -> str:
    doc = fitz.open(stream=data, filetype="pdf")
    try:
        if doc.page_count < 1:
            raise ValueError("document has no pages")
        pix = doc[0].get_pixmap(matrix=fitz.Matrix(scale, scale))
        png_bytes = pix.tobytes("png")
    finally:
        doc.close()
    encoded = base64.b64encode(png_bytes).decode("ascii")
    return f"data:image/png;base64,{encoded}"


###############################################################################
# Local images                                                                #
###############################################################################

def to_data_uri(path: Path) -> str:
    """Convert a local image file to a base64 data URI, re-encoding odd formats as PNG."""
    mime, _ = mimetypes.guess_type(path.name)
    if mime in WEB_IMAGE_MIMES:
        raw = path.read_bytes()
    else:
        with Image.open(path) as im:
            if im.mode not in ("RGB", "RGBA", "L", "LA"):
                im = im.convert("RGBA")
            buf = io.BytesIO()
            im.save(buf, format="PNG", optimize=True)
        raw = buf.getvalue()
        mime = "image/png"
    encoded = base64.b64encode(raw).decode("ascii")
    return f"data:{mime};base64,{encoded}"


def _local_image(reference: str) -> Path | None:
    if is_remote(reference) or reference.startswith("data:"):
        return None
    path = Path(reference).expanduser()
    if path.suffix.lower() not in IMAGE_EXTS:
        return None
    # Only a plain "no such file" means the reference is not local; other
    # stat errors (name too long, permission denied) are reported.
    try:
        mode = path.stat().st_mode
    except (FileNotFoundError, NotADirectoryError):
        return None
    return path if stat.S_ISREG(mode) else None


###############################################################################
# Entry point                                                                 #
###############################################################################

def normalize_reference(
    reference: str,
    *,
    scale: float = DEFAULT_SCALE,
    http_client: httpx.Client | None = None,
) -> str:
    """
    Return an image URL (or data URL) for `reference`.

    Raises NormalizationError when a PDF cannot be fetched or rendered, or a
    local image cannot be read.
    """
    if is_pdf_reference(reference):
        try:
            data = fetch_bytes(reference, http_client)
            return pdf_first_page_to_data_url(data, scale=scale)
        except httpx.HTTPStatusError as exc:
            raise NormalizationError(
                f"Failed to render PDF to image: HTTP {exc.response.status_code} "
                f"fetching {reference}"
            ) from exc
        except (httpx.HTTPError, OSError, ValueError, RuntimeError) as exc:
            raise NormalizationError(f"Failed to render PDF to image: {exc}") from exc

    try:
        path = _local_image(reference)
        if path is not None:
            return to_data_uri(path)
    except (OSError, ValueError) as exc:
        raise NormalizationError(f"Failed to read image {reference}: {exc}") from exc

    return reference
