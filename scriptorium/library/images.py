"""Fetch page images from object storage and shape them for inference."""

import base64
import io
from typing import Optional

import requests
from PIL import Image

from ..errors import ErrorKind, classify_error
from ..logger import logger as LOGGER


class ImageFetchError(Exception):
    """Raised when a page image cannot be fetched or decoded.

    ``kind`` tells whether another attempt may succeed (timeouts, 5xx) or
    not (4xx, undecodable data).
    """

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.CLIENT):
        super().__init__(message)
        self.kind = kind


def fetch_image_bytes(url: str, timeout: float = 60.0, session: Optional[requests.Session] = None) -> bytes:
    """Download raw image bytes.

    Raises:
        ImageFetchError: If the request fails or returns a non-2xx status.
    """
    getter = session.get if session is not None else requests.get
    try:
        resp = getter(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise ImageFetchError(f"Failed to fetch image {url}: {e}", kind=classify_error(e)) from e
    return resp.content


def shrink_to_jpeg(data: bytes, max_width: int = 800, quality: int = 85) -> bytes:
    """Resize to at most ``max_width`` pixels wide and re-encode as JPEG.

    Narrower images keep their size; the aspect ratio is always preserved.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = img.convert("RGB")
            if img.width > max_width:
                height = round(img.height * max_width / img.width)
                img = img.resize((max_width, height), Image.LANCZOS)
            out = io.BytesIO()
            img.save(out, format="JPEG", quality=quality)
    except (OSError, ValueError) as e:
        raise ImageFetchError(f"Could not decode image: {e}") from e
    return out.getvalue()


def load_page_image_base64(
    url: str,
    max_width: int = 800,
    quality: int = 85,
    timeout: float = 60.0,
    session: Optional[requests.Session] = None,
) -> str:
    """Fetch an image and return it as base64 JPEG ready for inline upload."""
    raw = fetch_image_bytes(url, timeout=timeout, session=session)
    jpeg = shrink_to_jpeg(raw, max_width=max_width, quality=quality)
    LOGGER.debug(f"Prepared image {url}: {len(raw)} -> {len(jpeg)} bytes")
    return base64.b64encode(jpeg).decode("ascii")
