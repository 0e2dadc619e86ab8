"""
Image Validation - Format, size, signature and dimension checks for input images.

Images arrive as base64 data URLs (validated here) or http(s) URLs
(accepted as-is; the provider fetches them).
"""

import base64
import binascii
import hashlib
import io
import re
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from gateway.exceptions import InputValidationError

MAX_IMAGE_SIZE = 5 * 1024 * 1024  # 5MB
MIN_IMAGE_SIZE = 1000  # rejects empty or truncated uploads
MIN_DIMENSION = 256
MAX_DIMENSION = 4096

VALID_FORMATS = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
}

_DATA_URL_RE = re.compile(r"^data:(image/\w+);base64,")


@dataclass(frozen=True)
class ValidatedImage:
    """An accepted input image."""

    remote: bool
    content_type: str | None = None
    size_bytes: int | None = None
    width: int | None = None
    height: int | None = None


def strip_data_url(value: str) -> str:
    """Drop a `data:<type>;base64,` prefix, if present."""
    if value.startswith("data:") and "," in value:
        return value.split(",", 1)[1]
    return value


def hash_image(value: str) -> str:
    """SHA-256 hex digest of an image's payload, ignoring any data URL prefix."""
    return hashlib.sha256(strip_data_url(value).encode()).hexdigest()


def _magic_bytes_match(data: bytes, content_type: str) -> bool:
    if content_type == "image/png":
        return data[:4] == b"\x89PNG"
    if content_type == "image/jpeg":
        return data[:3] == b"\xff\xd8\xff"
    if content_type == "image/webp":
        return data[:4] == b"RIFF" and data[8:12] == b"WEBP"
    return False


def validate_image(value: str, field_name: str = "Image") -> ValidatedImage:
    """
    Validate one input image.

    Raises:
        InputValidationError: with malformed_image=True for every rejection
    """

    def reject(message: str) -> InputValidationError:
        return InputValidationError(field_name, message, malformed_image=True)

    if not value.startswith("data:"):
        if value.startswith(("http://", "https://")):
            return ValidatedImage(remote=True)
        raise reject(f"{field_name} must be a base64 data URL or HTTP URL")

    match = _DATA_URL_RE.match(value)
    if not match:
        raise reject(f"{field_name} has invalid data URL format")

    content_type = match.group(1)
    if content_type not in VALID_FORMATS:
        raise reject(f"{field_name} format not supported: {content_type}. Use JPEG, PNG, or WebP.")

    payload = value[match.end():]
    if not payload:
        raise reject(f"{field_name} has no data content")

    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise reject(f"{field_name} could not be decoded. File may be corrupted.") from None

    size = len(data)
    if size < MIN_IMAGE_SIZE:
        raise reject(f"{field_name} is too small ({size} bytes). Minimum {MIN_IMAGE_SIZE} bytes.")
    if size > MAX_IMAGE_SIZE:
        raise reject(f"{field_name} is too large ({size / 1024 / 1024:.2f}MB). Maximum 5MB.")

    if not _magic_bytes_match(data, content_type):
        raise reject(
            f"{field_name} content does not match declared format ({content_type}). "
            "File may be corrupted or mislabeled."
        )

    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
            detected = img.format
    except (UnidentifiedImageError, OSError):
        raise reject(f"{field_name} could not be decoded. File may be corrupted.") from None

    if detected != VALID_FORMATS[content_type]:
        raise reject(
            f"{field_name} content does not match declared format ({content_type}). "
            "File may be corrupted or mislabeled."
        )
    if width < MIN_DIMENSION or height < MIN_DIMENSION:
        raise reject(
            f"{field_name} dimensions too small ({width}x{height}). "
            f"Minimum {MIN_DIMENSION}x{MIN_DIMENSION}."
        )
    if width > MAX_DIMENSION or height > MAX_DIMENSION:
        raise reject(
            f"{field_name} dimensions too large ({width}x{height}). "
            f"Maximum {MAX_DIMENSION}x{MAX_DIMENSION}."
        )

    return ValidatedImage(
        remote=False, content_type=content_type, size_bytes=size, width=width, height=height
    )
