"""
Photo validation for report evidence uploads.

Uses Pillow (PIL) to confirm the bytes really are an image.
"""

from PIL import Image, UnidentifiedImageError
import io
from typing import Tuple, Optional
import logging

logger = logging.getLogger("civicfix.photo_utils")

# Configuration
MAX_UPLOAD_SIZE = 10 * 1024 * 1024  # 10 MB
MAX_IMAGE_DIMENSION = 8000  # pixels
ALLOWED_MIME_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}
ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}
FORMAT_MIME_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
}


def validate_image(file_data: bytes, file_name: str) -> Tuple[bool, Optional[str]]:
    """
    Validate an uploaded photo.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not file_data:
        return False, "File is empty"

    if len(file_data) > MAX_UPLOAD_SIZE:
        return False, f"File size exceeds {MAX_UPLOAD_SIZE / (1024*1024):.1f} MB limit"

    ext = "." + file_name.rsplit(".", 1)[-1].lower() if "." in (file_name or "") else ""
    if ext not in ALLOWED_EXTENSIONS:
        return False, f"File type not allowed. Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}"

    try:
        img = Image.open(io.BytesIO(file_data))
        img.verify()

        # verify() leaves the image unusable; reopen to read its size.
        img = Image.open(io.BytesIO(file_data))
        width, height = img.size
        mime_type = FORMAT_MIME_TYPES.get(img.format or "")
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        logger.warning("Image validation failed for %s: %s", file_name, e)
        return False, f"Invalid image file: {e}"

    if mime_type not in ALLOWED_MIME_TYPES:
        return False, f"Unsupported image format. Allowed: {', '.join(sorted(ALLOWED_MIME_TYPES))}"

    if width > MAX_IMAGE_DIMENSION or height > MAX_IMAGE_DIMENSION:
        return False, f"Image dimensions exceed {MAX_IMAGE_DIMENSION}px"

    return True, None


def detect_mime_type(file_data: bytes) -> str:
    """Content type from the decoded image format (falls back to JPEG)."""
    with Image.open(io.BytesIO(file_data)) as img:
        return FORMAT_MIME_TYPES.get(img.format or "", "image/jpeg")
