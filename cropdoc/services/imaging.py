import io
import base64
import logging
from typing import Tuple

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "image/jpeg"


class InvalidImageError(ValueError):
    """Uploaded bytes are not a decodable image"""


def encode_image(image_bytes: bytes, mime_type: str = DEFAULT_MIME_TYPE) -> str:
    """Encode raw image bytes as a data URL (the payload kept in sessions and history)"""
    encoded = base64.b64encode(image_bytes).decode("utf-8")
    return f"data:{mime_type};base64,{encoded}"


def is_remote_url(image: str) -> bool:
    return image.startswith(("http://", "https://"))


def split_data_url(image: str) -> Tuple[str, str]:
    """Split an image payload into (mime_type, data).

    Data URLs yield their base64 body, a bare base64 string is assumed to be
    JPEG, and remote URLs are passed through untouched as the data part.
    """
    if is_remote_url(image):
        return "", image
    if image.startswith("data:") and "," in image:
        header, data = image.split(",", 1)
        mime_type = header[len("data:"):].split(";", 1)[0] or DEFAULT_MIME_TYPE
        return mime_type, data
    return DEFAULT_MIME_TYPE, image


def inspect_image(image_bytes: bytes) -> str:
    """Confirm the bytes decode as an image and return its MIME type"""
    if not image_bytes:
        raise InvalidImageError("Empty upload")
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            img.verify()
            image_format = img.format
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        logger.warning(f"Rejected upload that is not an image: {e}")
        raise InvalidImageError("Uploaded file is not a valid image") from e

    mime_type = Image.MIME.get(image_format or "", DEFAULT_MIME_TYPE)
    logger.info(f"✓ Accepted {image_format} image ({len(image_bytes)} bytes)")
    return mime_type
