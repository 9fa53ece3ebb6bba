"""
Screenshot processing for the perception fallback.

When the accessibility tree yields nothing, the agent loop asks the device for
a screenshot: it is downscaled before being attached to a reasoning request,
and its perceptual hash stands in for the element-based screen hash.
"""

from __future__ import annotations

import base64
import binascii
from io import BytesIO

import cv2  # type: ignore
import numpy as np
from PIL import Image, UnidentifiedImageError


class ImageProcessor:
    """Stateless image helpers: base64 codec, downscaling, perceptual hashing."""

    # ------------------------------------------------------------------ #
    # Encoding helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def encode_image_bytes(image_content: bytes) -> str:
        return base64.b64encode(image_content).decode("utf-8")

    @staticmethod
    def decode_base64_image(data: str) -> bytes:
        """Accept raw base64 or a `data:image/...;base64,` URI."""
        if data.startswith("data:"):
            _, _, data = data.partition(",")
        try:
            return base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"Invalid base64 image payload: {exc}") from exc

    @staticmethod
    def to_data_uri(image: bytes, mime: str = "image/png") -> str:
        return f"data:{mime};base64,{ImageProcessor.encode_image_bytes(image)}"

    @staticmethod
    def downscale_image_bytes(image: bytes, max_w: int = 720, max_h: int = 1600) -> bytes:
        np_img = np.frombuffer(image, dtype=np.uint8)
        img = cv2.imdecode(np_img, cv2.IMREAD_COLOR)
        if img is None:
            return image
        height, width = img.shape[:2]
        scale = min(max_w / float(width), max_h / float(height), 1.0)
        if scale < 1.0:
            new_w = max(int(width * scale), 1)
            new_h = max(int(height * scale), 1)
            img = cv2.resize(img, (new_w, new_h), interpolation=cv2.INTER_AREA)
        ok, buf = cv2.imencode(".png", img)
        if not ok:
            return image
        return buf.tobytes()

    # ------------------------------------------------------------------ #
    # Hashing / fingerprinting
    # ------------------------------------------------------------------ #

    @staticmethod
    def dhash(image_bytes: bytes, hash_size: int = 8) -> int:
        """Difference hash; 0 when the bytes are not a decodable image."""
        try:
            img = (
                Image.open(BytesIO(image_bytes))
                .convert("L")
                .resize((hash_size + 1, hash_size), Image.LANCZOS)
            )
        except (UnidentifiedImageError, OSError, ValueError):
            return 0
        pixels = np.asarray(img)
        diff = pixels[:, 1:] > pixels[:, :-1]
        value = 0
        for bit in diff.flatten():
            value = (value << 1) | int(bit)
        return value

    @classmethod
    def screenshot_hash(cls, image_bytes: bytes) -> str:
        """16 hex chars, same width as the element-based screen hash."""
        return f"{cls.dhash(image_bytes):016x}"


__all__ = ["ImageProcessor"]
