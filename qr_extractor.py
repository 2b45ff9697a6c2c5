"""
QR Extractor
============
Turns a raw pixel buffer (camera frame or uploaded image) into the coupon
cipher string.

Phone cameras and printed/screen QR codes fail in different ways (inverted
rendering, portrait/landscape mismatch, huge captures, glare), so extraction
walks an ordered list of image transforms and stops at the first one that
decodes:

  1. raw buffer
  2. luminance-inverted copy
  3. rotated 90° and 270°
  4. downscaled copy (only when the longer side exceeds the cap)
  5. binary threshold at each configured luminance cutoff

Every candidate is handed to the decoder twice: once as a pixel buffer and
once re-encoded as PNG.
"""

import io
import logging
import re
from functools import partial
from typing import Callable, Iterator, Optional, Protocol, Union
from urllib.parse import parse_qs, urlsplit

import numpy as np
import zxingcpp
from PIL import Image, UnidentifiedImageError

from config import (
    CONTRAST_FACTOR,
    CROP_MAX_DIM,
    CROP_UPSCALE,
    QR_DOWNSCALE_CAP,
    QR_THRESHOLDS,
)
from errors import UnsupportedPayloadError
from models import CouponData, CropRegion

logger = logging.getLogger(__name__)

ENC_PARAM = "enc"

_CIPHER_STRING = re.compile(r"^[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+$")

ImageSource = Union[bytes, Image.Image, np.ndarray]
AttemptListener = Callable[[str, str], None]


# ── Pixel helpers ─────────────────────────────────────────────────────────────

def to_rgb(pixels) -> np.ndarray:
    """Normalise grey, RGB or RGBA buffers to a contiguous HxWx3 uint8 array."""
    arr = np.asarray(pixels)
    if arr.ndim == 2:
        arr = np.stack([arr] * 3, axis=-1)
    elif arr.ndim == 3 and arr.shape[2] == 4:
        arr = arr[..., :3]
    elif arr.ndim == 3 and arr.shape[2] == 1:
        arr = np.repeat(arr, 3, axis=2)
    elif arr.ndim != 3 or arr.shape[2] != 3:
        raise ValueError(f"Unsupported pixel buffer shape: {arr.shape}")
    return np.ascontiguousarray(arr, dtype=np.uint8)


def luminance(rgb: np.ndarray) -> np.ndarray:
    rgb = rgb.astype(np.float32)
    return 0.299 * rgb[..., 0] + 0.587 * rgb[..., 1] + 0.114 * rgb[..., 2]


def invert(rgb: np.ndarray) -> np.ndarray:
    return 255 - rgb


def rotate(rgb: np.ndarray, degrees: int) -> np.ndarray:
    """Rotate clockwise by a multiple of 90 degrees."""
    return np.ascontiguousarray(np.rot90(rgb, k=-(degrees // 90)))


def downscale(rgb: np.ndarray, cap: int) -> np.ndarray:
    h, w = rgb.shape[:2]
    scale = min(1.0, cap / max(h, w))
    size = (max(1, round(w * scale)), max(1, round(h * scale)))
    resized = Image.fromarray(rgb).resize(size, Image.Resampling.BILINEAR)
    return np.asarray(resized, dtype=np.uint8)


def threshold(rgb: np.ndarray, cutoff: int) -> np.ndarray:
    binary = np.where(luminance(rgb) > cutoff, 255, 0).astype(np.uint8)
    return np.stack([binary] * 3, axis=-1)


def enhance_contrast(rgb: np.ndarray, factor: float = CONTRAST_FACTOR) -> np.ndarray:
    """Push every channel away from the mean luminance by `factor`."""
    avg = float(luminance(rgb).mean()) if rgb.size else 0.0
    stretched = (rgb.astype(np.float32) - avg) * factor + avg
    return np.clip(np.floor(stretched + 0.5), 0, 255).astype(np.uint8)


def encode_png(rgb: np.ndarray) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(rgb).save(buf, format="PNG")
    return buf.getvalue()


def load_image(source: ImageSource) -> Image.Image:
    if isinstance(source, Image.Image):
        return source.convert("RGB")
    if isinstance(source, np.ndarray):
        return Image.fromarray(to_rgb(source))
    try:
        with Image.open(io.BytesIO(source)) as img:
            return img.convert("RGB")
    except (UnidentifiedImageError, OSError):
        raise UnsupportedPayloadError("Uploaded file is not a readable image")


def render_crop(image: Image.Image, crop: Optional[CropRegion]) -> np.ndarray:
    """
    Render the crop at CROP_UPSCALE× its size, capped at CROP_MAX_DIM on the longer side.
    The region is clipped to the image; a region entirely outside it is rejected.
    """
    if crop is None:
        crop = CropRegion(x=0, y=0, width=image.width, height=image.height)

    left, top = max(0.0, crop.x), max(0.0, crop.y)
    right = min(float(image.width), crop.x + crop.width)
    bottom = min(float(image.height), crop.y + crop.height)
    if right <= left or bottom <= top:
        raise UnsupportedPayloadError("Crop region lies outside the image")

    width = round(max(1, round(right - left)) * CROP_UPSCALE)
    height = round(max(1, round(bottom - top)) * CROP_UPSCALE)
    if width > CROP_MAX_DIM or height > CROP_MAX_DIM:
        scale = min(CROP_MAX_DIM / width, CROP_MAX_DIM / height)
        width = max(1, round(width * scale))
        height = max(1, round(height * scale))

    rendered = image.resize((width, height), Image.Resampling.LANCZOS, box=(left, top, right, bottom))
    return np.asarray(rendered, dtype=np.uint8)


# ── Decoders ──────────────────────────────────────────────────────────────────

class QRDecoder(Protocol):
    def decode_pixels(self, pixels: np.ndarray) -> Optional[str]: ...

    def decode_encoded(self, data: bytes) -> Optional[str]: ...


class ZXingDecoder:
    """zxing-cpp backed decoder with a pixel-buffer and an encoded-image entry point."""

    def __init__(self):
        self.formats = zxingcpp.BarcodeFormat.QRCode

    @staticmethod
    def _first_text(results) -> Optional[str]:
        for result in results:
            if result.text:
                return result.text
        return None

    def decode_pixels(self, pixels: np.ndarray) -> Optional[str]:
        grey = np.ascontiguousarray(np.clip(luminance(to_rgb(pixels)), 0, 255).astype(np.uint8))
        return self._first_text(zxingcpp.read_barcodes(grey, formats=self.formats))

    def decode_encoded(self, data: bytes) -> Optional[str]:
        with Image.open(io.BytesIO(data)) as img:
            grey = img.convert("L")
        return self._first_text(zxingcpp.read_barcodes(grey, formats=self.formats))


# ── Extractor ─────────────────────────────────────────────────────────────────

class QRExtractor:
    def __init__(
        self,
        decoder: Optional[QRDecoder] = None,
        *,
        downscale_cap: int = QR_DOWNSCALE_CAP,
        thresholds: tuple = QR_THRESHOLDS,
        on_attempt: Optional[AttemptListener] = None,
    ):
        self.decoder = decoder or ZXingDecoder()
        self.downscale_cap = downscale_cap
        self.thresholds = thresholds
        self.on_attempt = on_attempt

    def _candidates(self, base: np.ndarray) -> Iterator[tuple[str, Callable[[], np.ndarray]]]:
        yield "raw", lambda: base
        yield "inverted", partial(invert, base)
        yield "rotate_90", partial(rotate, base, 90)
        yield "rotate_270", partial(rotate, base, 270)
        if max(base.shape[:2]) > self.downscale_cap:
            yield "downscale", partial(downscale, base, self.downscale_cap)
        for cutoff in self.thresholds:
            yield f"threshold_{cutoff}", partial(threshold, base, cutoff)

    def _attempt(self, strategy: str, entry_point: str, fn, arg) -> Optional[str]:
        if self.on_attempt:
            self.on_attempt(strategy, entry_point)
        try:
            return fn(arg) or None
        except Exception as e:
            logger.debug("Decoder %s failed on %s: %s", entry_point, strategy, e)
            return None

    def extract(self, pixels) -> Optional[str]:
        """Return the decoded QR text, or None when no strategy yields one."""
        base = to_rgb(pixels)
        for strategy, build in self._candidates(base):
            candidate = build()
            text = self._attempt(strategy, "pixels", self.decoder.decode_pixels, candidate)
            if text is None:
                text = self._attempt(strategy, "encoded", self.decoder.decode_encoded, encode_png(candidate))
            if text is not None:
                logger.info("QR code found (strategy=%s)", strategy)
                return text

        logger.debug("No QR code detected in %sx%s buffer", base.shape[1], base.shape[0])
        return None

    def extract_from_crop(
        self,
        image: ImageSource,
        crop: Optional[CropRegion] = None,
        enhance: bool = True,
    ) -> Optional[str]:
        """Scan a user-selected region; an enhanced pass falls back to the plain crop once."""
        rendered = render_crop(load_image(image), crop)
        if enhance:
            text = self.extract(enhance_contrast(rendered))
            if text is not None:
                return text
            logger.debug("Enhanced crop did not scan, retrying without enhancement")
        return self.extract(rendered)


# ── Payload interpretation ────────────────────────────────────────────────────

def parse_scanned_text(text: str) -> str:
    """
    Pull the cipher string out of decoded QR text: either a URL carrying it in
    the `enc` query parameter or a bare iv.ciphertext.authTag string.
    """
    text = text.strip()
    parts = urlsplit(text)
    if parts.scheme and parts.netloc:
        values = parse_qs(parts.query).get(ENC_PARAM)
        if not values or not values[0]:
            raise UnsupportedPayloadError(f"Expected a URL with an '{ENC_PARAM}' query parameter")
        return values[0]

    if _CIPHER_STRING.match(text):
        return text

    raise UnsupportedPayloadError("Unsupported QR payload")


def decode_scanned_payload(text: str, cipher) -> CouponData:
    return cipher.decrypt(parse_scanned_text(text))
