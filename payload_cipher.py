"""
Coupon Payload Cipher
=====================
Decrypts (and, for issuance tooling, encrypts) the AES-256-GCM coupon payload
carried inside QR codes and redeem URLs.

The payload is a 3-part base64url string (iv.ciphertext.authTag). The
plaintext is UTF-8 JSON describing one coupon and is schema-checked before it
is handed back as a CouponData.

Two interchangeable backends share one wire format and one validation path:
  - StreamingGcmCipher ("stream"): incremental GCM decryptor with the tag
    supplied up front. Used by the HTTP service.
  - AeadGcmCipher ("aead"): one-shot AESGCM over ciphertext || tag. Used by
    interactive clients.
"""

import base64
import binascii
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Any

import pydantic
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from errors import AuthError, FormatError, SchemaError
from models import CouponData

logger = logging.getLogger(__name__)

KEY_BYTES = 32
TAG_BYTES = 16
IV_BYTES = 12
MIN_IV_BYTES = 8
MAX_IV_BYTES = 128

REQUIRED_FIELDS = ("code", "expiresAt", "createdAt", "storeId", "store", "discount")

_B64URL = re.compile(r"^[A-Za-z0-9_-]+$")


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    if not _B64URL.match(s):
        raise FormatError("Segment is not URL-safe base64")
    padding = 4 - len(s) % 4
    if padding != 4:
        s += "=" * padding
    try:
        return base64.urlsafe_b64decode(s)
    except (binascii.Error, ValueError):
        raise FormatError("Segment is not URL-safe base64")


def split_payload(payload: str) -> tuple[bytes, bytes, bytes]:
    """Split and decode `iv.ciphertext.authTag`. Raises FormatError."""
    parts = payload.strip().split(".")
    if len(parts) != 3:
        raise FormatError("Invalid encrypted data format: expected iv.ciphertext.authTag")

    iv_b64, ct_b64, tag_b64 = parts
    iv, ciphertext, tag = (b64url_decode(p) for p in (iv_b64, ct_b64, tag_b64))

    if not MIN_IV_BYTES <= len(iv) <= MAX_IV_BYTES:
        raise FormatError(f"IV length out of range: {len(iv)} bytes")
    return iv, ciphertext, tag


def validate_structure(data: Any) -> CouponData:
    """Check required fields, then build the typed model. Raises SchemaError."""
    if not isinstance(data, dict):
        raise SchemaError("<root>", "Invalid data structure")

    for field in REQUIRED_FIELDS:
        if field not in data:
            raise SchemaError(field)

    store = data.get("store") or {}
    if not isinstance(store, dict) or not store.get("name"):
        raise SchemaError("store.name", "Invalid store data")

    discount = data.get("discount") or {}
    if not isinstance(discount, dict):
        raise SchemaError("discount", "Invalid discount data")
    for field in ("title", "type"):
        if not discount.get(field):
            raise SchemaError(f"discount.{field}", "Invalid discount data")
    if discount.get("value") is None:
        raise SchemaError("discount.value", "Invalid discount data")

    try:
        return CouponData.model_validate(data)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first["loc"]) or "<root>"
        raise SchemaError(loc, f"Invalid field {loc}: {first['msg']}")


class PayloadCipher(ABC):
    """Shared contract: decrypt(payload) -> CouponData, encrypt(coupon) -> payload."""

    name = "abstract"

    def __init__(self, key: bytes):
        if len(key) != KEY_BYTES:
            raise ValueError(f"AES-256 key must be {KEY_BYTES} bytes, got {len(key)}")
        self._key = key

    @abstractmethod
    def _open(self, iv: bytes, ciphertext: bytes, tag: bytes) -> bytes:
        """Return plaintext or raise AuthError. Never returns partial output."""

    @abstractmethod
    def _seal(self, iv: bytes, plaintext: bytes) -> tuple[bytes, bytes]:
        """Return (ciphertext, tag)."""

    def decrypt_bytes(self, payload: str) -> bytes:
        iv, ciphertext, tag = split_payload(payload)
        if len(tag) != TAG_BYTES:
            raise AuthError("Authentication tag has the wrong length")
        return self._open(iv, ciphertext, tag)

    def decrypt(self, payload: str) -> CouponData:
        plaintext = self.decrypt_bytes(payload)
        try:
            data = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise SchemaError("<root>", "Decrypted payload is not JSON")
        coupon = validate_structure(data)
        logger.debug("Decoded coupon %s via %s backend", coupon.code, self.name)
        return coupon

    def encrypt_bytes(self, plaintext: bytes, iv: bytes | None = None) -> str:
        iv = iv or os.urandom(IV_BYTES)
        ciphertext, tag = self._seal(iv, plaintext)
        return ".".join(b64url_encode(p) for p in (iv, ciphertext, tag))

    def encrypt(self, coupon: CouponData, iv: bytes | None = None) -> str:
        body = coupon.model_dump(mode="json", by_alias=True, exclude_none=True)
        return self.encrypt_bytes(json.dumps(body, ensure_ascii=False).encode("utf-8"), iv)


class StreamingGcmCipher(PayloadCipher):
    """Incremental decryptor: tag is bound to the mode, finalize() verifies it."""

    name = "stream"

    def _open(self, iv: bytes, ciphertext: bytes, tag: bytes) -> bytes:
        decryptor = Cipher(algorithms.AES(self._key), modes.GCM(iv, tag)).decryptor()
        out = decryptor.update(ciphertext)
        try:
            return out + decryptor.finalize()
        except InvalidTag:
            raise AuthError("Authentication tag mismatch")

    def _seal(self, iv: bytes, plaintext: bytes) -> tuple[bytes, bytes]:
        encryptor = Cipher(algorithms.AES(self._key), modes.GCM(iv)).encryptor()
        ciphertext = encryptor.update(plaintext) + encryptor.finalize()
        return ciphertext, encryptor.tag


class AeadGcmCipher(PayloadCipher):
    """One-shot AEAD: expects ciphertext and tag concatenated."""

    name = "aead"

    def __init__(self, key: bytes):
        super().__init__(key)
        self._aead = AESGCM(key)

    def _open(self, iv: bytes, ciphertext: bytes, tag: bytes) -> bytes:
        try:
            return self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            raise AuthError("Authentication tag mismatch")

    def _seal(self, iv: bytes, plaintext: bytes) -> tuple[bytes, bytes]:
        combined = self._aead.encrypt(iv, plaintext, None)
        return combined[:-TAG_BYTES], combined[-TAG_BYTES:]


BACKENDS: dict[str, type[PayloadCipher]] = {
    StreamingGcmCipher.name: StreamingGcmCipher,
    AeadGcmCipher.name: AeadGcmCipher,
}


def create_cipher(key: bytes, backend: str = "stream") -> PayloadCipher:
    """Build the cipher for an execution context ("stream" or "aead")."""
    try:
        cls = BACKENDS[backend]
    except KeyError:
        raise ValueError(f"Unknown cipher backend: {backend!r} (expected one of {sorted(BACKENDS)})")
    return cls(key)
