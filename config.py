"""
Namy Redeem — Configuration
All settings are read from environment variables with sensible defaults.
"""
import os
import re

from errors import ConfigError

# ── Crypto ────────────────────────────────────────────────────────────────────
COUPON_ENCRYPTION_KEY = os.getenv("COUPON_ENCRYPTION_KEY", "")  # 64 hex chars (AES-256)
CIPHER_BACKEND        = os.getenv("CIPHER_BACKEND", "stream")   # "stream" (server) | "aead" (client)

# ── Backend API ───────────────────────────────────────────────────────────────
BACKEND_API_URL       = os.getenv("BACKEND_API_URL", "http://localhost:6000/graphql")
BACKEND_TIMEOUT_SEC   = float(os.getenv("BACKEND_TIMEOUT_SEC", "15"))

# ── Database ──────────────────────────────────────────────────────────────────
DATABASE_PATH         = os.getenv("DATABASE_PATH", "redeem.db")

# ── Redeem view cache ─────────────────────────────────────────────────────────
VIEW_CACHE_TTL_SEC    = int(os.getenv("VIEW_CACHE_TTL_SEC", "300"))  # 5 minutes
REDEEM_VIEW_KEY       = "namy:redeemViewData"

# ── QR extraction ─────────────────────────────────────────────────────────────
QR_DOWNSCALE_CAP      = 512          # px, longer side
QR_THRESHOLDS         = (128, 100)   # luminance cutoffs, tried in order
CROP_MAX_DIM          = 1024         # px, longer side of a rendered crop
CROP_UPSCALE          = 2
CONTRAST_FACTOR       = 1.2

# ── Store locale ──────────────────────────────────────────────────────────────
STORE_TIMEZONE        = os.getenv("STORE_TIMEZONE", "America/Mexico_City")  # IANA name; availability windows are local

# ── Lifecycle / ads ───────────────────────────────────────────────────────────
COUNTDOWN_INTERVAL_SEC = 1.0
REQUIRED_AD_WATCHES    = 2
AD_ADVANCE_DELAY_SEC   = float(os.getenv("AD_ADVANCE_DELAY_SEC", "1.5"))

# ── Auth ──────────────────────────────────────────────────────────────────────
CLIENT_SECRET         = os.getenv("CLIENT_SECRET", "")  # Empty = dev mode (no auth)

# ── Background cleanup ────────────────────────────────────────────────────────
CLEANUP_INTERVAL_SEC  = int(os.getenv("CLEANUP_INTERVAL_SEC", str(10 * 60)))  # 10 minutes

# ── Logging ───────────────────────────────────────────────────────────────────
LOG_LEVEL             = os.getenv("LOG_LEVEL", "INFO").upper()

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


def load_coupon_key(raw: str | None = None) -> bytes:
    """
    Parse the 256-bit coupon key from its 64-character hex form.
    Raises ConfigError when the key is missing or malformed; call at startup.
    """
    value = COUPON_ENCRYPTION_KEY if raw is None else raw
    if not value:
        raise ConfigError("COUPON_ENCRYPTION_KEY is not set")
    if not _HEX_KEY.match(value):
        raise ConfigError("COUPON_ENCRYPTION_KEY must be 64 hex characters (256 bits)")
    return bytes.fromhex(value)
