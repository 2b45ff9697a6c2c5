"""
Namy Redeem Server
==================
Staff-side coupon redemption for Namy stores.

Customers show an encrypted QR coupon; this service decodes it, checks its
lifecycle against the Namy backend, and redeems it with the store's staff PIN.

The coupon key never leaves the server. Decoded coupons are kept only for a
short-lived view cache so the redeem screen can load them by handle.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from backend_client import BackendClient
from config import CIPHER_BACKEND, CLEANUP_INTERVAL_SEC, LOG_LEVEL, load_coupon_key
from errors import CouponError, RateLimitError, public_message
from limiter import limiter
from payload_cipher import create_cipher
from qr_extractor import QRExtractor
from routers import redeem, system
from view_cache import RedeemViewCache

logger = logging.getLogger(__name__)


# ── Background cleanup ────────────────────────────────────────────────────────

async def _cleanup_loop(cache: RedeemViewCache) -> None:
    """Purge expired coupon views every CLEANUP_INTERVAL_SEC. Runs as a background task."""
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL_SEC)
        try:
            deleted = await cache.purge()
            if deleted:
                logger.info("Purged %d expired coupon view(s)", deleted)
        except Exception:
            logger.exception("Error during coupon view purge")


# ── Lifespan ──────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: validate the coupon key, build shared services, launch background purge
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.state.cipher = create_cipher(load_coupon_key(), CIPHER_BACKEND)
    app.state.backend = BackendClient()
    app.state.view_cache = RedeemViewCache()
    app.state.extractor = QRExtractor()
    app.state.redemptions = {}
    await app.state.view_cache.purge()
    task = asyncio.create_task(_cleanup_loop(app.state.view_cache))
    logger.info("Namy Redeem started (cipher backend: %s)", CIPHER_BACKEND)
    yield
    # Shutdown: cancel background task, close the backend connection pool
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    await app.state.backend.aclose()


# ── Errors ────────────────────────────────────────────────────────────────────

async def coupon_error_handler(request: Request, exc: CouponError) -> JSONResponse:
    """Map domain errors to their HTTP status; only safe messages reach the client."""
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    else:
        logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc)

    headers = {}
    if isinstance(exc, RateLimitError) and exc.wait_seconds:
        headers["Retry-After"] = str(exc.wait_seconds)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": public_message(exc)},
        headers=headers,
    )


# ── App ───────────────────────────────────────────────────────────────────────

app = FastAPI(
    lifespan=lifespan,
    title="Namy Redeem",
    description="""
Coupon redemption service for **Namy** partner stores.

## How it works

1. The customer's app shows a QR code holding an AES-256-GCM encrypted coupon
2. Staff scan it (camera or uploaded image) or paste the redeem link
3. The server decodes the coupon, validates it, and checks its status with the Namy backend
4. Staff confirm the redemption with their store PIN

## Coupon status

A coupon is **active** until it expires or is redeemed. Once a coupon is used
or expired it stays that way. If the backend cannot be reached the
server falls back to the coupon's own expiry time.

## Rate limits

Scans, decodes and redemption attempts are rate limited per client. Redemption
attempts are keyed by the staff device (`X-Device-Id`) when one is sent.
""",
    version="1.0.0",
    contact={"name": "Namy"},
    license_info={"name": "MIT"},
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(CouponError, coupon_error_handler)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(redeem.router)
app.include_router(system.router)
