"""
Namy Redeem — Redeem routes
  POST /redeem/decode                  decode a cipher string or redeem URL
  POST /redeem/scan                    scan an uploaded image (optional crop + enhance)
  GET  /redeem/view/{handle}           fetch a cached decoded coupon
  GET  /redeem/view/{handle}/status    lifecycle verdict + countdown
  POST /redeem/view/{handle}/redeem    staff PIN redemption
"""
import base64
import binascii

from fastapi import APIRouter, Depends, HTTPException, Request

from auth import get_device_identity, verify_client_secret
from availability import is_available_at
from backend_client import Backend
from device import DeviceIdentity
from lifecycle import CouponLifecycle, format_discount_value, format_time_remaining, utcnow
from limiter import get_device_or_ip, limiter
from models import (
    CouponData,
    DecodeRequest,
    LifecycleResponse,
    RedeemRequest,
    RedemptionResult,
    ScanRequest,
    TimeRemainingModel,
    ViewResponse,
)
from payload_cipher import PayloadCipher
from qr_extractor import QRExtractor, decode_scanned_payload
from redemption import RedemptionCoordinator, user_message, validate_pin
from view_cache import RedeemViewCache

router = APIRouter(tags=["Redeem"], dependencies=[Depends(verify_client_secret)])


# ── Shared state (populated in main.lifespan) ─────────────────────────────────

def get_cipher(request: Request) -> PayloadCipher:
    return request.app.state.cipher


def get_backend(request: Request) -> Backend:
    return request.app.state.backend


def get_view_cache(request: Request) -> RedeemViewCache:
    return request.app.state.view_cache


def get_extractor(request: Request) -> QRExtractor:
    return request.app.state.extractor


async def _store_view(cache: RedeemViewCache, coupon: CouponData) -> ViewResponse:
    handle = cache.new_handle()
    expires_at = await cache.put(coupon, handle)
    return ViewResponse(handle=handle, coupon=coupon, expires_at=expires_at)


async def _load_view(cache: RedeemViewCache, handle: str) -> CouponData:
    coupon = await cache.get(handle)
    if coupon is None:
        raise HTTPException(status_code=404, detail="Coupon view expired or not found. Scan the coupon again.")
    return coupon


def _decode_image(data: str) -> bytes:
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Image must be base64-encoded.")


# ── Routes ────────────────────────────────────────────────────────────────────

@router.post("/redeem/decode", response_model=ViewResponse, summary="Decode coupon payload")
@limiter.limit("30/minute")
async def decode_payload(
    request: Request,
    data: DecodeRequest,
    cipher: PayloadCipher = Depends(get_cipher),
    cache: RedeemViewCache = Depends(get_view_cache),
):
    """
    Decode a coupon from its **cipher string** (`iv.ciphertext.authTag`) or from a
    redeem URL carrying it in the `enc` query parameter.

    The decoded coupon is cached for a few minutes under the returned `handle`
    so the redeem screen can load it without the payload travelling again.
    Tampered, truncated or foreign payloads all answer **400 Invalid coupon**.
    """
    coupon = decode_scanned_payload(data.payload, cipher)
    return await _store_view(cache, coupon)


@router.post("/redeem/scan", response_model=ViewResponse, summary="Scan coupon image")
@limiter.limit("10/minute")
async def scan_image(
    request: Request,
    data: ScanRequest,
    cipher: PayloadCipher = Depends(get_cipher),
    cache: RedeemViewCache = Depends(get_view_cache),
    extractor: QRExtractor = Depends(get_extractor),
):
    """
    Scan a photographed or uploaded QR code.

    - **image**: base64 PNG/JPEG (a `data:` URL prefix is accepted)
    - **crop** *(optional)*: region selected by the user, in source pixels
    - **enhance**: apply a contrast stretch first, falling back to the plain crop
    """
    raw = _decode_image(data.image)
    text = extractor.extract_from_crop(raw, data.crop, data.enhance)
    if text is None:
        raise HTTPException(
            status_code=422,
            detail="No QR code found. Try cropping closer to the code or improving the lighting.",
        )
    coupon = decode_scanned_payload(text, cipher)
    return await _store_view(cache, coupon)


@router.get("/redeem/view/{handle}", response_model=CouponData, response_model_by_alias=True,
            summary="Fetch cached coupon view")
@limiter.limit("60/minute")
async def get_view(request: Request, handle: str, cache: RedeemViewCache = Depends(get_view_cache)):
    """Returns the decoded coupon, or **404** once the cached view has expired."""
    return await _load_view(cache, handle)


@router.get("/redeem/view/{handle}/status", response_model=LifecycleResponse, summary="Coupon status")
@limiter.limit("60/minute")
async def view_status(
    request: Request,
    handle: str,
    cache: RedeemViewCache = Depends(get_view_cache),
    backend: Backend = Depends(get_backend),
):
    """
    Merge the backend's verdict with the local expiry check.
    When the backend is unreachable the local expiry check alone decides.
    """
    coupon = await _load_view(cache, handle)
    lifecycle = CouponLifecycle(coupon, backend.lookup_redeem_details)
    await lifecycle.validate()
    remaining = lifecycle.tick()
    return LifecycleResponse(
        code=coupon.code,
        state=lifecycle.state.value,
        reason=lifecycle.reason,
        time_remaining=TimeRemainingModel(
            hours=remaining.hours, minutes=remaining.minutes,
            seconds=remaining.seconds, expired=remaining.expired,
        ),
        countdown=format_time_remaining(remaining),
        discount_label=format_discount_value(coupon.discount.type, coupon.discount.value),
        available_now=is_available_at(coupon.discount, utcnow()),
        can_redeem=lifecycle.can_redeem,
    )


@router.post("/redeem/view/{handle}/redeem", response_model=RedemptionResult, summary="Redeem coupon")
@limiter.limit("10/minute", key_func=get_device_or_ip)
async def redeem_view(
    request: Request,
    handle: str,
    data: RedeemRequest,
    device: DeviceIdentity | None = Depends(get_device_identity),
    cache: RedeemViewCache = Depends(get_view_cache),
    backend: Backend = Depends(get_backend),
):
    """
    Redeem the coupon with the store's **staff PIN** (4–6 digits).

    The PIN format is checked before anything else. Only one redemption per
    coupon runs at a time; a concurrent attempt answers **409**.
    """
    validate_pin(data.staff_pin)
    coupon = await _load_view(cache, handle)

    registry: dict[str, RedemptionCoordinator] = request.app.state.redemptions
    coordinator = registry.get(coupon.code)
    if coordinator is None:
        lifecycle = CouponLifecycle(coupon, backend.lookup_redeem_details)
        await lifecycle.validate()
        coordinator = registry.setdefault(coupon.code, RedemptionCoordinator(backend, lifecycle))

    try:
        result = await coordinator.redeem(coupon.code, coupon.store_id, data.staff_pin, device)
    finally:
        if not coordinator.in_flight:
            registry.pop(coupon.code, None)

    if result.success:
        await cache.clear(handle)
    result.message = user_message(result)
    return result
