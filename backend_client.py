"""
Backend API client
==================
Async GraphQL client for the coupon backend. The backend is an opaque remote
service; this module only knows the shapes of the five operations the engine
needs and how to classify their failures:

  - transport failures (timeouts, refused connections) → NetworkError
  - HTTP 429 or "wait N minutes" GraphQL errors        → RateLimitError
  - any other non-2xx response or GraphQL error        → BackendError
"""

import logging
import re
from typing import Any, Optional, Protocol, TypeVar

import httpx
import pydantic

from config import BACKEND_API_URL, BACKEND_TIMEOUT_SEC
from errors import BackendError, NetworkError, RateLimitError
from models import (
    AdPair,
    ExchangedCoupon,
    RedeemDetails,
    RedemptionResult,
    WatchAdResponse,
)

logger = logging.getLogger(__name__)

# ── GraphQL documents ─────────────────────────────────────────────────────────

COUPON_REDEEM_DETAILS_QUERY = """
  query CouponRedeemDetails($code: String!) {
    couponRedeemDetails(code: $code) {
      id
      code
      used
      usedAt
      expiresAt
      valid
      store { id name address city phoneNumber }
      discount { id title type value }
    }
  }
"""

REDEEM_COUPON_BY_STAFF_MUTATION = """
  mutation RedeemCouponByStaff($code: String!, $storeId: String!, $staffPin: String!, $deviceId: String) {
    redeemCouponByStaff(code: $code, storeId: $storeId, staffPin: $staffPin, deviceId: $deviceId) {
      success
      leveledUp
      oldLevel
      newLevel
      message
    }
  }
"""

GET_VIDEO_AD_PAIR_QUERY = """
  query GetVideoAdPair($deviceId: String) {
    getVideoAdPair(deviceId: $deviceId) {
      sessionId
      ads { id videoKey videoUrl title duration }
    }
  }
"""

WATCH_VIDEO_AD_MUTATION = """
  mutation WatchVideoAd($input: WatchVideoAdInput!) {
    watchVideoAd(input: $input) {
      success
      canGenerateCoupon
      remaining
      token
      adsWatched
    }
  }
"""

EXCHANGE_UNLOCK_MUTATION = """
  mutation ExchangeUnlock($input: ExchangeUnlockInput!) {
    exchangeUnlock(input: $input) {
      id
      code
      qrCode
      url
    }
  }
"""

# ── Error classification ──────────────────────────────────────────────────────

RATE_LIMIT_CODES = {"RATE_LIMITED", "TOO_MANY_REQUESTS", "COOLDOWN"}

# What the user is told to wait before doing, per operation.
RATE_LIMIT_ACTIONS = {
    "redeemCouponByStaff": "trying the redemption again",
    "getVideoAdPair": "generating another coupon",
    "watchVideoAd": "generating another coupon",
    "exchangeUnlock": "generating another coupon",
}

_WAIT_HINT = re.compile(
    r"(?:wait|espera\w*|try again in|intenta\w* (?:de nuevo )?en)\D{0,20}?(\d+)\s*"
    r"(second|segundo|minute|minuto|min|hour|hora)",
    re.IGNORECASE,
)

_UNIT_SECONDS = {"second": 1, "segundo": 1, "min": 60, "minute": 60, "minuto": 60, "hour": 3600, "hora": 3600}


def parse_wait_hint(message: str) -> Optional[int]:
    """Extract a wait time in seconds from messages like 'wait 45 minutes'."""
    match = _WAIT_HINT.search(message or "")
    if not match:
        return None
    return int(match.group(1)) * _UNIT_SECONDS[match.group(2).lower()]


def classify_graphql_error(error: dict) -> BackendError:
    message = error.get("message") or "GraphQL request failed"
    extensions = error.get("extensions") or {}
    code = extensions.get("code")

    wait = extensions.get("retryAfter")
    if wait is None:
        wait = parse_wait_hint(message)
    if code in RATE_LIMIT_CODES or wait is not None:
        return RateLimitError(message, wait_seconds=int(wait) if wait is not None else None, code=code)
    return BackendError(message, code=code)


def _retry_after(response: httpx.Response) -> Optional[int]:
    value = response.headers.get("Retry-After")
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)


def _parse(operation: str, model: type[ModelT], data: Any) -> ModelT:
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        logger.warning("Backend %s returned a malformed payload: %s", operation, e)
        raise BackendError(f"{operation}: malformed response")


class Backend(Protocol):
    """The remote RPC surface the engine depends on."""

    async def lookup_redeem_details(self, code: str) -> Optional[RedeemDetails]: ...

    async def redeem_by_staff(
        self, code: str, store_id: str, staff_pin: str, device_id: Optional[str] = None,
    ) -> RedemptionResult: ...

    async def get_ad_pair(self, device_id: Optional[str] = None) -> AdPair: ...

    async def report_ad_watch(
        self, ad_id: str, video_key: str, watch_duration: int,
        device_id: Optional[str], session_id: str,
    ) -> WatchAdResponse: ...

    async def exchange_unlock(self, token: str, discount_id: str) -> ExchangedCoupon: ...


class BackendClient:
    def __init__(
        self,
        base_url: str = BACKEND_API_URL,
        *,
        access_token: Optional[str] = None,
        timeout: float = BACKEND_TIMEOUT_SEC,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        self.base_url = base_url
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def set_access_token(self, token: Optional[str]) -> None:
        if token:
            self._client.headers["Authorization"] = f"Bearer {token}"
        else:
            self._client.headers.pop("Authorization", None)

    async def _request(self, operation: str, query: str, variables: dict[str, Any]) -> Any:
        try:
            resp = await self._client.post(self.base_url, json={"query": query, "variables": variables})
        except httpx.TransportError as e:
            logger.warning("Backend %s unreachable: %s", operation, e)
            raise NetworkError(f"{operation}: {e}") from e

        if resp.status_code == 429:
            raise RateLimitError(
                f"{operation}: rate limited",
                wait_seconds=_retry_after(resp),
                action=RATE_LIMIT_ACTIONS.get(operation),
            )
        if resp.status_code >= 400 and "application/json" not in resp.headers.get("content-type", ""):
            raise BackendError(f"{operation}: HTTP {resp.status_code}", status=resp.status_code)

        try:
            body = resp.json()
        except ValueError:
            raise BackendError(f"{operation}: invalid JSON response", status=resp.status_code)
        if not isinstance(body, dict):
            raise BackendError(f"{operation}: malformed response", status=resp.status_code)

        errors = body.get("errors") or []
        if errors:
            first = errors[0] if isinstance(errors, list) and isinstance(errors[0], dict) else {}
            error = classify_graphql_error(first)
            error.status = resp.status_code
            if isinstance(error, RateLimitError) and operation in RATE_LIMIT_ACTIONS:
                error.action = RATE_LIMIT_ACTIONS[operation]
            logger.info("Backend %s returned error: %s", operation, error)
            raise error
        if resp.status_code >= 400:
            raise BackendError(f"{operation}: HTTP {resp.status_code}", status=resp.status_code)

        data = body.get("data") or {}
        if not isinstance(data, dict):
            raise BackendError(f"{operation}: malformed response", status=resp.status_code)
        return data.get(operation)

    # ── Operations ────────────────────────────────────────────────────────────

    async def lookup_redeem_details(self, code: str) -> Optional[RedeemDetails]:
        data = await self._request("couponRedeemDetails", COUPON_REDEEM_DETAILS_QUERY, {"code": code})
        return _parse("couponRedeemDetails", RedeemDetails, data) if data else None

    async def redeem_by_staff(
        self, code: str, store_id: str, staff_pin: str, device_id: Optional[str] = None,
    ) -> RedemptionResult:
        data = await self._request(
            "redeemCouponByStaff",
            REDEEM_COUPON_BY_STAFF_MUTATION,
            {"code": code, "storeId": store_id, "staffPin": staff_pin, "deviceId": device_id},
        )
        if not data:
            raise BackendError("redeemCouponByStaff: empty response")
        return _parse("redeemCouponByStaff", RedemptionResult, data)

    async def get_ad_pair(self, device_id: Optional[str] = None) -> AdPair:
        data = await self._request("getVideoAdPair", GET_VIDEO_AD_PAIR_QUERY, {"deviceId": device_id})
        if not data:
            raise BackendError("getVideoAdPair: no ads available")
        return _parse("getVideoAdPair", AdPair, data)

    async def report_ad_watch(
        self, ad_id: str, video_key: str, watch_duration: int,
        device_id: Optional[str], session_id: str,
    ) -> WatchAdResponse:
        data = await self._request(
            "watchVideoAd",
            WATCH_VIDEO_AD_MUTATION,
            {"input": {
                "videoAdId": ad_id,
                "videoKey": video_key,
                "watchDuration": watch_duration,
                "deviceId": device_id,
                "sessionId": session_id,
            }},
        )
        if not data:
            raise BackendError("watchVideoAd: empty response")
        return _parse("watchVideoAd", WatchAdResponse, data)

    async def exchange_unlock(self, token: str, discount_id: str) -> ExchangedCoupon:
        data = await self._request(
            "exchangeUnlock",
            EXCHANGE_UNLOCK_MUTATION,
            {"input": {"token": token, "discountId": discount_id}},
        )
        if not data:
            raise BackendError("exchangeUnlock: empty response")
        return _parse("exchangeUnlock", ExchangedCoupon, data)
