import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from models import (
    AdPair,
    CouponData,
    ExchangedCoupon,
    RedeemDetails,
    RedemptionResult,
    WatchAdResponse,
)
from payload_cipher import create_cipher

TEST_KEY_HEX = "5f" * 8 + "a1b2c3d4" * 4 + "00ff" * 4
TEST_KEY = bytes.fromhex(TEST_KEY_HEX)
OTHER_KEY = bytes.fromhex("11" * 32)


def iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def make_coupon_dict(code: str = "NAMY1234", expires_in: float = 3600, now: datetime | None = None, **overrides) -> dict:
    """Wire-format coupon payload (camelCase) expiring `expires_in` seconds after `now`."""
    now = now or datetime.now(timezone.utc)
    expires_at = now + timedelta(seconds=expires_in)
    created_at = min(now, expires_at) - timedelta(hours=1)
    data = {
        "code": code,
        "expiresAt": iso(expires_at),
        "createdAt": iso(created_at),
        "storeId": "store-1",
        "store": {
            "id": "store-1",
            "name": "Tacos El Güero",
            "address": "Av. Juárez 12",
            "city": "CDMX",
        },
        "discount": {
            "id": "disc-1",
            "title": "Taco Tuesday",
            "type": "percentage",
            "value": 15,
        },
    }
    data.update(overrides)
    return data


def make_coupon(**kwargs) -> CouponData:
    return CouponData.model_validate(make_coupon_dict(**kwargs))


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeBackend:
    """In-memory stand-in for the GraphQL backend; records every call."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.details: RedeemDetails | Exception | None = None
        self.redeem_results: list[RedemptionResult | Exception] = []
        self.redeem_delay = 0.0
        self.ad_pair: AdPair | Exception | None = None
        self.watch_results: list[WatchAdResponse] = []
        self.exchanged = ExchangedCoupon(code="NAMY5678", url="https://namy.app/redeem?enc=x.y.z")

    def calls_to(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    async def lookup_redeem_details(self, code):
        self.calls.append(("lookup", code))
        if isinstance(self.details, Exception):
            raise self.details
        return self.details

    async def redeem_by_staff(self, code, store_id, staff_pin, device_id=None):
        self.calls.append(("redeem", code, store_id, staff_pin, device_id))
        if self.redeem_delay:
            await asyncio.sleep(self.redeem_delay)
        result = self.redeem_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def get_ad_pair(self, device_id=None):
        self.calls.append(("ad_pair", device_id))
        if isinstance(self.ad_pair, Exception):
            raise self.ad_pair
        return self.ad_pair

    async def report_ad_watch(self, ad_id, video_key, watch_duration, device_id, session_id):
        self.calls.append(("watch", ad_id, video_key, watch_duration, device_id, session_id))
        return self.watch_results.pop(0)

    async def exchange_unlock(self, token, discount_id):
        self.calls.append(("exchange", token, discount_id))
        return self.exchanged


def active_details(code: str = "NAMY1234") -> RedeemDetails:
    return RedeemDetails(code=code, used=False, valid=True)


@pytest.fixture(params=["stream", "aead"])
def cipher(request):
    """Both cipher backends must behave identically."""
    return create_cipher(TEST_KEY, request.param)


@pytest.fixture
def stream_cipher():
    return create_cipher(TEST_KEY, "stream")


@pytest.fixture
def coupon():
    return make_coupon()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest_asyncio.fixture
async def client(tmp_path, stream_cipher, backend):
    """HTTP client bound to the app with test state and rate limits disabled."""
    from limiter import limiter
    from main import app
    from qr_extractor import QRExtractor
    from view_cache import RedeemViewCache

    app.state.cipher = stream_cipher
    app.state.backend = backend
    app.state.view_cache = RedeemViewCache(str(tmp_path / "redeem.db"))
    app.state.extractor = QRExtractor()
    app.state.redemptions = {}
    limiter.enabled = False

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    limiter.enabled = True
