"""
Namy Redeem — Pydantic models (coupon payload, backend shapes, request bodies + response shapes)
Wire names are camelCase; attributes are snake_case.
"""
import re
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

DiscountType = Literal["percentage", "fixed", "other"]

_HH_MM = re.compile(r"(?:[01]?[0-9]|2[0-3]):[0-5][0-9]|24:00")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Coupon payload ────────────────────────────────────────────────────────────

class StoreSummary(CamelModel):
    id: Optional[str] = None
    name: str
    description: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    phone_number: Optional[str] = None
    average_rating: Optional[float] = None
    review_counter: Optional[int] = None
    restrictions: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Store name cannot be empty")
        return v


class TimeRange(CamelModel):
    start: str  # "HH:MM", 24:00 allowed as end of day
    end: str

    @field_validator("start", "end")
    @classmethod
    def hh_mm(cls, v: str) -> str:
        if not _HH_MM.fullmatch(v):
            raise ValueError("Time must be HH:MM")
        return v


class AvailableDay(CamelModel):
    day_index: int  # 0 = Sunday
    time_ranges: List[TimeRange] = Field(default_factory=list)


class AvailableDaysAndTimes(CamelModel):
    available_days: List[AvailableDay] = Field(default_factory=list)


class DiscountSummary(CamelModel):
    id: Optional[str] = None
    title: str
    description: Optional[str] = None
    type: DiscountType
    value: float
    min_purchase_amount: Optional[float] = None
    max_discount_amount: Optional[float] = None
    available_days_and_times: Optional[AvailableDaysAndTimes] = None
    excluded_days_of_week: Optional[List[int]] = None
    excluded_hours: Optional[List[int]] = None
    restrictions: Optional[str] = None
    additional_restrictions: Optional[List[str]] = None

    @field_validator("title")
    @classmethod
    def title_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Discount title cannot be empty")
        return v

    @field_validator("type", mode="before")
    @classmethod
    def normalise_type(cls, v):
        if isinstance(v, str) and v not in ("percentage", "fixed"):
            return "other"
        return v


class CouponData(CamelModel):
    code: str
    expires_at: datetime
    created_at: datetime
    store_id: str
    store: StoreSummary
    discount: DiscountSummary

    @model_validator(mode="after")
    def expiry_after_creation(self) -> "CouponData":
        if self.expires_at <= self.created_at:
            raise ValueError("expiresAt must be later than createdAt")
        return self


# ── Backend shapes ────────────────────────────────────────────────────────────

class RedeemDetails(CamelModel):
    id: Optional[str] = None
    code: str
    used: bool
    used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    valid: bool
    store: Optional[dict] = None
    discount: Optional[dict] = None


class RedemptionResult(CamelModel):
    success: bool
    leveled_up: bool = False
    old_level: Optional[int] = None
    new_level: Optional[int] = None
    message: Optional[str] = None
    outcome: Optional[str] = None  # filled in by the redemption coordinator


class AdDescriptor(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    video_key: str
    video_url: Optional[str] = None
    title: Optional[str] = None
    duration: Optional[float] = None  # seconds


class AdPair(CamelModel):
    session_id: str
    ads: List[AdDescriptor]


class WatchAdResponse(CamelModel):
    success: bool = True
    can_generate_coupon: bool = False
    token: Optional[str] = None
    remaining: Optional[int] = None
    ads_watched: Optional[int] = None


class ExchangedCoupon(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: Optional[str] = None
    code: str
    qr_code: Optional[str] = None
    url: Optional[str] = None


# ── HTTP request bodies ───────────────────────────────────────────────────────

class DecodeRequest(BaseModel):
    payload: str  # bare cipher string or URL carrying it under ?enc=

    @field_validator("payload")
    @classmethod
    def payload_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Payload cannot be empty")
        return v.strip()


class CropRegion(BaseModel):
    x: float
    y: float
    width: float
    height: float

    @field_validator("width", "height")
    @classmethod
    def positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Crop dimensions must be positive")
        return v


class ScanRequest(BaseModel):
    image: str  # base64-encoded PNG/JPEG
    crop: Optional[CropRegion] = None
    enhance: bool = True

    @field_validator("image")
    @classmethod
    def image_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Image cannot be empty")
        return v


class RedeemRequest(CamelModel):
    staff_pin: str


# ── HTTP response shapes ──────────────────────────────────────────────────────

class ViewResponse(CamelModel):
    handle: str
    coupon: CouponData
    expires_at: str  # when the cached view is dropped


class TimeRemainingModel(CamelModel):
    hours: int
    minutes: int
    seconds: int
    expired: bool


class LifecycleResponse(CamelModel):
    code: str
    state: str
    reason: Optional[str] = None
    time_remaining: TimeRemainingModel
    countdown: str
    discount_label: str
    available_now: bool
    can_redeem: bool


class StatusResponse(BaseModel):
    status: str
    message: str
