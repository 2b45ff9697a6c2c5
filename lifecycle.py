"""
Coupon lifecycle
================
Merges the backend's authoritative verdict (valid / used) with a local expiry
check and keeps the result current with a once-per-second countdown.

    Unknown → Validating → {Active, Expired, Used, Invalid}

Used and Expired are terminal. Local time always wins over a cached Active
verdict: once the countdown sees the coupon expired, nothing moves it back.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from config import COUNTDOWN_INTERVAL_SEC
from errors import BackendError, ExpiredError, InvalidError, UsedError
from models import CouponData, RedeemDetails

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Lookup = Callable[[str], Awaitable[Optional[RedeemDetails]]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class LifecycleState(str, Enum):
    UNKNOWN = "unknown"
    VALIDATING = "validating"
    ACTIVE = "active"
    EXPIRED = "expired"
    USED = "used"
    INVALID = "invalid"


TERMINAL_STATES = frozenset({LifecycleState.EXPIRED, LifecycleState.USED})


@dataclass(frozen=True)
class TimeRemaining:
    hours: int
    minutes: int
    seconds: int
    expired: bool

    @property
    def total_seconds(self) -> int:
        return self.hours * 3600 + self.minutes * 60 + self.seconds


EXPIRED_REMAINING = TimeRemaining(0, 0, 0, True)


def _remaining_ms(expires_at: datetime, now: datetime) -> int:
    return int((_aware(expires_at) - _aware(now)).total_seconds() * 1000)


def _from_ms(diff_ms: int) -> TimeRemaining:
    if diff_ms <= 0:
        return EXPIRED_REMAINING
    return TimeRemaining(
        hours=diff_ms // 3_600_000,
        minutes=(diff_ms % 3_600_000) // 60_000,
        seconds=(diff_ms % 60_000) // 1000,
        expired=False,
    )


def time_remaining(expires_at: datetime, now: Optional[datetime] = None) -> TimeRemaining:
    return _from_ms(_remaining_ms(expires_at, now or utcnow()))


def is_expired(expires_at: datetime, now: Optional[datetime] = None) -> bool:
    return _aware(expires_at) <= _aware(now or utcnow())


def format_time_remaining(remaining: TimeRemaining) -> str:
    if remaining.expired:
        return "Expired"
    if remaining.hours > 0:
        return f"{remaining.hours}h {remaining.minutes}m {remaining.seconds}s"
    if remaining.minutes > 0:
        return f"{remaining.minutes}m {remaining.seconds}s"
    return f"{remaining.seconds}s"


def format_expiration_time(expires_at: datetime, now: Optional[datetime] = None) -> str:
    return format_time_remaining(time_remaining(expires_at, now))


def format_discount_value(discount_type: str, value: float) -> str:
    if discount_type == "percentage":
        return f"{value:g}% OFF"
    if discount_type == "fixed":
        return f"${value:g} OFF"
    return f"{value:g} OFF"


class CouponLifecycle:
    """State of one decoded coupon inside one view."""

    def __init__(self, coupon: CouponData, lookup: Optional[Lookup] = None, clock: Clock = utcnow):
        self.coupon = coupon
        self._lookup = lookup
        self._clock = clock
        self.state = LifecycleState.UNKNOWN
        self.reason: Optional[str] = None
        self._last_ms: Optional[int] = None
        self._listeners: List[Callable[["CouponLifecycle"], None]] = []

    def subscribe(self, listener: Callable[["CouponLifecycle"], None]) -> None:
        self._listeners.append(listener)

    def _transition(self, state: LifecycleState, reason: Optional[str] = None) -> None:
        if state is self.state and reason == self.reason:
            return
        logger.info("Coupon %s: %s -> %s", self.coupon.code, self.state.value, state.value)
        self.state = state
        self.reason = reason
        for listener in self._listeners:
            listener(self)

    async def validate(self) -> LifecycleState:
        """Run the backend lookup and the local expiry check, then settle the state."""
        if self.state in TERMINAL_STATES:
            return self.state

        self._transition(LifecycleState.VALIDATING)
        details: Optional[RedeemDetails] = None
        if self._lookup is not None:
            try:
                details = await self._lookup(self.coupon.code)
            except BackendError as e:
                logger.warning(
                    "Redeem details lookup failed for %s, using local expiry check: %s",
                    self.coupon.code, e,
                )

        # The countdown or a redemption may have settled the state while we waited.
        if self.state is not LifecycleState.VALIDATING:
            return self.state

        expired = is_expired(self.coupon.expires_at, self._clock())
        if details is not None and details.used:
            self._transition(LifecycleState.USED)
        elif details is not None and not details.valid:
            self._transition(LifecycleState.INVALID, "This coupon is not valid")
        elif expired:
            self._transition(LifecycleState.EXPIRED)
        else:
            self._transition(LifecycleState.ACTIVE)
        return self.state

    def tick(self) -> TimeRemaining:
        """Recompute the time remaining; never increases, frozen once expired."""
        diff_ms = _remaining_ms(self.coupon.expires_at, self._clock())
        if self._last_ms is not None:
            diff_ms = min(diff_ms, self._last_ms)
        self._last_ms = diff_ms

        remaining = _from_ms(diff_ms)
        if remaining.expired and self.state in (
            LifecycleState.UNKNOWN, LifecycleState.VALIDATING, LifecycleState.ACTIVE,
        ):
            self._transition(LifecycleState.EXPIRED)
        return remaining

    def mark_used(self) -> None:
        self._transition(LifecycleState.USED)

    @property
    def can_redeem(self) -> bool:
        self.tick()
        return self.state is LifecycleState.ACTIVE

    def require_redeemable(self) -> None:
        """Raise the lifecycle error that explains why redemption is blocked."""
        if self.can_redeem:
            return
        if self.state is LifecycleState.EXPIRED:
            raise ExpiredError(self.coupon.code)
        if self.state is LifecycleState.USED:
            raise UsedError(self.coupon.code)
        if self.state is LifecycleState.INVALID:
            raise InvalidError(self.reason or self.coupon.code)
        raise InvalidError("Coupon status has not been confirmed yet")


class Countdown:
    """
    Repeating tick for one coupon view. Stops by itself once the coupon
    expires; after stop() it cannot be started again.
    """

    def __init__(
        self,
        lifecycle: CouponLifecycle,
        interval: float = COUNTDOWN_INTERVAL_SEC,
        on_tick: Optional[Callable[[TimeRemaining], None]] = None,
    ):
        self.lifecycle = lifecycle
        self.interval = interval
        self.on_tick = on_tick
        self.remaining: Optional[TimeRemaining] = None
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self._stopped:
            raise RuntimeError("Countdown cannot be restarted once stopped")
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        return self._task

    async def _run(self) -> None:
        try:
            while True:
                self.remaining = self.lifecycle.tick()
                if self.on_tick:
                    self.on_tick(self.remaining)
                if self.remaining.expired:
                    break
                await asyncio.sleep(self.interval)
        finally:
            self._stopped = True

    async def stop(self) -> None:
        self._stopped = True
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
