"""
One coupon on screen: its lifecycle, its countdown, and its redeem action.
Everything here lives as long as the view and is torn down by close().
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from availability import is_available_at
from backend_client import Backend
from config import COUNTDOWN_INTERVAL_SEC
from device import DeviceIdentity
from lifecycle import (
    Countdown,
    CouponLifecycle,
    LifecycleState,
    TimeRemaining,
    format_discount_value,
    format_time_remaining,
    utcnow,
)
from models import CouponData, RedemptionResult
from redemption import RedemptionCoordinator

logger = logging.getLogger(__name__)


class CouponView:
    def __init__(
        self,
        coupon: CouponData,
        backend: Backend,
        device: Optional[DeviceIdentity] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        tick_interval: float = COUNTDOWN_INTERVAL_SEC,
    ):
        self.coupon = coupon
        self.device = device
        self._clock = clock
        self.lifecycle = CouponLifecycle(coupon, backend.lookup_redeem_details, clock)
        self.countdown = Countdown(self.lifecycle, tick_interval)
        self.redemption = RedemptionCoordinator(backend, self.lifecycle)

    async def open(self) -> LifecycleState:
        self.countdown.start()
        state = await self.lifecycle.validate()
        logger.debug("Opened coupon view %s in state %s", self.coupon.code, state.value)
        return state

    async def close(self) -> None:
        await self.countdown.stop()
        logger.debug("Closed coupon view %s", self.coupon.code)

    async def __aenter__(self) -> "CouponView":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def state(self) -> LifecycleState:
        return self.lifecycle.state

    @property
    def redeem_enabled(self) -> bool:
        return self.redemption.enabled

    @property
    def time_remaining(self) -> TimeRemaining:
        return self.lifecycle.tick()

    def snapshot(self) -> dict:
        remaining = self.lifecycle.tick()
        discount = self.coupon.discount
        return {
            "code": self.coupon.code,
            "state": self.lifecycle.state.value,
            "reason": self.lifecycle.reason,
            "time_remaining": remaining,
            "countdown": format_time_remaining(remaining),
            "discount_label": format_discount_value(discount.type, discount.value),
            "available_now": is_available_at(discount, self._clock()),
            "can_redeem": self.redeem_enabled,
        }

    async def redeem(self, staff_pin: str) -> RedemptionResult:
        return await self.redemption.redeem(
            self.coupon.code, self.coupon.store_id, staff_pin, self.device,
        )
