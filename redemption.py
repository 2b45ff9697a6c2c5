"""
Staff redemption
================
Validates the staff PIN locally, makes at most one redemption call at a time
per coupon view, and sorts the backend's answer into a small set of outcomes,
each with its own user-facing message.
"""

import logging
import re
from enum import Enum
from typing import Optional

from backend_client import Backend
from device import DeviceIdentity
from errors import BackendError, BusyError, NetworkError, RateLimitError, ValidationError
from lifecycle import CouponLifecycle
from models import RedemptionResult

logger = logging.getLogger(__name__)

PIN_PATTERN = re.compile(r"^[0-9]{4,6}$")


class RedemptionOutcome(str, Enum):
    REDEEMED = "redeemed"
    ALREADY_USED = "already_used"
    NOT_VALID = "not_valid"
    PIN_MISMATCH = "pin_mismatch"
    FAILED = "failed"


OUTCOME_MESSAGES = {
    RedemptionOutcome.REDEEMED: "Coupon redeemed successfully.",
    RedemptionOutcome.ALREADY_USED: "This coupon has already been redeemed.",
    RedemptionOutcome.NOT_VALID: "This coupon is not valid for redemption.",
    RedemptionOutcome.PIN_MISMATCH: "Incorrect staff PIN for this store.",
    RedemptionOutcome.FAILED: "Redemption failed. Please try again.",
}


def classify_failure(message: Optional[str]) -> RedemptionOutcome:
    text = (message or "").lower()
    if "pin" in text:
        return RedemptionOutcome.PIN_MISMATCH
    if "already" in text or "redeemed" in text or "used" in text:
        return RedemptionOutcome.ALREADY_USED
    if "not valid" in text or "invalid" in text or "expired" in text:
        return RedemptionOutcome.NOT_VALID
    return RedemptionOutcome.FAILED


def validate_pin(staff_pin: str) -> str:
    if not PIN_PATTERN.match(staff_pin or ""):
        raise ValidationError("PIN must be 4 to 6 digits.")
    return staff_pin


class RedemptionCoordinator:
    """One per coupon view. While a call is in flight the redeem action is disabled."""

    def __init__(self, backend: Backend, lifecycle: Optional[CouponLifecycle] = None):
        self.backend = backend
        self.lifecycle = lifecycle
        self.in_flight = False
        self.last_result: Optional[RedemptionResult] = None

    @property
    def enabled(self) -> bool:
        if self.in_flight:
            return False
        return self.lifecycle.can_redeem if self.lifecycle else True

    async def redeem(
        self,
        code: str,
        store_id: str,
        staff_pin: str,
        device: Optional[DeviceIdentity] = None,
    ) -> RedemptionResult:
        validate_pin(staff_pin)
        if self.lifecycle is not None:
            self.lifecycle.require_redeemable()
        if self.in_flight:
            raise BusyError("A redemption is already in progress.")

        self.in_flight = True
        try:
            result = await self.backend.redeem_by_staff(
                code, store_id, staff_pin, device.value if device else None,
            )
        except (NetworkError, RateLimitError):
            raise
        except BackendError as e:
            result = RedemptionResult(success=False, message=str(e))
        finally:
            self.in_flight = False

        if result.success:
            result.outcome = RedemptionOutcome.REDEEMED.value
            if self.lifecycle is not None:
                self.lifecycle.mark_used()
            if result.leveled_up:
                logger.info("Coupon %s redeemed, level %s -> %s", code, result.old_level, result.new_level)
            else:
                logger.info("Coupon %s redeemed", code)
        else:
            outcome = classify_failure(result.message)
            result.outcome = outcome.value
            if outcome is RedemptionOutcome.ALREADY_USED and self.lifecycle is not None:
                self.lifecycle.mark_used()
            logger.info("Redemption of %s refused: %s", code, outcome.value)

        self.last_result = result
        return result


def user_message(result: RedemptionResult) -> str:
    """Message shown to staff for a finished redemption."""
    if result.outcome is None:
        outcome = RedemptionOutcome.REDEEMED if result.success else classify_failure(result.message)
    else:
        outcome = RedemptionOutcome(result.outcome)
    return OUTCOME_MESSAGES[outcome]
