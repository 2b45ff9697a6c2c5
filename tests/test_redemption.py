import asyncio

import pytest

from conftest import active_details, make_coupon
from device import DeviceIdentity
from errors import BackendError, BusyError, NetworkError, RateLimitError, UsedError, ValidationError
from lifecycle import CouponLifecycle, LifecycleState
from models import RedemptionResult
from redemption import RedemptionCoordinator, RedemptionOutcome, classify_failure, user_message


async def _active_lifecycle(backend, clock) -> CouponLifecycle:
    backend.details = active_details()
    lifecycle = CouponLifecycle(make_coupon(now=clock()), backend.lookup_redeem_details, clock)
    await lifecycle.validate()
    return lifecycle


@pytest.mark.asyncio
@pytest.mark.parametrize("pin", ["12", "", "123", "1234567", "12a4", " 1234", "１２３４"])
async def test_malformed_pin_is_rejected_without_network(backend, pin):
    coordinator = RedemptionCoordinator(backend)
    with pytest.raises(ValidationError):
        await coordinator.redeem("NAMY1234", "store-1", pin)
    assert backend.calls == []


@pytest.mark.asyncio
async def test_successful_redemption_marks_coupon_used(backend, clock):
    lifecycle = await _active_lifecycle(backend, clock)
    backend.redeem_results = [RedemptionResult(success=True, leveled_up=True, old_level=1, new_level=2)]
    coordinator = RedemptionCoordinator(backend, lifecycle)
    device = DeviceIdentity("device-1-abcdefg")

    result = await coordinator.redeem("NAMY1234", "store-1", "4321", device)

    assert result.success
    assert result.outcome == RedemptionOutcome.REDEEMED.value
    assert user_message(result) == "Coupon redeemed successfully."
    assert lifecycle.state is LifecycleState.USED
    assert backend.calls_to("redeem") == [("redeem", "NAMY1234", "store-1", "4321", "device-1-abcdefg")]
    assert not coordinator.enabled

    with pytest.raises(UsedError):
        await coordinator.redeem("NAMY1234", "store-1", "4321", device)
    assert len(backend.calls_to("redeem")) == 1


@pytest.mark.asyncio
async def test_concurrent_attempts_make_one_call(backend, clock):
    lifecycle = await _active_lifecycle(backend, clock)
    backend.redeem_delay = 0.05
    backend.redeem_results = [RedemptionResult(success=True)]
    coordinator = RedemptionCoordinator(backend, lifecycle)

    results = await asyncio.gather(
        coordinator.redeem("NAMY1234", "store-1", "4321"),
        coordinator.redeem("NAMY1234", "store-1", "4321"),
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, RedemptionResult) and r.success]
    busy = [r for r in results if isinstance(r, BusyError)]
    assert len(successes) == 1
    assert len(busy) == 1
    assert len(backend.calls_to("redeem")) == 1
    assert not coordinator.in_flight


@pytest.mark.asyncio
async def test_scenario_second_rapid_call_reports_already_redeemed(backend):
    backend.redeem_results = [
        RedemptionResult(success=True),
        RedemptionResult(success=False, message="Coupon already redeemed"),
    ]
    coordinator = RedemptionCoordinator(backend)

    first = await coordinator.redeem("NAMY1234", "store-1", "4321")
    second = await coordinator.redeem("NAMY1234", "store-1", "4321")

    assert first.success
    assert not second.success
    assert second.outcome == RedemptionOutcome.ALREADY_USED.value
    assert user_message(second) == "This coupon has already been redeemed."


@pytest.mark.asyncio
async def test_already_used_answer_marks_lifecycle(backend, clock):
    lifecycle = await _active_lifecycle(backend, clock)
    backend.redeem_results = [RedemptionResult(success=False, message="This coupon was already used")]
    coordinator = RedemptionCoordinator(backend, lifecycle)

    await coordinator.redeem("NAMY1234", "store-1", "4321")
    assert lifecycle.state is LifecycleState.USED


@pytest.mark.asyncio
async def test_backend_error_becomes_failed_result(backend):
    backend.redeem_results = [BackendError("Incorrect PIN for store", code="BAD_USER_INPUT")]
    coordinator = RedemptionCoordinator(backend)

    result = await coordinator.redeem("NAMY1234", "store-1", "4321")

    assert not result.success
    assert result.outcome == RedemptionOutcome.PIN_MISMATCH.value
    assert user_message(result) == "Incorrect staff PIN for this store."
    assert coordinator.last_result is result


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    NetworkError("redeemCouponByStaff: timed out"),
    RateLimitError("Too many attempts, wait 5 minutes", wait_seconds=300),
])
async def test_network_and_rate_limit_errors_propagate(backend, error):
    backend.redeem_results = [error]
    coordinator = RedemptionCoordinator(backend)

    with pytest.raises(type(error)):
        await coordinator.redeem("NAMY1234", "store-1", "4321")
    assert not coordinator.in_flight
    assert coordinator.enabled


@pytest.mark.parametrize("message, outcome", [
    ("Invalid staff PIN", RedemptionOutcome.PIN_MISMATCH),
    ("Coupon already redeemed", RedemptionOutcome.ALREADY_USED),
    ("coupon has been used", RedemptionOutcome.ALREADY_USED),
    ("Coupon is not valid", RedemptionOutcome.NOT_VALID),
    ("Coupon expired", RedemptionOutcome.NOT_VALID),
    ("Internal server error", RedemptionOutcome.FAILED),
    (None, RedemptionOutcome.FAILED),
])
def test_classify_failure(message, outcome):
    assert classify_failure(message) is outcome
