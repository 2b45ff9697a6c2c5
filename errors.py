"""
Namy Redeem — Error taxonomy

Every failure the engine can report is a CouponError. Each class carries the
message shown to end users and the HTTP status the service answers with.
Only errors flagged `safe` may surface their own text; the rest are replaced
by their class-level `user_message`.
"""

GENERIC_MESSAGE = "Something went wrong. Please try again."


class CouponError(Exception):
    user_message = GENERIC_MESSAGE
    status_code = 500
    safe = False


class ConfigError(CouponError):
    """Missing or malformed startup configuration."""


# ── Payload ───────────────────────────────────────────────────────────────────

class PayloadError(CouponError):
    user_message = "Invalid coupon"
    status_code = 400


class FormatError(PayloadError):
    """Cipher string is not three URL-safe base64 segments."""


class AuthError(PayloadError):
    """Authentication tag mismatch: tampered payload or wrong key."""


class SchemaError(PayloadError):
    """Decrypted payload is missing a required field."""

    def __init__(self, field: str, detail: str | None = None):
        self.field = field
        super().__init__(detail or f"Missing required field: {field}")


class UnsupportedPayloadError(CouponError):
    user_message = "Unsupported QR code"
    status_code = 400


# ── Lifecycle ─────────────────────────────────────────────────────────────────

class LifecycleError(CouponError):
    status_code = 409
    safe = True


class ExpiredError(LifecycleError):
    user_message = "This coupon has expired"


class UsedError(LifecycleError):
    user_message = "This coupon has already been redeemed"


class InvalidError(LifecycleError):
    user_message = "This coupon is not valid for redemption"


# ── Redemption / unlock ───────────────────────────────────────────────────────

class ValidationError(CouponError):
    user_message = "PIN must be 4 to 6 digits."
    status_code = 422
    safe = True


class TokenError(CouponError):
    user_message = "Unlock token missing. Please watch the ads again."
    status_code = 409


class BusyError(CouponError):
    user_message = "A redemption is already in progress."
    status_code = 409
    safe = True


# ── Backend ───────────────────────────────────────────────────────────────────

class BackendError(CouponError):
    status_code = 502

    def __init__(self, message: str, code: str | None = None, status: int | None = None):
        self.code = code
        self.status = status
        super().__init__(message)


class NetworkError(BackendError):
    user_message = "Could not reach the server. Check your connection."


class RateLimitError(BackendError):
    status_code = 429
    safe = True

    def __init__(
        self,
        message: str,
        wait_seconds: int | None = None,
        code: str | None = None,
        action: str | None = None,
    ):
        self.wait_seconds = wait_seconds
        self.action = action or "trying again"
        super().__init__(message, code=code, status=429)

    @property
    def user_message(self) -> str:
        if self.wait_seconds is None:
            return "Too many requests. Please try again later."
        minutes = max(1, -(-self.wait_seconds // 60))
        unit = "minute" if minutes == 1 else "minutes"
        return f"Please wait {minutes} {unit} before {self.action}."


def public_message(exc: Exception) -> str:
    """Text that is safe to show an end user for `exc`."""
    if not isinstance(exc, CouponError):
        return GENERIC_MESSAGE
    if isinstance(exc, (LifecycleError, RateLimitError)):
        return exc.user_message
    if exc.safe and str(exc):
        return str(exc)
    return exc.user_message
