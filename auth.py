"""
Namy Redeem — Request dependencies
  - verify_client_secret: shared app secret header (blocks unauthenticated requests)
  - get_device_identity:  staff device id sent with redemption calls
"""
from fastapi import Header, HTTPException

from config import CLIENT_SECRET
from device import DeviceIdentity


async def verify_client_secret(x_namy_secret: str = Header(default="")) -> None:
    """
    Validate the shared app secret sent in every request.
    Set CLIENT_SECRET env var to enable. If unset, validation is skipped (dev mode).
    """
    if CLIENT_SECRET and x_namy_secret != CLIENT_SECRET:
        raise HTTPException(status_code=401, detail="Invalid or missing client secret.")


async def get_device_identity(x_device_id: str = Header(default="")) -> DeviceIdentity | None:
    """
    Staff devices identify themselves with X-Device-Id. Optional: the backend
    only uses it for anti-abuse correlation.
    """
    value = x_device_id.strip()
    if not value:
        return None
    if len(value) > 128:
        raise HTTPException(status_code=400, detail="X-Device-Id is too long.")
    return DeviceIdentity(value)
