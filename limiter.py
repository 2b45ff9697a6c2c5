"""
Namy Redeem — Rate limiter (shared instance)
Imported by main.py and all routers that apply @limiter.limit().
"""
from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address


def get_client_ip(request: Request) -> str:
    """Use CF-Connecting-IP when behind Cloudflare, fall back to remote address."""
    return request.headers.get("CF-Connecting-IP") or get_remote_address(request)


def get_device_or_ip(request: Request) -> str:
    """Key staff redemption attempts by device so one kiosk cannot brute-force PINs."""
    device_id = request.headers.get("X-Device-Id")
    return f"device:{device_id}" if device_id else get_client_ip(request)


limiter = Limiter(key_func=get_client_ip)
