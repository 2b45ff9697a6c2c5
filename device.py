"""
Local device identity: an opaque id generated once and persisted, sent with
ad-watch and redemption calls for anti-abuse correlation. Passed explicitly to
every flow that needs it.
"""
import secrets
import string
import time
from dataclasses import dataclass

from config import DATABASE_PATH
from database import get_db, now_utc

_ALPHABET = string.ascii_lowercase + string.digits


@dataclass(frozen=True)
class DeviceIdentity:
    value: str

    def __str__(self) -> str:
        return self.value


def generate_device_id() -> str:
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(7))
    return f"device-{int(time.time() * 1000)}-{suffix}"


async def load_device_identity(path: str = DATABASE_PATH) -> DeviceIdentity:
    """Return the persisted identity, creating it on first use (write-once)."""
    db = await get_db(path)
    try:
        await db.execute(
            "INSERT OR IGNORE INTO device_identity (id, device_id, created_at) VALUES (1, ?, ?)",
            (generate_device_id(), now_utc()),
        )
        await db.commit()
        async with db.execute("SELECT device_id FROM device_identity WHERE id = 1") as cursor:
            row = await cursor.fetchone()
    finally:
        await db.close()
    return DeviceIdentity(row[0])
