"""
Short-TTL cache for decoded coupon views.

Carries decoded coupon data from the view that scanned it to the view that
redeems it, so the payload never has to travel through a URL again. The cache
is an explicit object handed to both flows; expiry is enforced on every read.
"""
import json
import logging
import secrets
from datetime import datetime
from typing import Callable, Optional

from config import DATABASE_PATH, REDEEM_VIEW_KEY, VIEW_CACHE_TTL_SEC
from database import expiry_utc, get_db, purge_expired_views, to_utc_text
from lifecycle import utcnow
from models import CouponData

logger = logging.getLogger(__name__)


class RedeemViewCache:
    def __init__(
        self,
        path: str = DATABASE_PATH,
        ttl_seconds: int = VIEW_CACHE_TTL_SEC,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.path = path
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @staticmethod
    def new_handle() -> str:
        return secrets.token_urlsafe(16)

    async def put(self, coupon: CouponData, handle: str = REDEEM_VIEW_KEY) -> str:
        """Store `coupon` under `handle`; returns the expiry timestamp."""
        now = self._clock()
        expires_at = expiry_utc(self.ttl_seconds, now)
        payload = coupon.model_dump_json(by_alias=True, exclude_none=True)
        db = await get_db(self.path)
        try:
            await db.execute(
                """
                INSERT INTO redeem_views (handle, payload, created_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(handle) DO UPDATE SET
                    payload    = excluded.payload,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at
                """,
                (handle, payload, to_utc_text(now), expires_at),
            )
            await db.commit()
        finally:
            await db.close()
        return expires_at

    async def get(self, handle: str = REDEEM_VIEW_KEY) -> Optional[CouponData]:
        db = await get_db(self.path)
        try:
            async with db.execute(
                "SELECT payload, expires_at FROM redeem_views WHERE handle = ?", (handle,)
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return None

            if datetime.fromisoformat(row["expires_at"]) <= self._clock():
                await db.execute("DELETE FROM redeem_views WHERE handle = ?", (handle,))
                await db.commit()
                return None

            try:
                return CouponData.model_validate(json.loads(row["payload"]))
            except ValueError:
                logger.warning("Dropping unreadable cached view %s", handle)
                await db.execute("DELETE FROM redeem_views WHERE handle = ?", (handle,))
                await db.commit()
                return None
        finally:
            await db.close()

    async def clear(self, handle: str = REDEEM_VIEW_KEY) -> None:
        db = await get_db(self.path)
        try:
            await db.execute("DELETE FROM redeem_views WHERE handle = ?", (handle,))
            await db.commit()
        finally:
            await db.close()

    async def purge(self) -> int:
        db = await get_db(self.path)
        try:
            return await purge_expired_views(db, to_utc_text(self._clock()))
        finally:
            await db.close()
