"""
Namy Redeem — Database helpers
Handles connection, table creation, timestamps, and purging of expired cached views.
"""
from datetime import datetime, timedelta, timezone

import aiosqlite

from config import DATABASE_PATH, VIEW_CACHE_TTL_SEC


# ── Connection ────────────────────────────────────────────────────────────────

async def get_db(path: str = DATABASE_PATH) -> aiosqlite.Connection:
    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    await db.execute("""
        CREATE TABLE IF NOT EXISTS redeem_views (
            handle      TEXT PRIMARY KEY,
            payload     TEXT NOT NULL,
            created_at  TEXT NOT NULL,
            expires_at  TEXT NOT NULL
        )
    """)
    await db.execute("CREATE INDEX IF NOT EXISTS idx_views_expiry ON redeem_views(expires_at)")
    await db.execute("""
        CREATE TABLE IF NOT EXISTS device_identity (
            id          INTEGER PRIMARY KEY CHECK (id = 1),
            device_id   TEXT NOT NULL,
            created_at  TEXT NOT NULL
        )
    """)
    await db.commit()
    return db


# ── Utilities ─────────────────────────────────────────────────────────────────

def to_utc_text(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat()


def now_utc() -> str:
    return to_utc_text(datetime.now(timezone.utc))


def expiry_utc(ttl_seconds: int = VIEW_CACHE_TTL_SEC, now: datetime | None = None) -> str:
    return to_utc_text((now or datetime.now(timezone.utc)) + timedelta(seconds=ttl_seconds))


# ── Purge ─────────────────────────────────────────────────────────────────────

async def purge_expired_views(db: aiosqlite.Connection, now: str | None = None) -> int:
    """Remove all expired cached views. Returns number of rows deleted."""
    cursor = await db.execute(
        "DELETE FROM redeem_views WHERE expires_at <= ?", (now or now_utc(),)
    )
    await db.commit()
    return cursor.rowcount
