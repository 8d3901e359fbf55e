"""Per-user daily upload quota.

Limits:
- default from MAX_UPLOADS_PER_DAY (unset -> 2; 0 or negative -> unlimited)
- per-user overrides from UPLOAD_LIMIT_EXCEPTIONS: comma list of ``key[:limit]``
  where key is a user id or an email (matched case-insensitively) and a missing
  or non-positive limit means unlimited, an unparseable limit drops the
  entry and fractional limits are floored

Usage is the number of documents the user created since UTC midnight.
"""
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.worker import db as db_handler

logger = logging.getLogger(__name__)

DEFAULT_DAILY_LIMIT = 2


class UploadLimitReached(Exception):
    """Daily upload quota exhausted; carries machine-readable limit/usage/reset fields."""

    def __init__(self, limit: int, used: int, reset_at: datetime):
        super().__init__(f"Daily upload limit reached ({used}/{limit})")
        self.limit = limit
        self.used = used
        self.reset_at = reset_at

    def to_dict(self) -> dict:
        return {
            "error": "Daily upload limit reached",
            "limit": self.limit,
            "used": self.used,
            "resetAt": self.reset_at.isoformat().replace("+00:00", "Z"),
        }


def default_daily_limit(raw: Optional[int]) -> Optional[int]:
    """None means unlimited."""
    if raw is None:
        return DEFAULT_DAILY_LIMIT
    if raw <= 0:
        return None
    return raw


def parse_limit_exceptions(raw: str) -> Dict[str, Optional[int]]:
    """Parse ``"alice@x.com:10,user-123,bob@y.com:0"`` into {key: limit-or-None}."""
    overrides: Dict[str, Optional[int]] = {}
    for entry in (raw or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        key, _, limit_raw = entry.partition(":")
        key = key.strip()
        if not key:
            continue
        if "@" in key:
            key = key.lower()
        limit: Optional[int] = None
        limit_raw = limit_raw.strip()
        if limit_raw:
            try:
                parsed = float(limit_raw)
            except ValueError:
                parsed = math.nan
            if not math.isfinite(parsed):
                logger.warning("Ignoring UPLOAD_LIMIT_EXCEPTIONS entry %r: limit is not a number", entry)
                continue
            limit = math.floor(parsed) if parsed > 0 else None
        overrides[key] = limit
    return overrides


def resolve_daily_limit(
    user_id: Optional[str],
    email: Optional[str],
    *,
    default_limit: Optional[int],
    overrides: Dict[str, Optional[int]],
) -> Optional[int]:
    """Email override wins over user-id override, which wins over the default."""
    if email and email.lower() in overrides:
        return overrides[email.lower()]
    if user_id and user_id in overrides:
        return overrides[user_id]
    return default_limit


def utc_day_window(now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """(start of current UTC day, start of next UTC day), both timezone-aware."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


async def enforce_upload_quota(
    db: AsyncSession,
    user_id: str,
    email: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Optional[int]:
    """Raise UploadLimitReached when the user is at or over today's limit.

    Returns the limit that applied (None = unlimited).
    """
    from app.config import MAX_UPLOADS_PER_DAY, UPLOAD_LIMIT_EXCEPTIONS

    limit = resolve_daily_limit(
        user_id,
        email,
        default_limit=default_daily_limit(MAX_UPLOADS_PER_DAY),
        overrides=parse_limit_exceptions(UPLOAD_LIMIT_EXCEPTIONS),
    )
    if limit is None:
        return None

    start, reset_at = utc_day_window(now)
    used = await db_handler.count_documents_created_since(db, user_id, start.replace(tzinfo=None))
    if used >= limit:
        logger.warning("Upload limit reached for %s (%s/%s)", user_id, used, limit)
        raise UploadLimitReached(limit=limit, used=used, reset_at=reset_at)
    return limit
