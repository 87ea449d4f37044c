"""
Fixed-window request counting for the webhook receiver.

Counters live in the rate_limits table, one row per
(identifier, endpoint, window_start), bumped with a single
INSERT ... ON CONFLICT DO UPDATE ... RETURNING request_count.

Failure policy is fail-closed: if the counter cannot be read or written the
delivery is NOT allowed, and the caller is told to retry one window later.
"""

import math
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from sqlalchemy import delete, select

from salesboard.services.shared.database import dialect_insert
from salesboard.services.shared.models import RateLimitWindow

logger = structlog.get_logger()

DEFAULT_MAX_REQUESTS = int(os.getenv("WEBHOOK_RATE_LIMIT_PER_MINUTE", "60"))
WINDOW_MINUTES       = int(os.getenv("WEBHOOK_RATE_LIMIT_WINDOW_MINUTES", "1"))


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    current_count: int
    reset_at: datetime

    def retry_after_seconds(self, now: Optional[datetime] = None) -> int:
        """Whole seconds until reset_at, never less than 1."""
        current = now or datetime.now(timezone.utc)
        return max(1, math.ceil((_aware(self.reset_at) - current).total_seconds()))


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything here is UTC
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def window_start_for(now: datetime, window_minutes: int = WINDOW_MINUTES) -> datetime:
    """Truncate `now` to the start of its window (minute-aligned)."""
    start = now.replace(second=0, microsecond=0)
    return start - timedelta(minutes=start.minute % window_minutes)


def _increment_window(db, identifier: str, endpoint: str, window_start: datetime) -> int:
    """Count one request in the window and return the new count."""
    stmt = dialect_insert(db, RateLimitWindow)
    if stmt is not None:
        stmt = (
            stmt.values(identifier=identifier, endpoint=endpoint, request_count=1, window_start=window_start)
                .on_conflict_do_update(
                    index_elements=["identifier", "endpoint", "window_start"],
                    set_={"request_count": RateLimitWindow.request_count + 1},
                )
                .returning(RateLimitWindow.request_count)
        )
        count = db.execute(stmt).scalar_one()
        db.commit()
        return count

    # No ON CONFLICT support: read-modify-write
    row = db.execute(
        select(RateLimitWindow).filter_by(identifier=identifier, endpoint=endpoint, window_start=window_start)
    ).scalar_one_or_none()
    if row is None:
        row = RateLimitWindow(identifier=identifier, endpoint=endpoint, request_count=1, window_start=window_start)
        db.add(row)
    else:
        row.request_count = row.request_count + 1
    db.commit()
    return row.request_count


def check_rate_limit(
    db,
    identifier: str,
    endpoint: str,
    max_requests: Optional[int] = None,
    window_minutes: int = WINDOW_MINUTES,
    now: Optional[datetime] = None,
) -> RateLimitResult:
    """
    Count this request against (identifier, endpoint) and decide admission.
    max_requests falls back to the global default when None or non-positive.
    """
    limit = max_requests if max_requests and max_requests > 0 else DEFAULT_MAX_REQUESTS
    current = now or datetime.now(timezone.utc)
    start = window_start_for(current, window_minutes)
    reset_at = start + timedelta(minutes=window_minutes)

    try:
        count = _increment_window(db, identifier, endpoint, start)
    except Exception as exc:
        db.rollback()
        logger.error("rate_limit_check_failed", identifier=identifier, endpoint=endpoint, error=str(exc))
        return RateLimitResult(
            allowed=False,
            current_count=0,
            reset_at=current + timedelta(minutes=window_minutes),
        )

    return RateLimitResult(allowed=count <= limit, current_count=count, reset_at=reset_at)


def cleanup_rate_limits(db, older_than_minutes: int = 60, now: Optional[datetime] = None) -> int:
    """Delete counter rows whose window started more than `older_than_minutes` ago."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(minutes=older_than_minutes)
    result = db.execute(delete(RateLimitWindow).where(RateLimitWindow.window_start < cutoff))
    db.commit()
    return result.rowcount or 0
