"""Retention policy to expiration timestamp resolution."""
from datetime import datetime, timedelta

from app.domains.media.schemas import RetentionPolicy

# Fixed-day arithmetic, not calendar years: 1_year is always 365 days.
RETENTION_PERIODS: dict[RetentionPolicy, timedelta | None] = {
    RetentionPolicy.SEVEN_DAYS: timedelta(days=7),
    RetentionPolicy.THIRTY_DAYS: timedelta(days=30),
    RetentionPolicy.ONE_YEAR: timedelta(days=365),
    RetentionPolicy.SEVEN_YEARS: timedelta(days=7 * 365),
    RetentionPolicy.PERMANENT: None,
}


def resolve_expiration(policy: RetentionPolicy | str, created_at: datetime) -> datetime | None:
    """
    Absolute expiration for a record created at `created_at`.

    Computed once when the record is created and never recomputed.
    Returns None for the permanent policy.
    """
    period = RETENTION_PERIODS[RetentionPolicy(policy)]
    if period is None:
        return None
    return created_at + period
