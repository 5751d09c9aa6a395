from datetime import datetime, timedelta

from config.constants import PERIOD_ANCHOR_WEEKDAY, PERIOD_LENGTH_DAYS
from utils.errors import ValidationFailedError
from utils.guards import naive_utc

# =====================================================
# WEEKLY PAYOUT PERIODS
# =====================================================
# [start, start + 7 days), start at Wednesday 00:00 UTC.
# Datetimes are naive UTC, like everything stored by the backend.


def period_bounds(period_start: datetime) -> tuple[datetime, datetime]:
    start = naive_utc(period_start)
    return start, start + timedelta(days=PERIOD_LENGTH_DAYS)


def period_start_for(moment: datetime) -> datetime:
    """Start of the period that contains `moment`."""
    moment = naive_utc(moment)
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    offset = (midnight.weekday() - PERIOD_ANCHOR_WEEKDAY) % 7
    return midnight - timedelta(days=offset)


def previous_period(now: datetime | None = None) -> tuple[datetime, datetime]:
    """The most recently closed period."""
    current_start = period_start_for(now or datetime.utcnow())
    return period_bounds(current_start - timedelta(days=PERIOD_LENGTH_DAYS))


def validate_period(period_start: datetime, now: datetime | None = None) -> tuple[datetime, datetime]:
    start, end = period_bounds(period_start)

    if start.weekday() != PERIOD_ANCHOR_WEEKDAY or start != start.replace(hour=0, minute=0, second=0, microsecond=0):
        raise ValidationFailedError("Payout periods start on Wednesday 00:00 UTC")
    if end > (now or datetime.utcnow()):
        raise ValidationFailedError("Payout period has not closed yet")

    return start, end
