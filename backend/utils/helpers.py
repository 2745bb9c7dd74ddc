"""
General helper utilities
"""
import math
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the database stores DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def days_ago(days: int, now: Optional[datetime] = None) -> datetime:
    """Start of a trailing window of `days` days ending at `now`"""
    return (now or utcnow()) - timedelta(days=days)


def end_of_day(day: date) -> datetime:
    """Last representable instant of a calendar day"""
    return datetime.combine(day, time(23, 59, 59))


def round_score(score: float) -> float:
    """Round to one decimal place, halves away from zero for positive scores"""
    return math.floor(score * 10 + 0.5) / 10


def generate_code(prefix: str, now: Optional[datetime] = None) -> str:
    """Human-readable record code, e.g. FND-2026-1A2B3C4D5E"""
    year = (now or utcnow()).year
    return f"{prefix}-{year}-{uuid.uuid4().hex[:10].upper()}"


def mean(values: list[float]) -> float:
    """Arithmetic mean, 0 for an empty list"""
    return sum(values) / len(values) if values else 0.0
