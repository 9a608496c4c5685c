from datetime import datetime, timezone
from typing import Callable

# Services take a clock so expiry logic can be exercised without sleeping
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
