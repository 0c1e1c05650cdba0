"""core/clock.py -- Injectable wall clock.

Services take a `clock` callable instead of calling datetime.now() directly so
tests can pin time and step it forward across window and expiry boundaries.
"""

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
