"""
ArcVault - Expiration Policy

Pure logic deciding whether a record is expired and whether it is currently
prunable (safe to delete now).

    expired   := expires_at is set AND expires_at <= now
    prunable  := expired AND no hold applies

"Expired" drives reporting; "prunable" drives the destructive action. The
only built-in hold is TTLPolicy.RETAIN. Further holds are registered with
ExpirationPolicy.add_hold() without touching the scheduler.
"""

from datetime import datetime
from typing import Callable, List, Optional

from arcvault.core.models import Record, TTLPolicy, ensure_aware, utcnow

Hold = Callable[[Record], bool]


def is_expired(record: Record, now: datetime) -> bool:
    """
    Check whether record's lifetime has elapsed at `now`.

    Monotonic in `now`: once True it stays True for every later `now`.
    """
    if record.expires_at is None:
        return False
    return ensure_aware(record.expires_at) <= ensure_aware(now)


def is_retained(record: Record) -> bool:
    """Retention hold: the record outlives its expiry until deleted explicitly."""
    return record.ttl_policy == TTLPolicy.RETAIN


DEFAULT_HOLDS: List[Hold] = [is_retained]


def is_held(record: Record, holds: Optional[List[Hold]] = None) -> bool:
    return any(hold(record) for hold in (DEFAULT_HOLDS if holds is None else holds))


def is_prunable(
    record: Record,
    now: datetime,
    holds: Optional[List[Hold]] = None
) -> bool:
    """Check whether record is expired and not subject to any hold."""
    return is_expired(record, now) and not is_held(record, holds)


class ExpirationPolicy:
    """
    Expiration decisions bound to a clock and a set of holds.

    Usage:
        policy = ExpirationPolicy()
        policy.add_hold(lambda r: r.id in legal_hold_ids)
        policy.is_prunable(record)
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        holds: Optional[List[Hold]] = None
    ):
        self.clock = clock
        self.holds: List[Hold] = list(DEFAULT_HOLDS if holds is None else holds)

    def add_hold(self, hold: Hold) -> None:
        self.holds.append(hold)

    def now(self) -> datetime:
        return self.clock()

    def is_expired(self, record: Record, now: Optional[datetime] = None) -> bool:
        return is_expired(record, now or self.clock())

    def is_held(self, record: Record) -> bool:
        return is_held(record, self.holds)

    def is_prunable(self, record: Record, now: Optional[datetime] = None) -> bool:
        return is_prunable(record, now or self.clock(), self.holds)
