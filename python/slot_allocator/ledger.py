# Metering ledger: when did each active occupancy begin?
#
# begin(requester_id, now) -> bool
#   record the start time, refuse to overwrite an existing entry
# end(requester_id, now) -> Duration | None
#   remove the entry and return the billable duration
# oldest() -> (requester_id, start) | None
#   the longest-running occupancy
#
# One lock guards the shared heap. Every check-then-write on an identity runs
# under it, so a begin and an end for the same identity never interleave.
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock

from dateutil.rrule import HOURLY, rrule
from heapdict import heapdict

from slot_allocator.models import RequesterId

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)


class RoundingPolicy(Enum):
    CLOCK_HOURS = "clock_hours"     # wall-clock hour boundaries crossed, at least 1
    CEIL_HOURS = "ceil_hours"       # elapsed time rounded up to whole hours, at least 1
    EXACT_HOURS = "exact_hours"     # fractional hours, never negative


@dataclass(frozen=True)
class Duration:
    elapsed: timedelta
    units: int | float


def _floor_hour(ts: datetime) -> datetime:
    return ts.replace(minute=0, second=0, microsecond=0)


def clock_hours_between(start: datetime, end: datetime) -> int:
    """
    Number of wall-clock hour boundaries in (start, end].
    9:00 -> 12:00 is 3, 9:10 -> 9:50 is 0, 23:30 -> 01:15 is 2.
    """
    first_boundary = _floor_hour(start) + HOUR
    if end < first_boundary:
        return 0
    return rrule(HOURLY, dtstart=first_boundary, until=end).count()


def billable_units(start: datetime, end: datetime, policy: RoundingPolicy) -> int | float:
    elapsed = end - start
    if policy == RoundingPolicy.EXACT_HOURS:
        return max(0., elapsed / HOUR)

    if policy == RoundingPolicy.CLOCK_HOURS:
        units = clock_hours_between(start, end)
    else:
        units = math.ceil(elapsed / HOUR)
    return max(1, units)


class MeteringLedger:
    def __init__(self, rounding: RoundingPolicy = RoundingPolicy.CEIL_HOURS) -> None:
        self.rounding = rounding
        self.started: heapdict = heapdict()     # requester id -> start time

        self.heap_lock = Lock()

    def begin(self, requester_id: RequesterId, now: datetime) -> bool:
        """
        Record that requester_id started occupying at now.
        An existing entry is never overwritten; returns False instead.
        """
        with self.heap_lock:
            if requester_id in self.started:
                return False
            self.started[requester_id] = now

        logger.debug("metering %r from %s", requester_id, now.isoformat())
        return True

    def end(self, requester_id: RequesterId, now: datetime) -> Duration | None:
        """
        Stop metering requester_id and return how long it occupied,
        or None when it was not being metered.
        """
        with self.heap_lock:
            if requester_id not in self.started:
                return None
            start = self.started.pop(requester_id)

        elapsed = max(timedelta(0), now - start)
        units = billable_units(start, now, self.rounding)
        logger.debug("metered %r for %s (%s units)", requester_id, elapsed, units)
        return Duration(elapsed, units)

    def started_at(self, requester_id: RequesterId) -> datetime | None:
        with self.heap_lock:
            return self.started.get(requester_id)

    def oldest(self) -> tuple[RequesterId, datetime] | None:
        with self.heap_lock:
            if not self.started:
                return None
            return self.started.peekitem()

    def __contains__(self, requester_id: RequesterId) -> bool:
        with self.heap_lock:
            return requester_id in self.started

    def __len__(self) -> int:
        with self.heap_lock:
            return len(self.started)


def at(hour: int, minute: int = 0, day: int = 1) -> datetime:
    return datetime(2024, 1, day, hour, minute)


def test_clock_hours():
    tcs = [
        (at(9), at(12), 3),
        (at(9), at(9), 0),
        (at(9, 10), at(9, 50), 0),
        (at(9, 50), at(10, 10), 1),
        (at(23, 30), at(1, 15, day=2), 2),
        (at(12), at(9), 0),
    ]
    for start, end, expected in tcs:
        output = clock_hours_between(start, end)
        assert expected == output, f"{start} -> {end}: expected {expected} but output is {output}"


def test_billable_units():
    tcs = [
        (at(9), at(12), RoundingPolicy.CLOCK_HOURS, 3),
        (at(9), at(12), RoundingPolicy.CEIL_HOURS, 3),
        (at(9), at(12), RoundingPolicy.EXACT_HOURS, 3.),
        # same hour bills a full unit under both integer policies
        (at(9), at(9), RoundingPolicy.CLOCK_HOURS, 1),
        (at(9), at(9), RoundingPolicy.CEIL_HOURS, 1),
        (at(9), at(9), RoundingPolicy.EXACT_HOURS, 0.),
        # partial hours round up
        (at(9), at(10, 1), RoundingPolicy.CEIL_HOURS, 2),
        (at(9, 50), at(10, 10), RoundingPolicy.CLOCK_HOURS, 1),
        (at(9, 50), at(10, 10), RoundingPolicy.CEIL_HOURS, 1),
        (at(9), at(9, 30), RoundingPolicy.EXACT_HOURS, .5),
        # past midnight never goes negative
        (at(23), at(1, day=2), RoundingPolicy.CLOCK_HOURS, 2),
        (at(23), at(1, day=2), RoundingPolicy.CEIL_HOURS, 2),
        # clock running backwards
        (at(12), at(9), RoundingPolicy.CEIL_HOURS, 1),
        (at(12), at(9), RoundingPolicy.EXACT_HOURS, 0.),
    ]
    for start, end, policy, expected in tcs:
        output = billable_units(start, end, policy)
        assert expected == output, f"{policy} {start} -> {end}: expected {expected} but output is {output}"


def test_begin_end():
    ledger = MeteringLedger(RoundingPolicy.CEIL_HOURS)
    assert ledger.begin(1, at(9))
    assert 1 in ledger
    assert ledger.started_at(1) == at(9)

    duration = ledger.end(1, at(12))
    assert duration == Duration(timedelta(hours=3), 3)
    assert 1 not in ledger
    assert len(ledger) == 0


def test_end_without_begin():
    ledger = MeteringLedger()
    assert ledger.end("ghost", at(9)) is None

    ledger.begin("a", at(9))
    assert ledger.end("a", at(10)) is not None
    assert ledger.end("a", at(11)) is None


def test_begin_does_not_overwrite():
    ledger = MeteringLedger()
    assert ledger.begin("a", at(9))
    assert not ledger.begin("a", at(11))
    assert ledger.started_at("a") == at(9)


def test_oldest():
    ledger = MeteringLedger()
    assert ledger.oldest() is None

    ledger.begin("late", at(11))
    ledger.begin("early", at(8))
    ledger.begin("middle", at(9))
    assert ledger.oldest() == ("early", at(8))

    ledger.end("early", at(12))
    assert ledger.oldest() == ("middle", at(9))


def test_concurrent_begin_same_identity():
    from concurrent.futures import ThreadPoolExecutor

    ledger = MeteringLedger()
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda hour: ledger.begin("shared", at(hour)), range(24)))

    assert results.count(True) == 1
    assert len(ledger) == 1



def test_concurrent_begin_end_pairs():
    from concurrent.futures import ThreadPoolExecutor

    ledger = MeteringLedger()

    def churn(_):
        begun = ended = 0
        for hour in range(24):
            if ledger.begin("shared", at(hour)):
                begun += 1
            if ledger.end("shared", at(hour)) is not None:
                ended += 1
        return begun, ended

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(churn, range(8)))

    begun = sum(b for b, _ in results)
    ended = sum(e for _, e in results)
    assert begun == ended + len(ledger)
    assert len(ledger) == 0

if __name__ == "__main__":
    test_clock_hours()
    test_billable_units()
    test_begin_end()
    test_end_without_begin()
    test_begin_does_not_overwrite()
    test_oldest()
    test_concurrent_begin_same_identity()
    test_concurrent_begin_end_pairs()
