# One linear bank of N elementary slots (a parking floor).
#
# try_allocate(requester_id, unit) -> AllocationHandle | None
#   first-fit: the earliest-starting run of free slots long enough wins
# release(requester_id) -> bool
# contains(requester_id) -> bool
#
# Every operation on a bank runs under the bank's own lock.
import logging
from enum import Enum
from threading import Lock

import numpy as np
from sortedcontainers import SortedDict

from slot_allocator.models import AllocationHandle, InvalidRequest, RequesterId, ResourceUnit

logger = logging.getLogger(__name__)


class SlotState(Enum):
    FREE = 0
    OCCUPIED = 1


class BankStrategy(Enum):
    SCAN = "scan"
    SEGMENT = "segment"


class SlotBank:
    def __init__(self, capacity: int, index: int = 0) -> None:
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity <= 0:
            raise InvalidRequest(f"bank capacity must be a positive integer, got {capacity!r}")
        self.index = index
        self.capacity = capacity

        self.occupied = np.zeros(capacity, dtype=bool)
        self.handles: dict[RequesterId, AllocationHandle] = {}   # requester id -> handle
        self.lock = Lock()

    def _find_window(self, size: int) -> int | None:
        left = 0
        for right, taken in enumerate(self.occupied.tolist()):
            if taken:
                left = right + 1
            elif right - left + 1 == size:
                return left
        return None

    def _occupy(self, start: int, end: int):
        self.occupied[start:end + 1] = True

    def _free(self, start: int, end: int):
        self.occupied[start:end + 1] = False

    def try_allocate(self, requester_id: RequesterId, unit: ResourceUnit) -> AllocationHandle | None:
        """
        Claim the first run of unit.size consecutive free slots for requester_id.
        Returns None, without touching any state, when no such run exists.
        """
        with self.lock:
            if requester_id in self.handles:
                raise InvalidRequest(f"{requester_id!r} already holds slots on bank {self.index}")
            if unit.size > self.capacity:
                return None

            start = self._find_window(unit.size)
            if start is None:
                return None

            end = start + unit.size - 1
            self._occupy(start, end)
            handle = AllocationHandle(self.index, start, end)
            self.handles[requester_id] = handle

        logger.debug("bank %d: %r -> [%d, %d]", self.index, requester_id, start, end)
        return handle

    def release(self, requester_id: RequesterId) -> bool:
        with self.lock:
            handle = self.handles.pop(requester_id, None)
            if handle is None:
                return False
            self._free(handle.start_slot, handle.end_slot)

        logger.debug("bank %d: released %r from [%d, %d]",
                     self.index, requester_id, handle.start_slot, handle.end_slot)
        return True

    def contains(self, requester_id: RequesterId) -> bool:
        with self.lock:
            return requester_id in self.handles

    def handle_of(self, requester_id: RequesterId) -> AllocationHandle | None:
        with self.lock:
            return self.handles.get(requester_id)

    def slots(self) -> list[SlotState]:
        with self.lock:
            return [SlotState.OCCUPIED if taken else SlotState.FREE for taken in self.occupied.tolist()]

    def free_count(self) -> int:
        with self.lock:
            return self.capacity - int(np.count_nonzero(self.occupied))

    def largest_free_run(self) -> int:
        with self.lock:
            best = run = 0
            for taken in self.occupied.tolist():
                run = 0 if taken else run + 1
                best = max(best, run)
            return best

    def is_consistent(self) -> bool:
        """
        True when the bitmap is exactly the union of the handle ranges
        and no two handles overlap.
        """
        with self.lock:
            owners = np.zeros(self.capacity, dtype=np.int64)
            for handle in self.handles.values():
                if handle.start_slot < 0 or handle.end_slot >= self.capacity:
                    return False
                owners[handle.start_slot:handle.end_slot + 1] += 1
            if owners.max(initial=0) > 1:
                return False
            return bool(np.array_equal(owners == 1, self.occupied))

    def __len__(self) -> int:
        return self.capacity

    def __repr__(self) -> str:
        return f"{type(self).__name__}(index={self.index}, capacity={self.capacity})"


class SegmentSlotBank(SlotBank):
    """
    Same placement as SlotBank, but searches an ordered index of free
    segments (start -> length) instead of scanning every slot.
    Adjacent free segments are merged on release in O(log N); the search
    itself walks the segments in start order, O(number of free segments).
    """

    def __init__(self, capacity: int, index: int = 0) -> None:
        super().__init__(capacity, index)
        self.free_segments = SortedDict({0: capacity})

    def _find_window(self, size: int) -> int | None:
        for start, length in self.free_segments.items():
            if length >= size:
                return start
        return None

    def _occupy(self, start: int, end: int):
        # start is always the start of a free segment
        super()._occupy(start, end)
        length = self.free_segments.pop(start)
        used = end - start + 1
        if length > used:
            self.free_segments[end + 1] = length - used

    def _free(self, start: int, end: int):
        super()._free(start, end)
        length = end - start + 1

        if end + 1 in self.free_segments:
            length += self.free_segments.pop(end + 1)

        index = self.free_segments.bisect_left(start)
        if index > 0:
            left_start, left_length = self.free_segments.peekitem(index - 1)
            if left_start + left_length == start:
                self.free_segments[left_start] = left_length + length
                return
        self.free_segments[start] = length

    def largest_free_run(self) -> int:
        with self.lock:
            return max(self.free_segments.values(), default=0)


def make_bank(capacity: int, index: int = 0, strategy: BankStrategy = BankStrategy.SCAN) -> SlotBank:
    if strategy == BankStrategy.SEGMENT:
        return SegmentSlotBank(capacity, index)
    return SlotBank(capacity, index)


def _place(bank: SlotBank, requester_id, size: int) -> AllocationHandle:
    handle = bank.try_allocate(requester_id, ResourceUnit(size))
    assert handle is not None
    return handle


def test_first_fit_takes_earliest_window():
    for strategy in BankStrategy:
        bank = make_bank(10, strategy=strategy)
        assert _place(bank, "a", 3) == AllocationHandle(0, 0, 2)

        handle = bank.try_allocate("b", ResourceUnit(3))
        assert handle == AllocationHandle(0, 3, 5), strategy
        assert bank.slots()[:6] == [SlotState.OCCUPIED] * 6
        assert bank.is_consistent()


def test_first_fit_not_best_fit():
    for strategy in BankStrategy:
        bank = make_bank(10, strategy=strategy)
        _place(bank, "a", 1)    # [0]
        _place(bank, "b", 4)    # [1, 4]
        _place(bank, "c", 1)    # [5]
        _place(bank, "d", 2)    # [6, 7]
        _place(bank, "e", 2)    # [8, 9]
        assert bank.release("b")        # free run of 4 at [1, 4]
        assert bank.release("d")        # free run of 2 at [6, 7]

        # [6, 7] is an exact fit but the earliest window wins
        handle = bank.try_allocate("f", ResourceUnit(2))
        assert handle == AllocationHandle(0, 1, 2), strategy
        assert bank.is_consistent()


def test_allocation_failure_leaves_no_trace():
    for strategy in BankStrategy:
        bank = make_bank(5, strategy=strategy)
        _place(bank, "a", 2)
        _place(bank, "b", 1)
        assert bank.release("a")
        before = bank.slots()

        assert bank.try_allocate("c", ResourceUnit(3)) is None   # runs of 2 and 2
        assert bank.try_allocate("c", ResourceUnit(6)) is None   # larger than the bank
        assert bank.slots() == before
        assert not bank.contains("c")
        assert bank.is_consistent()


def test_release_is_exact_and_idempotent():
    for strategy in BankStrategy:
        bank = make_bank(6, strategy=strategy)
        _place(bank, "a", 2)
        _place(bank, "b", 2)
        _place(bank, "c", 2)

        assert bank.release("b")
        assert bank.slots() == [
            SlotState.OCCUPIED, SlotState.OCCUPIED,
            SlotState.FREE, SlotState.FREE,
            SlotState.OCCUPIED, SlotState.OCCUPIED,
        ]
        assert bank.handle_of("a") == AllocationHandle(0, 0, 1)
        assert bank.handle_of("c") == AllocationHandle(0, 4, 5)

        assert not bank.release("b")
        assert not bank.release("never-parked")
        assert bank.free_count() == 2
        assert bank.is_consistent()


def test_double_allocate_same_identity_rejected():
    bank = SlotBank(4)
    _place(bank, "a", 1)
    try:
        bank.try_allocate("a", ResourceUnit(1))
    except InvalidRequest:
        pass
    else:
        assert False, "second handle for the same identity should be rejected"
    assert bank.free_count() == 3


def test_invalid_capacity():
    for capacity in (0, -3, 2.5):
        try:
            SlotBank(capacity)
        except InvalidRequest:
            continue
        assert False, f"capacity {capacity!r} should be rejected"


def test_segments_merge_on_release():
    bank = SegmentSlotBank(8)
    for name in "abcd":
        _place(bank, name, 2)
    assert dict(bank.free_segments) == {}

    assert bank.release("b")
    assert bank.release("d")
    assert dict(bank.free_segments) == {2: 2, 6: 2}

    assert bank.release("c")    # merges with both neighbours
    assert dict(bank.free_segments) == {2: 6}
    assert bank.largest_free_run() == 6

    assert bank.release("a")
    assert dict(bank.free_segments) == {0: 8}
    assert bank.is_consistent()


def test_segment_bank_matches_scan_bank():
    import random

    rng = random.Random(7)
    scan, segment = SlotBank(32), SegmentSlotBank(32)
    active: list[int] = []
    for step in range(500):
        if active and rng.random() < 0.45:
            requester_id = active.pop(rng.randrange(len(active)))
            assert scan.release(requester_id) == segment.release(requester_id)
        else:
            unit = ResourceUnit(rng.randint(1, 6))
            placed = scan.try_allocate(step, unit)
            assert placed == segment.try_allocate(step, unit), step
            if placed is not None:
                active.append(step)
        assert scan.slots() == segment.slots()
        assert scan.largest_free_run() == segment.largest_free_run()
    assert scan.is_consistent() and segment.is_consistent()


def test_concurrent_allocations_never_overlap():
    from concurrent.futures import ThreadPoolExecutor

    for strategy in BankStrategy:
        bank = make_bank(64, strategy=strategy)

        def churn(worker: int):
            placed = 0
            for i in range(200):
                requester_id = (worker, i)
                if bank.try_allocate(requester_id, ResourceUnit(1 + i % 3)) is not None:
                    placed += 1
                    if i % 2 == 0:
                        bank.release(requester_id)
            return placed

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(churn, range(8)))

        assert sum(results) > 0
        assert bank.is_consistent(), strategy


if __name__ == "__main__":
    test_first_fit_takes_earliest_window()
    test_first_fit_not_best_fit()
    test_allocation_failure_leaves_no_trace()
    test_release_is_exact_and_idempotent()
    test_double_allocate_same_identity_rejected()
    test_invalid_capacity()
    test_segments_merge_on_release()
    test_segment_bank_matches_scan_bank()
    test_concurrent_allocations_never_overlap()
