# An ordered collection of slot banks (a garage of floors).
#
# allocate(requester_id, unit) -> AllocationHandle | None
#   tries every bank in ascending index order, first success wins;
#   an identity already holding slots on any bank is rejected
# release(requester_id) -> bool
#   frees the handle on whichever bank owns it
#
# No lock spans more than one bank: each bank call is serialized by that bank.
import logging

from slot_allocator.models import AllocationHandle, InvalidRequest, RequesterId, ResourceUnit
from slot_allocator.slot_bank import BankStrategy, SlotBank, SlotState, make_bank

logger = logging.getLogger(__name__)


class BankGroup:
    def __init__(self, banks: list[SlotBank]) -> None:
        if not banks:
            raise ValueError("a bank group needs at least one bank")
        self.banks = list(banks)

    @classmethod
    def uniform(cls, num_banks: int, slots_per_bank: int, strategy: BankStrategy = BankStrategy.SCAN) -> "BankGroup":
        return cls.from_sizes([slots_per_bank] * num_banks, strategy)

    @classmethod
    def from_sizes(cls, sizes: list[int] | tuple[int, ...], strategy: BankStrategy = BankStrategy.SCAN) -> "BankGroup":
        return cls([make_bank(size, index, strategy) for index, size in enumerate(sizes)])

    def allocate(self, requester_id: RequesterId, unit: ResourceUnit) -> AllocationHandle | None:
        if self.contains(requester_id):
            raise InvalidRequest(f"{requester_id!r} already holds slots in this bank group")
        for bank in self.banks:
            handle = bank.try_allocate(requester_id, unit)
            if handle is not None:
                return handle

        logger.debug("no bank has %d contiguous free slots for %r", unit.size, requester_id)
        return None

    def release(self, requester_id: RequesterId) -> bool:
        for bank in self.banks:
            if bank.contains(requester_id):
                return bank.release(requester_id)
        return False

    def contains(self, requester_id: RequesterId) -> bool:
        return any(bank.contains(requester_id) for bank in self.banks)

    def locate(self, requester_id: RequesterId) -> AllocationHandle | None:
        for bank in self.banks:
            handle = bank.handle_of(requester_id)
            if handle is not None:
                return handle
        return None

    def occupancy(self) -> list[list[SlotState]]:
        return [bank.slots() for bank in self.banks]

    def free_count(self) -> int:
        return sum(bank.free_count() for bank in self.banks)

    def capacity(self) -> int:
        return sum(bank.capacity for bank in self.banks)

    def is_consistent(self) -> bool:
        """
        Every bank satisfies its own invariant and no identity is held
        by more than one bank.
        """
        seen: set[RequesterId] = set()
        for bank in self.banks:
            if not bank.is_consistent():
                return False
            with bank.lock:
                held = set(bank.handles)
            if seen & held:
                return False
            seen |= held
        return True

    def __len__(self) -> int:
        return len(self.banks)

    def __iter__(self):
        return iter(self.banks)


def test_falls_back_to_next_bank():
    for strategy in BankStrategy:
        group = BankGroup.uniform(2, 2, strategy)
        assert group.allocate("a", ResourceUnit(2)) == AllocationHandle(0, 0, 1)
        assert group.allocate("b", ResourceUnit(1)) == AllocationHandle(1, 0, 0)
        assert group.allocate("c", ResourceUnit(1)) == AllocationHandle(1, 1, 1)

        before = group.occupancy()
        assert group.allocate("d", ResourceUnit(1)) is None
        assert group.occupancy() == before
        assert not group.contains("d")
        assert group.is_consistent()


def test_prefers_lowest_bank_with_room():
    group = BankGroup.from_sizes([2, 4, 4])
    assert group.allocate("a", ResourceUnit(3)).bank_index == 1
    assert group.allocate("b", ResourceUnit(1)).bank_index == 0
    assert group.allocate("c", ResourceUnit(1)).bank_index == 0
    assert group.allocate("d", ResourceUnit(1)).bank_index == 1
    assert group.allocate("e", ResourceUnit(4)).bank_index == 2


def test_no_single_bank_large_enough():
    group = BankGroup.uniform(3, 2)
    assert group.allocate("truck", ResourceUnit(3)) is None
    assert group.free_count() == group.capacity() == 6


def test_release_finds_owning_bank():
    group = BankGroup.uniform(3, 2)
    group.allocate("a", ResourceUnit(2))
    group.allocate("b", ResourceUnit(2))
    assert group.locate("b") == AllocationHandle(1, 0, 1)

    assert group.release("b")
    assert group.locate("b") is None
    assert group.occupancy() == [
        [SlotState.OCCUPIED, SlotState.OCCUPIED],
        [SlotState.FREE, SlotState.FREE],
        [SlotState.FREE, SlotState.FREE],
    ]
    assert not group.release("b")
    assert not group.release("unknown")


def test_placement_is_deterministic():
    requests = [("a", 1), ("b", 2), ("c", 1), ("d", 3), ("e", 1)]
    placements = []
    for _ in range(3):
        group = BankGroup.from_sizes([3, 3, 3])
        placements.append([group.allocate(rid, ResourceUnit(size)) for rid, size in requests])
    assert placements[0] == placements[1] == placements[2]


def test_duplicate_identity_across_banks_rejected():
    group = BankGroup.from_sizes([1, 2])
    group.allocate("blocker", ResourceUnit(1))
    assert group.allocate("a", ResourceUnit(1)) == AllocationHandle(1, 0, 0)
    assert group.release("blocker")

    try:
        group.allocate("a", ResourceUnit(1))
    except InvalidRequest:
        pass
    else:
        assert False, "second handle on another bank should be rejected"

    assert group.is_consistent()
    assert group.locate("a") == AllocationHandle(1, 0, 0)
    assert group.release("a")
    assert group.free_count() == group.capacity() == 3


def test_empty_group_rejected():
    try:
        BankGroup([])
    except ValueError:
        pass
    else:
        assert False, "empty bank group should be rejected"


if __name__ == "__main__":
    test_falls_back_to_next_bank()
    test_prefers_lowest_bank_with_room()
    test_no_single_bank_large_enough()
    test_release_finds_owning_bank()
    test_placement_is_deterministic()
    test_duplicate_identity_across_banks_rejected()
    test_empty_group_rejected()
