from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Hashable

RequesterId = Hashable


class InvalidRequest(ValueError):
    """Malformed input, e.g. a non-positive footprint."""


class VehicleType(Enum):
    CAR = 1
    LIMO = 2
    SEMI_TRUCK = 3

    @property
    def spot_size(self) -> int:
        return self.value


@dataclass(frozen=True)
class ResourceUnit:
    size: int

    def __post_init__(self):
        if isinstance(self.size, bool) or not isinstance(self.size, int):
            raise InvalidRequest(f"size must be an integer, got {self.size!r}")
        if self.size <= 0:
            raise InvalidRequest(f"size must be positive, got {self.size}")

    @classmethod
    def for_vehicle(cls, vehicle_type: VehicleType) -> "ResourceUnit":
        return cls(vehicle_type.spot_size)


@dataclass(frozen=True)
class AllocationHandle:
    bank_index: int
    start_slot: int
    end_slot: int   # inclusive

    @property
    def size(self) -> int:
        return self.end_slot - self.start_slot + 1

    def slots(self) -> range:
        return range(self.start_slot, self.end_slot + 1)


@dataclass
class Driver:
    id: RequesterId
    unit: ResourceUnit
    balance_due: int | float = 0
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    @classmethod
    def for_vehicle(cls, id: RequesterId, vehicle_type: VehicleType) -> "Driver":
        return cls(id, ResourceUnit.for_vehicle(vehicle_type))

    def charge(self, amount: int | float) -> int | float:
        """
        Add amount to the balance due and return the new balance.
        The only way the balance is ever changed.
        """
        with self._lock:
            self.balance_due += amount
            return self.balance_due


def test_resource_unit_rejects_non_positive_size():
    for size in (0, -1, -10):
        try:
            ResourceUnit(size)
        except InvalidRequest:
            continue
        assert False, f"size {size} should be rejected"


def test_resource_unit_rejects_non_integer_size():
    for size in (1.5, "2", True, None):
        try:
            ResourceUnit(size)
        except InvalidRequest:
            continue
        assert False, f"size {size!r} should be rejected"


def test_vehicle_footprints():
    assert ResourceUnit.for_vehicle(VehicleType.CAR).size == 1
    assert ResourceUnit.for_vehicle(VehicleType.LIMO).size == 2
    assert ResourceUnit.for_vehicle(VehicleType.SEMI_TRUCK).size == 3

    driver = Driver.for_vehicle(7, VehicleType.LIMO)
    assert driver.unit == ResourceUnit(2)
    assert driver.balance_due == 0


def test_handle_range():
    handle = AllocationHandle(bank_index=1, start_slot=3, end_slot=5)
    assert handle.size == 3
    assert list(handle.slots()) == [3, 4, 5]


def test_driver_charge_accumulates():
    driver = Driver(1, ResourceUnit(1))
    assert driver.charge(5) == 5
    assert driver.charge(10) == 15
    assert driver.balance_due == 15


if __name__ == "__main__":
    test_resource_unit_rejects_non_positive_size()
    test_resource_unit_rejects_non_integer_size()
    test_vehicle_footprints()
    test_handle_range()
    test_driver_charge_accumulates()
