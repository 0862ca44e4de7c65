# Allocation service: park / vacate requesters in a bank group and bill them.
#
# park(requester, now=None) -> ParkResult
#   UNALLOCATED -> PARKED, or CAPACITY_UNAVAILABLE / INVALID_TRANSITION
# vacate(requester, now=None) -> VacateResult
#   PARKED -> UNALLOCATED and charge the requester, or INVALID_TRANSITION
#
# A requester holds at most one allocation at a time. Failures leave the
# banks, the ledger and the requester's balance exactly as they were.
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Callable

from slot_allocator.bank_group import BankGroup
from slot_allocator.config import GarageConfig
from slot_allocator.ledger import Duration, MeteringLedger, RoundingPolicy
from slot_allocator.models import AllocationHandle, Driver, RequesterId, ResourceUnit, VehicleType
from slot_allocator.slot_bank import BankStrategy

logger = logging.getLogger(__name__)


class AllocationStatus(Enum):
    OK = "ok"
    CAPACITY_UNAVAILABLE = "capacity_unavailable"
    INVALID_TRANSITION = "invalid_transition"


class RequesterState(Enum):
    UNALLOCATED = 1
    PARKED = 2


@dataclass(frozen=True)
class ParkResult:
    status: AllocationStatus
    handle: AllocationHandle | None = None

    def __bool__(self) -> bool:
        return self.status == AllocationStatus.OK


@dataclass(frozen=True)
class VacateResult:
    status: AllocationStatus
    charge: int | float = 0
    duration: Duration | None = None

    def __bool__(self) -> bool:
        return self.status == AllocationStatus.OK


class AllocationService:
    def __init__(self,
        banks: BankGroup,
        hourly_rate: int | float,
        rounding: RoundingPolicy = RoundingPolicy.CEIL_HOURS,
        clock: Callable[[], datetime] = datetime.now,
        num_locks: int = 128,
        bill_per_slot: bool = False,
    ) -> None:
        if hourly_rate < 0:
            raise ValueError(f"hourly rate must not be negative, got {hourly_rate}")
        self.banks = banks
        self.hourly_rate = hourly_rate
        self.bill_per_slot = bill_per_slot
        self.clock = clock
        self.ledger = MeteringLedger(rounding)

        self.num_locks = num_locks
        self.requester_locks = [Lock() for _ in range(num_locks)]

    @classmethod
    def from_config(cls, config: GarageConfig, clock: Callable[[], datetime] = datetime.now) -> "AllocationService":
        return cls(
            BankGroup.from_sizes(config.bank_sizes, config.strategy),
            hourly_rate=config.hourly_rate,
            rounding=config.rounding,
            clock=clock,
            num_locks=config.num_locks,
            bill_per_slot=config.bill_per_slot,
        )

    def _get_requester_lock(self, requester_id: RequesterId):
        index = hash(requester_id) % self.num_locks
        return self.requester_locks[index]

    def _charge_for(self, driver: Driver, duration: Duration) -> int | float:
        charge = duration.units * self.hourly_rate
        if self.bill_per_slot:
            charge *= driver.unit.size
        return charge

    def park(self, driver: Driver, now: datetime | None = None) -> ParkResult:
        """
        Place the driver's vehicle in the first bank with a long enough
        run of free slots and start metering it.
        """
        with self._get_requester_lock(driver.id):
            if driver.id in self.ledger or self.banks.contains(driver.id):
                logger.info("%r is already parked", driver.id)
                return ParkResult(AllocationStatus.INVALID_TRANSITION)

            handle = self.banks.allocate(driver.id, driver.unit)
            if handle is None:
                logger.info("no room for %r (size %d)", driver.id, driver.unit.size)
                return ParkResult(AllocationStatus.CAPACITY_UNAVAILABLE)

            self.ledger.begin(driver.id, now or self.clock())

        logger.info("parked %r on bank %d slots [%d, %d]",
                    driver.id, handle.bank_index, handle.start_slot, handle.end_slot)
        return ParkResult(AllocationStatus.OK, handle)

    def vacate(self, driver: Driver, now: datetime | None = None) -> VacateResult:
        """
        Stop metering the driver, charge them for the elapsed time and
        free their slots. Vacating a driver that is not parked is a no-op.
        """
        with self._get_requester_lock(driver.id):
            duration = self.ledger.end(driver.id, now or self.clock())
            if duration is None:
                logger.info("%r has nothing to vacate", driver.id)
                return VacateResult(AllocationStatus.INVALID_TRANSITION)

            charge = self._charge_for(driver, duration)
            driver.charge(charge)
            self.banks.release(driver.id)

        logger.info("vacated %r after %s, charged %s", driver.id, duration.elapsed, charge)
        return VacateResult(AllocationStatus.OK, charge, duration)

    def state_of(self, requester_id: RequesterId) -> RequesterState:
        with self._get_requester_lock(requester_id):
            if requester_id in self.ledger:
                return RequesterState.PARKED
            return RequesterState.UNALLOCATED

    def locate(self, requester_id: RequesterId) -> AllocationHandle | None:
        return self.banks.locate(requester_id)

    def active_count(self) -> int:
        return len(self.ledger)


def _service(sizes: list[int], rate: int = 5, **kwargs) -> AllocationService:
    return AllocationService(BankGroup.from_sizes(sizes), hourly_rate=rate, **kwargs)


def _at(hour: int) -> datetime:
    return datetime(2024, 1, 1, hour)


def test_end_to_end():
    service = _service([2, 2, 2])
    drivers = [Driver(i, unit) for i, unit in enumerate(
        [ResourceUnit(1), ResourceUnit(2), ResourceUnit(3)], start=1
    )]

    first, second, third = (service.park(driver, _at(9)) for driver in drivers)
    assert first and first.handle == AllocationHandle(0, 0, 0)
    assert second and second.handle == AllocationHandle(1, 0, 1)
    assert not third and third.status == AllocationStatus.CAPACITY_UNAVAILABLE

    assert service.vacate(drivers[0], _at(10))
    assert service.vacate(drivers[1], _at(10))
    result = service.vacate(drivers[2], _at(10))
    assert not result and result.status == AllocationStatus.INVALID_TRANSITION
    assert drivers[2].balance_due == 0
    assert service.banks.free_count() == 6


def test_billing():
    service = _service([4], rate=5, rounding=RoundingPolicy.CEIL_HOURS)
    driver = Driver("d", ResourceUnit(1))
    service.park(driver, _at(9))
    result = service.vacate(driver, _at(12))
    assert result.charge == 15
    assert result.duration.units == 3
    assert driver.balance_due == 15

    # same hour bills the minimum of one unit
    service.park(driver, _at(9))
    assert service.vacate(driver, _at(9)).charge == 5
    assert driver.balance_due == 20


def test_billing_clock_hours():
    service = _service([4], rate=5, rounding=RoundingPolicy.CLOCK_HOURS)
    driver = Driver("d", ResourceUnit(2))
    service.park(driver, datetime(2024, 1, 1, 9, 45))
    assert service.vacate(driver, datetime(2024, 1, 1, 12, 5)).charge == 15


def test_bill_per_slot():
    service = _service([4], rate=5, bill_per_slot=True)
    driver = Driver("limo", ResourceUnit(2))
    service.park(driver, _at(9))
    assert service.vacate(driver, _at(12)).charge == 30


def test_double_park_rejected():
    service = _service([4])
    driver = Driver("d", ResourceUnit(1))
    assert service.park(driver, _at(9))
    before = service.banks.occupancy()

    result = service.park(driver, _at(10))
    assert result.status == AllocationStatus.INVALID_TRANSITION
    assert service.banks.occupancy() == before
    assert service.ledger.started_at("d") == _at(9)
    assert service.state_of("d") == RequesterState.PARKED


def test_vacate_is_idempotent():
    service = _service([4])
    driver = Driver("d", ResourceUnit(2))
    service.park(driver, _at(9))
    service.park(Driver("other", ResourceUnit(1)), _at(9))

    assert service.vacate(driver, _at(11)).charge == 10
    result = service.vacate(driver, _at(12))
    assert result.status == AllocationStatus.INVALID_TRANSITION
    assert result.charge == 0
    assert driver.balance_due == 10
    assert service.locate("other") == AllocationHandle(0, 2, 2)
    assert service.state_of("d") == RequesterState.UNALLOCATED


def test_capacity_unavailable_leaves_no_state():
    service = _service([2, 2])
    service.park(Driver("a", ResourceUnit(2)), _at(9))
    service.park(Driver("b", ResourceUnit(2)), _at(9))
    before = service.banks.occupancy()

    late = Driver("c", ResourceUnit(1))
    result = service.park(late, _at(10))
    assert result.status == AllocationStatus.CAPACITY_UNAVAILABLE
    assert service.banks.occupancy() == before
    assert "c" not in service.ledger
    assert service.state_of("c") == RequesterState.UNALLOCATED
    assert service.active_count() == 2


def test_reclaimed_slots_are_reused():
    service = _service([3])
    a, b = Driver("a", ResourceUnit(2)), Driver("b", ResourceUnit(2))
    assert service.park(a, _at(9))
    assert not service.park(b, _at(9))
    assert service.vacate(a, _at(10))
    assert service.park(b, _at(10)).handle == AllocationHandle(0, 0, 1)


def test_uses_injected_clock():
    times = iter([_at(8), _at(11)])
    service = _service([2], clock=lambda: next(times))
    driver = Driver("d", ResourceUnit(1))
    service.park(driver)
    assert service.vacate(driver).charge == 15


def test_from_config():
    config = GarageConfig(bank_sizes=[2, 2, 2], hourly_rate=5, strategy=BankStrategy.SEGMENT)
    service = AllocationService.from_config(config)
    assert len(service.banks) == 3
    assert service.park(Driver.for_vehicle(1, VehicleType.LIMO), _at(9)).handle == AllocationHandle(0, 0, 1)
    assert not service.park(Driver.for_vehicle(2, VehicleType.SEMI_TRUCK), _at(9))


def test_concurrent_park_vacate():
    from concurrent.futures import ThreadPoolExecutor

    service = _service([16, 16, 16], rate=1, num_locks=8)
    drivers = [Driver(i, ResourceUnit(1 + i % 4)) for i in range(64)]

    def run(driver: Driver):
        parked = 0
        for _ in range(20):
            if service.park(driver, _at(9)):
                parked += 1
                service.park(driver, _at(9))     # double park, rejected
                assert service.vacate(driver, _at(10))
                assert not service.vacate(driver, _at(10))
        return parked

    with ThreadPoolExecutor(max_workers=8) as pool:
        parked = list(pool.map(run, drivers))

    assert service.active_count() == 0
    assert service.banks.free_count() == 48
    assert service.banks.is_consistent()
    for driver, times in zip(drivers, parked):
        assert driver.balance_due == times


def test_concurrent_park_same_driver():
    from concurrent.futures import ThreadPoolExecutor

    service = _service([8, 8])
    driver = Driver("shared", ResourceUnit(1))
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: service.park(driver, _at(9)), range(32)))

    assert sum(1 for result in results if result) == 1
    assert service.banks.free_count() == 15
    assert service.banks.is_consistent()


if __name__ == "__main__":
    test_end_to_end()
    test_billing()
    test_billing_clock_hours()
    test_bill_per_slot()
    test_double_park_rejected()
    test_vacate_is_idempotent()
    test_capacity_unavailable_leaves_no_state()
    test_reclaimed_slots_are_reused()
    test_uses_injected_clock()
    test_from_config()
    test_concurrent_park_vacate()
    test_concurrent_park_same_driver()
