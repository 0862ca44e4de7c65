# Three floors with two spots each, 5 per hour.
# A car (1 spot) and a limo (2 spots) fit, a semi truck (3 spots) never does.
import logging
import sys
from datetime import datetime, timedelta

from slot_allocator.config import GarageConfig
from slot_allocator.models import Driver, VehicleType
from slot_allocator.service import AllocationService, AllocationStatus

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = GarageConfig(bank_sizes=[2, 2, 2], hourly_rate=5)


def run(config: GarageConfig = DEFAULT_CONFIG, parked_at: datetime | None = None, hours: int = 3):
    parked_at = parked_at or datetime.now()
    left_at = parked_at + timedelta(hours=hours)
    service = AllocationService.from_config(config)

    drivers = [
        Driver.for_vehicle(1, VehicleType.CAR),
        Driver.for_vehicle(2, VehicleType.LIMO),
        Driver.for_vehicle(3, VehicleType.SEMI_TRUCK),
    ]

    parked = []
    for driver in drivers:
        result = service.park(driver, parked_at)
        logger.info("driver %s needs %d spot(s): parked=%s", driver.id, driver.unit.size, bool(result))
        parked.append(result)

    vacated = []
    for driver in drivers:
        result = service.vacate(driver, left_at)
        logger.info("driver %s leaves: vacated=%s, owes %s", driver.id, bool(result), driver.balance_due)
        vacated.append(result)

    return drivers, parked, vacated


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    argv = sys.argv[1:] if argv is None else argv
    config = GarageConfig.from_yaml(argv[0]) if argv else DEFAULT_CONFIG
    run(config)
    return 0


def test_demo_scenario():
    drivers, parked, vacated = run(parked_at=datetime(2024, 1, 1, 9), hours=3)

    assert [bool(result) for result in parked] == [True, True, False]
    assert parked[0].handle.bank_index == 0
    assert parked[1].handle.bank_index == 1
    assert parked[2].status == AllocationStatus.CAPACITY_UNAVAILABLE

    assert [bool(result) for result in vacated] == [True, True, False]
    assert [driver.balance_due for driver in drivers] == [15, 15, 0]


def test_demo_per_slot_billing():
    config = GarageConfig(bank_sizes=[2, 2, 2], hourly_rate=5, bill_per_slot=True)
    drivers, _, _ = run(config, parked_at=datetime(2024, 1, 1, 9), hours=3)
    assert [driver.balance_due for driver in drivers] == [15, 30, 0]


if __name__ == "__main__":
    sys.exit(main())
