from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from slot_allocator.ledger import RoundingPolicy
from slot_allocator.slot_bank import BankStrategy


@dataclass(frozen=True)
class GarageConfig:
    """
    Construction-time settings for an allocation service.
    Fixed for the lifetime of the service built from it.
    """
    bank_sizes: tuple[int, ...] = ()
    hourly_rate: int | float = 0
    rounding: RoundingPolicy = RoundingPolicy.CEIL_HOURS
    strategy: BankStrategy = BankStrategy.SCAN
    num_locks: int = 128
    bill_per_slot: bool = False

    def __post_init__(self):
        object.__setattr__(self, "bank_sizes", tuple(self.bank_sizes))
        if not self.bank_sizes:
            raise ValueError("missing field: bank_sizes")
        for size in self.bank_sizes:
            if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
                raise ValueError(f"invalid bank size: {size!r}")
        if isinstance(self.hourly_rate, bool) or not isinstance(self.hourly_rate, (int, float)):
            raise ValueError(f"invalid hourly_rate: {self.hourly_rate!r}")
        if self.hourly_rate < 0:
            raise ValueError(f"invalid hourly_rate: {self.hourly_rate!r}")
        if self.num_locks <= 0:
            raise ValueError(f"invalid num_locks: {self.num_locks!r}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GarageConfig":
        if "bank_sizes" in data:
            bank_sizes = tuple(data["bank_sizes"])
        elif "num_banks" in data and "slots_per_bank" in data:
            bank_sizes = (data["slots_per_bank"],) * data["num_banks"]
        else:
            raise ValueError("missing field: bank_sizes (or num_banks and slots_per_bank)")

        if "hourly_rate" not in data:
            raise ValueError("missing field: hourly_rate")

        try:
            rounding = RoundingPolicy(data.get("rounding", RoundingPolicy.CEIL_HOURS.value))
            strategy = BankStrategy(data.get("strategy", BankStrategy.SCAN.value))
        except ValueError as e:
            raise ValueError(f"invalid config: {e}") from e

        return cls(
            bank_sizes=bank_sizes,
            hourly_rate=data["hourly_rate"],
            rounding=rounding,
            strategy=strategy,
            num_locks=data.get("num_locks", 128),
            bill_per_slot=bool(data.get("bill_per_slot", False)),
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "GarageConfig":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"invalid config: expected a mapping in {path}")
        return cls.from_dict(data)


def test_from_dict_uniform():
    config = GarageConfig.from_dict({"num_banks": 3, "slots_per_bank": 2, "hourly_rate": 5})
    assert config.bank_sizes == (2, 2, 2)
    assert config.hourly_rate == 5
    assert config.rounding == RoundingPolicy.CEIL_HOURS
    assert config.strategy == BankStrategy.SCAN
    assert not config.bill_per_slot


def test_from_dict_explicit():
    config = GarageConfig.from_dict({
        "bank_sizes": [4, 2],
        "hourly_rate": 2.5,
        "rounding": "clock_hours",
        "strategy": "segment",
        "num_locks": 16,
        "bill_per_slot": True,
    })
    assert config.bank_sizes == (4, 2)
    assert config.rounding == RoundingPolicy.CLOCK_HOURS
    assert config.strategy == BankStrategy.SEGMENT
    assert config.num_locks == 16
    assert config.bill_per_slot


def test_invalid_configs():
    tcs = [
        {"hourly_rate": 5},
        {"bank_sizes": [2, 2]},
        {"bank_sizes": [], "hourly_rate": 5},
        {"bank_sizes": [2, 0], "hourly_rate": 5},
        {"bank_sizes": [2], "hourly_rate": -1},
        {"bank_sizes": [2], "hourly_rate": 5, "rounding": "weekly"},
        {"bank_sizes": [2], "hourly_rate": 5, "strategy": "best_fit"},
        {"bank_sizes": [2], "hourly_rate": 5, "num_locks": 0},
    ]
    for data in tcs:
        try:
            GarageConfig.from_dict(data)
        except ValueError:
            continue
        assert False, f"{data} should be rejected"


def test_from_yaml(tmp_path):
    path = tmp_path / "garage.yaml"
    path.write_text(
        "num_banks: 3\n"
        "slots_per_bank: 2\n"
        "hourly_rate: 5\n"
        "rounding: clock_hours\n"
    )
    config = GarageConfig.from_yaml(path)
    assert config.bank_sizes == (2, 2, 2)
    assert config.rounding == RoundingPolicy.CLOCK_HOURS


def test_from_yaml_missing_file(tmp_path):
    try:
        GarageConfig.from_yaml(tmp_path / "absent.yaml")
    except FileNotFoundError:
        pass
    else:
        assert False, "missing config file should raise"


def test_config_is_hashable():
    config = GarageConfig(bank_sizes=[2, 2], hourly_rate=5)
    assert config.bank_sizes == (2, 2)
    assert hash(config) == hash(GarageConfig(bank_sizes=(2, 2), hourly_rate=5))
    assert {config: "garage"}[GarageConfig.from_dict({"bank_sizes": [2, 2], "hourly_rate": 5})] == "garage"


if __name__ == "__main__":
    test_from_dict_uniform()
    test_from_dict_explicit()
    test_invalid_configs()
    test_config_is_hashable()
