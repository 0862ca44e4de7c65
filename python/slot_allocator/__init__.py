from slot_allocator.bank_group import BankGroup
from slot_allocator.config import GarageConfig
from slot_allocator.ledger import Duration, MeteringLedger, RoundingPolicy
from slot_allocator.models import AllocationHandle, Driver, InvalidRequest, ResourceUnit, VehicleType
from slot_allocator.service import (
    AllocationService,
    AllocationStatus,
    ParkResult,
    RequesterState,
    VacateResult,
)
from slot_allocator.slot_bank import BankStrategy, SegmentSlotBank, SlotBank, SlotState, make_bank

__all__ = [
    "AllocationHandle",
    "AllocationService",
    "AllocationStatus",
    "BankGroup",
    "BankStrategy",
    "Driver",
    "Duration",
    "GarageConfig",
    "InvalidRequest",
    "MeteringLedger",
    "ParkResult",
    "RequesterState",
    "ResourceUnit",
    "RoundingPolicy",
    "SegmentSlotBank",
    "SlotBank",
    "SlotState",
    "VacateResult",
    "VehicleType",
    "make_bank",
]
