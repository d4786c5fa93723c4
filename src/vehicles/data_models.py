from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional
from uuid import uuid4

from pydantic import AfterValidator, TypeAdapter


WriteOffCategory = Literal["A", "B", "C", "D", "S", "N", "none", "unknown"]
MotResult = Literal["PASSED", "FAILED", "REFUSED"]
CheckStatus = Literal["success", "partial", "failed"]
ValuationConfidence = Literal["low", "medium", "high"]
ListingStatus = Literal["pending", "active", "expired", "cancelled"]
SellerType = Literal["private", "trade"]


def _assume_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


# stored and legacy documents may carry timestamps without an offset
UtcDatetime = Annotated[datetime, AfterValidator(_assume_utc)]


@dataclass
class RunningCosts:
    urban_mpg: Optional[float] = None
    extra_urban_mpg: Optional[float] = None
    combined_mpg: Optional[float] = None
    co2_emissions: Optional[float] = None
    insurance_group: Optional[str] = None
    annual_tax: Optional[float] = None

    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in self.__dataclass_fields__)


@dataclass
class PlateChange:
    date: Optional[UtcDatetime] = None
    previous_vrm: Optional[str] = None
    new_vrm: Optional[str] = None


@dataclass
class ColourChange:
    date: Optional[UtcDatetime] = None
    previous_colour: Optional[str] = None
    new_colour: Optional[str] = None


@dataclass
class WriteOffDetails:
    date: Optional[UtcDatetime] = None
    description: Optional[str] = None


@dataclass
class StolenDetails:
    reported_date: Optional[UtcDatetime] = None
    status: Optional[str] = None


@dataclass
class FinanceDetails:
    lender: Optional[str] = None
    amount: Optional[float] = None
    agreement_type: Optional[str] = None


@dataclass
class AccidentDetails:
    count: int = 0
    severity: str = "unknown"
    dates: list[UtcDatetime] = field(default_factory=list)


@dataclass
class HistoryFacts:
    previous_keepers: Optional[int] = None
    v5c_certificate_count: int = 0
    plate_changes: list[PlateChange] = field(default_factory=list)
    colour_changes: list[ColourChange] = field(default_factory=list)
    write_off_category: WriteOffCategory = "unknown"
    write_off: Optional[WriteOffDetails] = None
    stolen: bool = False
    stolen_details: Optional[StolenDetails] = None
    outstanding_finance: bool = False
    finance_details: Optional[FinanceDetails] = None
    accident: bool = False
    accident_details: Optional[AccidentDetails] = None
    scrapped: bool = False
    imported: bool = False
    exported: bool = False


@dataclass
class MotDefect:
    type: str = "ADVISORY"
    text: str = ""
    dangerous: bool = False


@dataclass
class MotTest:
    test_date: UtcDatetime
    result: MotResult
    expiry_date: Optional[UtcDatetime] = None
    odometer_value: Optional[int] = None
    odometer_unit: Literal["mi", "km"] = "mi"
    test_number: str = ""
    defects: list[MotDefect] = field(default_factory=list)

    @property
    def advisories(self) -> list[str]:
        return [d.text for d in self.defects if d.type == "ADVISORY" and d.text.strip()]

    @property
    def odometer_miles(self) -> Optional[int]:
        if self.odometer_value is None:
            return None
        if self.odometer_unit == "km":
            return int(round(self.odometer_value / 1.609344))
        return self.odometer_value


# Provider snapshots: one per successful call, already in canonical form.


@dataclass
class HistorySnapshot:
    vrm: str
    make: Optional[str] = None
    model: Optional[str] = None
    colour: Optional[str] = None
    fuel_type: Optional[str] = None
    year: Optional[int] = None
    engine_capacity: Optional[int] = None
    facts: HistoryFacts = field(default_factory=HistoryFacts)
    provider: str = "CheckCarDetails"
    test_mode: bool = False


@dataclass
class SpecsSnapshot:
    vrm: str
    make: Optional[str] = None
    model: Optional[str] = None
    variant: Optional[str] = None
    year: Optional[int] = None
    body_type: Optional[str] = None
    fuel_type: Optional[str] = None
    transmission: Optional[str] = None
    engine_capacity: Optional[int] = None
    colour: Optional[str] = None
    doors: Optional[int] = None
    seats: Optional[int] = None
    emission_class: Optional[str] = None
    running_costs: RunningCosts = field(default_factory=RunningCosts)


@dataclass
class ValuationSnapshot:
    mileage: int
    private_price: Optional[float] = None
    dealer_price: Optional[float] = None
    part_exchange_price: Optional[float] = None
    confidence: ValuationConfidence = "medium"
    valued_at: Optional[UtcDatetime] = None
    partial: bool = False


@dataclass
class VehicleRecord:
    vrm: str
    id: str = field(default_factory=lambda: str(uuid4()))
    version: int = 0
    make: Optional[str] = None
    model: Optional[str] = None
    variant: Optional[str] = None
    year: Optional[int] = None
    body_type: Optional[str] = None
    fuel_type: Optional[str] = None
    transmission: Optional[str] = None
    engine_capacity: Optional[int] = None
    colour: Optional[str] = None
    doors: Optional[int] = None
    seats: Optional[int] = None
    emission_class: Optional[str] = None
    running_costs: RunningCosts = field(default_factory=RunningCosts)
    history: Optional[HistoryFacts] = None
    mot_tests: list[MotTest] = field(default_factory=list)
    mot_status: Optional[str] = None
    mot_expiry: Optional[UtcDatetime] = None
    valuation: Optional[ValuationSnapshot] = None
    checked_at: Optional[UtcDatetime] = None
    check_status: CheckStatus = "failed"
    provider: str = "CheckCarDetails"
    test_mode: bool = False

    @property
    def latest_mot(self) -> Optional[MotTest]:
        return self.mot_tests[0] if self.mot_tests else None


@dataclass
class SellerContact:
    type: SellerType = "private"
    phone: Optional[str] = None
    email: Optional[str] = None
    postcode: Optional[str] = None


@dataclass
class AdvertPackage:
    package_id: str
    name: str
    duration_days: int
    price: float
    expires_at: Optional[UtcDatetime] = None


@dataclass
class ListingRecord:
    advert_id: str = field(default_factory=lambda: str(uuid4()))
    vrm: Optional[str] = None
    vehicle_record_id: Optional[str] = None
    price: Optional[float] = None
    mileage: Optional[int] = None
    description: str = ""
    images: list[str] = field(default_factory=list)
    seller_contact: SellerContact = field(default_factory=SellerContact)
    package: Optional[AdvertPackage] = None
    status: ListingStatus = "pending"
    published_at: Optional[UtcDatetime] = None
    make: Optional[str] = None
    model: Optional[str] = None
    variant: Optional[str] = None
    year: Optional[int] = None
    body_type: Optional[str] = None
    fuel_type: Optional[str] = None
    transmission: Optional[str] = None
    engine_capacity: Optional[int] = None
    colour: Optional[str] = None
    doors: Optional[int] = None
    seats: Optional[int] = None
    running_costs: RunningCosts = field(default_factory=RunningCosts)
    mot_status: Optional[str] = None
    mot_expiry: Optional[UtcDatetime] = None
    valuation: Optional[ValuationSnapshot] = None
    history_check_status: Optional[str] = None
    history_checked_at: Optional[UtcDatetime] = None
    locked_fields: list[str] = field(default_factory=list)
    created_at: Optional[UtcDatetime] = None
    updated_at: Optional[UtcDatetime] = None

    def is_locked(self, name: str) -> bool:
        return name in self.locked_fields


_vehicle_adapter = TypeAdapter(VehicleRecord)
_listing_adapter = TypeAdapter(ListingRecord)


def vehicle_to_document(record: VehicleRecord) -> dict[str, Any]:
    return _vehicle_adapter.dump_python(record, mode="json")


def vehicle_from_document(doc: dict[str, Any]) -> VehicleRecord:
    return _vehicle_adapter.validate_python(doc)


def listing_to_document(listing: ListingRecord) -> dict[str, Any]:
    return _listing_adapter.dump_python(listing, mode="json")


def listing_from_document(doc: dict[str, Any]) -> ListingRecord:
    return _listing_adapter.validate_python(doc)
