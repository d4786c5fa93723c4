"""Per-provider payload mapping.

Every datapoint of the vehicle-data provider names the same concept
differently (``Colour`` vs ``colour``, ``DvlaMake`` vs ``ModelData.Make``,
``completedDate`` vs ``CompletedDate``).  All of that is resolved here, so the
merge rules in :mod:`vehicles.reconciliation` only ever see canonical
snapshots.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from vehicles.data_models import (
    AccidentDetails,
    ColourChange,
    FinanceDetails,
    HistoryFacts,
    HistorySnapshot,
    MotDefect,
    MotTest,
    PlateChange,
    RunningCosts,
    SpecsSnapshot,
    StolenDetails,
    ValuationSnapshot,
    WriteOffDetails,
)
from vehicles.errors import MalformedPayloadError

logger = logging.getLogger(__name__)

_DATE_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%dT%H:%M:%S",
    "%Y.%m.%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%Y.%m.%d",
    "%d/%m/%Y",
)

_WRITE_OFF_PATTERN = re.compile(r"\bCAT(?:EGORY)?\s*([ABCDSN])\b")

_MOT_RESULTS = {
    "PASSED": "PASSED",
    "PASS": "PASSED",
    "FAILED": "FAILED",
    "FAIL": "FAILED",
    "REFUSED": "REFUSED",
    "ABANDONED": "REFUSED",
    "ABORTED": "REFUSED",
}

_DEFECT_TYPES = {"ADVISORY", "MINOR", "MAJOR", "DANGEROUS", "FAIL", "PRS", "USER ENTERED"}


def first_present(*values: Any) -> Any:
    for value in values:
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def extract_number(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = re.sub(r"[^0-9.\-]", "", value)
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def extract_int(value: Any) -> Optional[int]:
    number = extract_number(value)
    return None if number is None else int(number)


def parse_date(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable provider date %r", value)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_fuel_type(fuel_type: Any) -> Optional[str]:
    if not isinstance(fuel_type, str) or not fuel_type.strip():
        return None
    normalized = fuel_type.lower().strip()
    if "plug-in" in normalized and "hybrid" in normalized:
        if "petrol" in normalized:
            return "Petrol Plug-in Hybrid"
        if "diesel" in normalized:
            return "Diesel Plug-in Hybrid"
        return "Plug-in Hybrid"
    if "hybrid" in normalized:
        if "petrol" in normalized or "gasoline" in normalized:
            return "Petrol Hybrid"
        if "diesel" in normalized:
            return "Diesel Hybrid"
        return "Hybrid"
    if "petrol" in normalized or "gasoline" in normalized:
        return "Petrol"
    if "diesel" in normalized:
        return "Diesel"
    if "electric" in normalized or normalized == "ev":
        return "Electric"
    return fuel_type.strip().capitalize()


def normalize_transmission(transmission: Any) -> Optional[str]:
    if not isinstance(transmission, str) or not transmission.strip():
        return None
    normalized = transmission.lower().strip()
    if "semi" in normalized or "cvt" in normalized or "dsg" in normalized:
        return "Semi-Automatic"
    if "manual" in normalized:
        return "Manual"
    if "auto" in normalized:
        return "Automatic"
    return transmission.strip().capitalize()


def _engine_cc(value: Any) -> Optional[int]:
    number = extract_number(value)
    if number is None or number <= 0:
        return None
    # some datapoints report litres
    if number < 20:
        return int(round(number * 1000))
    return int(round(number))


def write_off_category(record: dict[str, Any]) -> str:
    category = (_clean_str(record.get("category")) or "").upper()
    if category in {"A", "B", "C", "D", "S", "N"}:
        return category
    for text in (category, (_clean_str(record.get("status")) or "").upper()):
        match = _WRITE_OFF_PATTERN.search(text)
        if match:
            return match.group(1)
    return "unknown"


def _as_dict(payload: Any, service: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise MalformedPayloadError(
            f"Expected a JSON object from the {service} datapoint, got {type(payload).__name__}",
            service=service,
        )
    return payload


def _list_of_dicts(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


# ── History ────────────────────────────────────────────────────────


def _history_facts(registration: dict[str, Any], history: dict[str, Any]) -> HistoryFacts:
    keepers = first_present(
        history.get("NumberOfPreviousKeepers"),
        history.get("numberOfPreviousKeepers"),
        history.get("PreviousKeepers"),
    )
    plate_changes = [
        PlateChange(
            date=parse_date(change.get("Date")),
            previous_vrm=_clean_str(change.get("PreviousVrm")),
            new_vrm=_clean_str(change.get("NewVrm")),
        )
        for change in _list_of_dicts(history.get("PlateChangeList"))
    ]
    colour_changes = [
        ColourChange(
            date=parse_date(change.get("Date")),
            previous_colour=_clean_str(change.get("PreviousColour")),
            new_colour=_clean_str(change.get("NewColour")),
        )
        for change in _list_of_dicts(history.get("ColourChangeList"))
    ]

    facts = HistoryFacts(
        previous_keepers=extract_int(keepers),
        v5c_certificate_count=extract_int(history.get("V5CCertificateCount")) or 0,
        plate_changes=plate_changes,
        colour_changes=colour_changes,
        scrapped=bool(registration.get("Scrapped")),
        imported=bool(registration.get("Imported") or registration.get("ImportNonEu")),
        exported=bool(registration.get("Exported")),
        write_off_category="none" if history else "unknown",
    )

    write_off_raw = history.get("writeoff") or history.get("WriteOff")
    if isinstance(write_off_raw, list):
        write_off_raw = write_off_raw[0] if write_off_raw else None
    if history.get("writeOffRecord") and isinstance(write_off_raw, dict):
        category = write_off_category(write_off_raw)
        loss_date = parse_date(write_off_raw.get("lossdate") or write_off_raw.get("LossDate"))
        facts.write_off_category = category  # type: ignore[assignment]
        facts.write_off = WriteOffDetails(date=loss_date, description=_clean_str(write_off_raw.get("status")))
        facts.accident = True
        facts.accident_details = AccidentDetails(
            count=1,
            severity=category,
            dates=[loss_date] if loss_date else [],
        )
    elif history.get("writeOffRecord"):
        facts.write_off_category = "unknown"
        facts.accident = True

    stolen_raw = history.get("stolen")
    if history.get("stolenRecord"):
        facts.stolen = True
        if isinstance(stolen_raw, dict):
            facts.stolen_details = StolenDetails(
                reported_date=parse_date(stolen_raw.get("date")),
                status=_clean_str(stolen_raw.get("status")) or "active",
            )

    finance_raw = history.get("finance")
    if isinstance(finance_raw, list):
        finance_raw = finance_raw[0] if finance_raw else None
    if history.get("financeRecord"):
        facts.outstanding_finance = True
        if isinstance(finance_raw, dict):
            facts.finance_details = FinanceDetails(
                lender=_clean_str(finance_raw.get("lender")),
                amount=extract_number(finance_raw.get("amount")),
                agreement_type=_clean_str(finance_raw.get("type")),
            )
    return facts


def parse_history_payload(payload: Any, vrm: str, test_mode: bool = False) -> HistorySnapshot:
    data = _as_dict(payload, "history")
    registration = data.get("VehicleRegistration")
    history = data.get("VehicleHistory")
    if not isinstance(registration, dict) and not isinstance(history, dict):
        raise MalformedPayloadError(
            "History payload has neither VehicleRegistration nor VehicleHistory",
            service="history",
        )
    registration = registration if isinstance(registration, dict) else {}
    history = history if isinstance(history, dict) else {}
    smmt = data.get("SmmtDetails") if isinstance(data.get("SmmtDetails"), dict) else {}

    return HistorySnapshot(
        vrm=_clean_str(registration.get("Vrm")) or vrm,
        make=_clean_str(first_present(registration.get("Make"), smmt.get("Marque"))),
        model=_clean_str(first_present(registration.get("Model"), smmt.get("ModelVariant"), smmt.get("Series"))),
        colour=_clean_str(first_present(registration.get("Colour"), registration.get("colour"))),
        fuel_type=normalize_fuel_type(registration.get("FuelType")),
        year=extract_int(registration.get("YearOfManufacture")),
        engine_capacity=_engine_cc(registration.get("EngineCapacity")),
        facts=_history_facts(registration, history),
        test_mode=test_mode,
    )


# ── Vehicle specs ──────────────────────────────────────────────────


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


def parse_specs_payload(payload: Any, vrm: str) -> SpecsSnapshot:
    data = _as_dict(payload, "specs")
    known = ("VehicleIdentification", "ModelData", "SmmtDetails", "BodyDetails", "DvlaTechnicalDetails")
    if not any(isinstance(data.get(name), dict) for name in known):
        raise MalformedPayloadError("Specs payload has no recognised sections", service="specs")

    ident = _section(data, "VehicleIdentification")
    model_data = _section(data, "ModelData")
    body = _section(data, "BodyDetails")
    gearbox = _section(data, "Transmission")
    dvla_tech = _section(data, "DvlaTechnicalDetails")
    emissions = _section(data, "Emissions")
    smmt = _section(data, "SmmtDetails")
    economy = _section(_section(data, "Performance"), "FuelEconomy")
    registration = _section(data, "VehicleRegistration")

    euro_status = _clean_str(model_data.get("EuroStatus"))
    running_costs = RunningCosts(
        urban_mpg=extract_number(first_present(smmt.get("UrbanColdMpg"), economy.get("UrbanColdMpg"))),
        extra_urban_mpg=extract_number(first_present(smmt.get("ExtraUrbanMpg"), economy.get("ExtraUrbanMpg"))),
        combined_mpg=extract_number(first_present(smmt.get("CombinedMpg"), economy.get("CombinedMpg"))),
        co2_emissions=extract_number(first_present(smmt.get("Co2"), emissions.get("ManufacturerCo2"), ident.get("DvlaCo2"))),
        insurance_group=_clean_str(first_present(smmt.get("InsuranceGroup"), model_data.get("InsuranceGroup"))),
        annual_tax=extract_number(first_present(model_data.get("AnnualTax"), model_data.get("VehicleTax"))),
    )

    return SpecsSnapshot(
        vrm=vrm,
        make=_clean_str(first_present(ident.get("DvlaMake"), model_data.get("Make"))),
        model=_clean_str(first_present(ident.get("DvlaModel"), model_data.get("Model"))),
        variant=_clean_str(first_present(model_data.get("Range"), model_data.get("ModelVariant"), smmt.get("Range"))),
        year=extract_int(ident.get("YearOfManufacture")),
        body_type=_clean_str(first_present(body.get("BodyStyle"), ident.get("DvlaBodyType"), smmt.get("BodyStyle"))),
        fuel_type=normalize_fuel_type(first_present(model_data.get("FuelType"), ident.get("DvlaFuelType"))),
        transmission=normalize_transmission(first_present(gearbox.get("TransmissionType"), smmt.get("Transmission"))),
        engine_capacity=_engine_cc(first_present(dvla_tech.get("EngineCapacityCc"), smmt.get("EngineCapacity"))),
        colour=_clean_str(first_present(registration.get("Colour"), registration.get("colour"))),
        doors=extract_int(first_present(body.get("NumberOfDoors"), smmt.get("NumberOfDoors"))),
        seats=extract_int(
            first_present(body.get("NumberOfSeats"), dvla_tech.get("SeatCountIncludingDriver"), smmt.get("NumberOfSeats"))
        ),
        emission_class=f"Euro {euro_status}" if euro_status else None,
        running_costs=running_costs,
    )


# ── MOT ────────────────────────────────────────────────────────────


def _defects(items: Iterable[dict[str, Any]]) -> list[MotDefect]:
    out: list[MotDefect] = []
    for item in items:
        kind = (_clean_str(item.get("type")) or "ADVISORY").upper()
        if kind not in _DEFECT_TYPES:
            kind = "ADVISORY"
        out.append(
            MotDefect(
                type=kind,
                text=_clean_str(item.get("text")) or "",
                dangerous=item.get("dangerous") is True or kind == "DANGEROUS",
            )
        )
    return out


def parse_mot_payload(payload: Any) -> list[MotTest]:
    """Return the MOT tests most recent first; an empty list means no tests."""
    data = _as_dict(payload, "mot")
    raw_tests: Any = None
    for key in ("motHistory", "MotTests", "motTests", "tests"):
        if key in data:
            raw_tests = data[key]
            break
    if raw_tests is None:
        return []
    if not isinstance(raw_tests, list):
        raise MalformedPayloadError("MOT test list is not an array", service="mot")

    tests: list[MotTest] = []
    for raw in _list_of_dicts(raw_tests):
        test_date = parse_date(first_present(raw.get("completedDate"), raw.get("CompletedDate"), raw.get("testDate")))
        result = _MOT_RESULTS.get(
            (_clean_str(first_present(raw.get("testResult"), raw.get("TestResult"), raw.get("result"))) or "").upper()
        )
        if test_date is None or result is None:
            logger.debug("Skipping MOT test without date or known result: %s", raw)
            continue
        unit = (_clean_str(first_present(raw.get("odometerUnit"), raw.get("OdometerUnit"))) or "mi").lower()
        defect_rows = _list_of_dicts(raw.get("defects") or raw.get("Defects") or raw.get("rfrAndComments") or [])
        tests.append(
            MotTest(
                test_date=test_date,
                result=result,  # type: ignore[arg-type]
                expiry_date=parse_date(first_present(raw.get("expiryDate"), raw.get("ExpiryDate"))),
                odometer_value=extract_int(first_present(raw.get("odometerValue"), raw.get("OdometerValue"))),
                odometer_unit="km" if unit == "km" else "mi",
                test_number=_clean_str(first_present(raw.get("motTestNumber"), raw.get("testNumber"))) or "",
                defects=_defects(defect_rows),
            )
        )
    tests.sort(key=lambda t: t.test_date, reverse=True)
    return tests


# ── Valuation ──────────────────────────────────────────────────────


def parse_valuation_payload(payload: Any, mileage: int) -> ValuationSnapshot:
    data = _as_dict(payload, "valuation")
    listing = data.get("ValuationList")
    estimated = data.get("estimatedValue")
    if isinstance(listing, dict):
        private = extract_number(first_present(listing.get("PrivateClean"), listing.get("PrivateAverage")))
        dealer = extract_number(first_present(listing.get("DealerForecourt"), listing.get("Retail")))
        part_exchange = extract_number(
            first_present(listing.get("PartExchange"), listing.get("TradeAverage"), listing.get("TradeRetail"))
        )
    elif isinstance(estimated, dict):
        private = extract_number(estimated.get("private"))
        dealer = extract_number(estimated.get("retail"))
        part_exchange = extract_number(estimated.get("trade"))
    else:
        raise MalformedPayloadError("Valuation payload has no price list", service="valuation")

    prices = (private, dealer, part_exchange)
    if all(p is None for p in prices):
        raise MalformedPayloadError("Valuation payload contains no prices", service="valuation")

    partial = any(p is None for p in prices)
    confidence = (_clean_str(data.get("confidence")) or "medium").lower()
    if confidence not in {"low", "medium", "high"}:
        confidence = "medium"
    if partial:
        confidence = "low"

    valued_mileage = extract_int(first_present(data.get("Mileage"), data.get("mileage")))
    return ValuationSnapshot(
        mileage=valued_mileage if valued_mileage is not None else mileage,
        private_price=private,
        dealer_price=dealer,
        part_exchange_price=part_exchange,
        confidence=confidence,  # type: ignore[arg-type]
        valued_at=datetime.now(timezone.utc),
        partial=partial,
    )
