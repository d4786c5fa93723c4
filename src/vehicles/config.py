from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict


SERVICES: tuple[str, ...] = ("history", "specs", "mot", "valuation")


@dataclass(frozen=True)
class LookupConfig:
    freshness_days: int = 30
    provider_timeout_seconds: float = 10.0
    unit_costs: Dict[str, Decimal] = field(
        default_factory=lambda: {
            "history": Decimal("1.82"),
            "specs": Decimal("0.05"),
            "mot": Decimal("0.02"),
            "valuation": Decimal("0.12"),
        }
    )
    placeholder_strings: frozenset[str] = frozenset({"", "unknown", "null", "undefined", "n/a", "none"})
    fuel_type_labels: frozenset[str] = frozenset(
        {
            "petrol",
            "diesel",
            "electric",
            "hybrid",
            "petrol hybrid",
            "diesel hybrid",
            "plug-in hybrid",
            "petrol plug-in hybrid",
            "diesel plug-in hybrid",
            "lpg",
        }
    )

    def unit_cost(self, service: str) -> Decimal:
        return self.unit_costs.get(service, Decimal("0"))
