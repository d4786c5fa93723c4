from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from vehicles.config import LookupConfig


@dataclass(frozen=True)
class ServiceError:
    service: str
    error: str


@dataclass
class CostLedger:
    """Per-lookup accounting: only successful provider calls are billed."""

    config: LookupConfig = field(default_factory=LookupConfig)
    api_calls: int = 0
    total_cost: Decimal = Decimal("0")
    succeeded: list[str] = field(default_factory=list)
    errors: list[ServiceError] = field(default_factory=list)

    def record_success(self, service: str) -> None:
        self.api_calls += 1
        self.total_cost += self.config.unit_cost(service)
        self.succeeded.append(service)

    def record_failure(self, service: str, error: BaseException | str) -> None:
        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
        else:
            message = error
        self.errors.append(ServiceError(service=service, error=message))

    @property
    def failed(self) -> list[str]:
        return [e.service for e in self.errors]
