from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from marketplace.settings import ServiceSettings
from vehicles.adapters import (
    parse_history_payload,
    parse_mot_payload,
    parse_specs_payload,
    parse_valuation_payload,
)
from vehicles.data_models import HistorySnapshot, MotTest, SpecsSnapshot, ValuationSnapshot
from vehicles.errors import MalformedPayloadError, ProviderError, ProviderTimeoutError

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    400: ("BAD_REQUEST", "Invalid request for vehicle"),
    401: ("AUTH_ERROR", "Provider rejected the API key"),
    403: ("RATE_LIMIT_EXCEEDED", "Provider rate limit exceeded or access forbidden"),
    404: ("VEHICLE_NOT_FOUND", "Vehicle not found"),
    429: ("RATE_LIMIT_EXCEEDED", "Provider rate limit exceeded"),
}


class CheckCarDetailsClient:
    """Async client for the ``/vehicledata/{datapoint}`` JSON API.

    One GET per datapoint, authenticated by ``apikey`` query parameter.
    Timeouts, connection errors and 5xx responses are retried with
    exponential backoff; anything else fails immediately.  The sandbox
    (test mode) only answers for marks containing the letter ``A``.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.checkcardetails.co.uk",
        *,
        test_mode: bool = False,
        timeout: float = 10.0,
        max_retries: int = 2,
        backoff_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.test_mode = test_mode
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._transport = transport

    def _check_request(self, service: str, vrm: str) -> None:
        if not self.api_key:
            raise ProviderError("Vehicle data API key not configured", service=service, code="MISSING_API_KEY")
        if self.test_mode and "A" not in vrm.upper():
            raise ProviderError(
                f"Invalid VRM for test mode: {vrm} must contain the letter 'A'",
                service=service,
                code="TEST_MODE_VRM",
            )

    async def get_datapoint(self, datapoint: str, vrm: str, *, service: str, **params: Any) -> Any:
        self._check_request(service, vrm)
        url = f"{self.base_url}/vehicledata/{datapoint}"
        query = {"apikey": self.api_key, "vrm": vrm.upper(), **params}

        attempt = 0
        while True:
            attempt += 1
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    resp = await client.get(url, params=query, headers={"Accept": "application/json"})
                    resp.raise_for_status()
                return resp.json()
            except httpx.TimeoutException as exc:
                error: ProviderError = ProviderTimeoutError(
                    f"{datapoint} request timed out for {vrm}", service=service
                )
                retryable = True
                cause: Exception = exc
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                code, message = _STATUS_CODES.get(status, ("API_ERROR", "Provider returned an error"))
                error = ProviderError(
                    f"{message}: {datapoint} {vrm} (HTTP {status})",
                    service=service,
                    code=code,
                    status_code=status,
                )
                retryable = status >= 500
                cause = exc
            except httpx.TransportError as exc:
                error = ProviderError(
                    f"Network error calling {datapoint} for {vrm}: {exc}", service=service, code="NETWORK_ERROR"
                )
                retryable = True
                cause = exc
            except ValueError as exc:
                raise MalformedPayloadError(
                    f"{datapoint} returned a non-JSON body for {vrm}", service=service
                ) from exc

            if not retryable or attempt > self.max_retries:
                raise error from cause
            delay = self.backoff_seconds * (2 ** (attempt - 1))
            logger.info("Retrying %s for %s after %.1fs (attempt %d/%d)", datapoint, vrm, delay, attempt, self.max_retries)
            await asyncio.sleep(delay)


class VehicleDataProvider(Protocol):
    service: str

    async def fetch(self, vrm: str, mileage: int) -> Any: ...


class HistoryProvider:
    service = "history"

    def __init__(self, client: CheckCarDetailsClient) -> None:
        self.client = client

    async def fetch(self, vrm: str, mileage: int) -> HistorySnapshot:
        payload = await self.client.get_datapoint("carhistorycheck", vrm, service=self.service)
        return parse_history_payload(payload, vrm, test_mode=self.client.test_mode)


class SpecsProvider:
    service = "specs"

    def __init__(self, client: CheckCarDetailsClient) -> None:
        self.client = client

    async def fetch(self, vrm: str, mileage: int) -> SpecsSnapshot:
        payload = await self.client.get_datapoint("Vehiclespecs", vrm, service=self.service)
        return parse_specs_payload(payload, vrm)


class MotProvider:
    service = "mot"

    def __init__(self, client: CheckCarDetailsClient) -> None:
        self.client = client

    async def fetch(self, vrm: str, mileage: int) -> list[MotTest]:
        payload = await self.client.get_datapoint("mot", vrm, service=self.service)
        return parse_mot_payload(payload)


class ValuationProvider:
    service = "valuation"

    def __init__(self, client: CheckCarDetailsClient) -> None:
        self.client = client

    async def fetch(self, vrm: str, mileage: int) -> ValuationSnapshot:
        payload = await self.client.get_datapoint("vehiclevaluation", vrm, service=self.service, mileage=mileage)
        return parse_valuation_payload(payload, mileage)


@dataclass
class ProviderSet:
    history: VehicleDataProvider
    specs: VehicleDataProvider
    mot: VehicleDataProvider
    valuation: VehicleDataProvider

    def ordered(self) -> list[VehicleDataProvider]:
        return [self.history, self.specs, self.mot, self.valuation]


def build_providers(settings: ServiceSettings, transport: httpx.AsyncBaseTransport | None = None) -> ProviderSet:
    client = CheckCarDetailsClient(
        api_key=settings.checkcard_api_key,
        base_url=settings.checkcard_api_base_url,
        test_mode=settings.test_mode,
        timeout=settings.provider_timeout_seconds,
        max_retries=settings.provider_max_retries,
        backoff_seconds=settings.provider_backoff_seconds,
        transport=transport,
    )
    return ProviderSet(
        history=HistoryProvider(client),
        specs=SpecsProvider(client),
        mot=MotProvider(client),
        valuation=ValuationProvider(client),
    )
