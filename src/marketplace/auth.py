from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections import defaultdict

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

_operator_key_header = APIKeyHeader(name="X-Operator-Key", auto_error=False)


class OperatorAuth:
    """Guard for operator endpoints (forced refresh, locks, repairs, admin).

    Keys are held as SHA-256 hashes.  With no keys configured every request
    is allowed, which is the local development setup.
    """

    def __init__(self, allowed_keys: list[str] | None = None) -> None:
        self._hashes: set[str] = {self._hash(k.strip()) for k in (allowed_keys or []) if k.strip()}
        self._enabled = bool(self._hashes)

    @staticmethod
    def _hash(key: str) -> str:
        return hashlib.sha256(key.encode()).hexdigest()

    def validate(self, api_key: str | None) -> bool:
        if not self._enabled:
            return True
        if api_key is None:
            return False
        digest = self._hash(api_key)
        return any(hmac.compare_digest(digest, known) for known in self._hashes)

    async def __call__(self, api_key: str | None = Security(_operator_key_header)) -> str | None:
        if not self._enabled:
            return None
        if not self.validate(api_key):
            logger.warning("Rejected operator request with invalid key")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or missing operator key",
            )
        return api_key


class LookupRateLimiter:
    """Sliding one-minute window per client IP for the paid lookup endpoints.

    Every uncached lookup costs money at the provider, so this only guards the
    routes that can trigger one.
    """

    def __init__(self, requests_per_minute: int = 30) -> None:
        self.rpm = requests_per_minute
        self._windows: dict[str, list[float]] = defaultdict(list)
        self._enabled = requests_per_minute > 0

    def check(self, client_ip: str) -> bool:
        if not self._enabled:
            return True
        now = time.monotonic()
        cutoff = now - 60.0
        window = [t for t in self._windows[client_ip] if t > cutoff]
        if len(window) >= self.rpm:
            self._windows[client_ip] = window
            return False
        window.append(now)
        self._windows[client_ip] = window
        return True

    async def __call__(self, request: Request) -> None:
        client_ip = request.client.host if request.client else "unknown"
        if not self.check(client_ip):
            logger.warning("Lookup rate limit exceeded for %s", client_ip)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
            )
