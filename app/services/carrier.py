"""Shipping carrier (Shiprocket-style) tracking client.

Auth tokens are cached process-wide with a short TTL.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from app.config import Settings, get_settings
from app.services.errors import ExternalCallFailure

logger = logging.getLogger(__name__)

_token_cache: dict[str, dict] = {}


def clear_token_cache() -> None:
    _token_cache.clear()


class CarrierClient:
    """Tracking lookups against the carrier API."""

    def __init__(
        self,
        base_url: str,
        email: str,
        password: str,
        timeout: float = 10.0,
        token_ttl_seconds: int = 600,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.email = email
        self.password = password
        self.timeout = timeout
        self.token_ttl_seconds = token_ttl_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "CarrierClient":
        return cls(
            base_url=settings.carrier_base_url,
            email=settings.carrier_email,
            password=settings.carrier_password,
            timeout=settings.http_timeout_seconds,
            token_ttl_seconds=settings.carrier_token_ttl_seconds,
            **kwargs,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def get_token(self, force: bool = False) -> str:
        """Login and cache the bearer token, reusing it until the TTL lapses."""
        now = datetime.now(timezone.utc)
        cached = _token_cache.get(self.email)
        if not force and cached:
            elapsed = (now - cached["fetched_at"]).total_seconds()
            if elapsed < self.token_ttl_seconds:
                return cached["token"]

        try:
            async with self._client() as client:
                resp = await client.post("/auth/login", json={"email": self.email, "password": self.password})
        except httpx.HTTPError as e:
            raise ExternalCallFailure(f"Carrier login failed: {e}") from e
        if resp.status_code != 200:
            raise ExternalCallFailure(f"Carrier login failed: HTTP {resp.status_code}")
        token = resp.json().get("token")
        if not token:
            raise ExternalCallFailure("Carrier login returned no token")
        _token_cache[self.email] = {"token": token, "fetched_at": now}
        return token

    async def _get(self, path: str, params: Optional[dict] = None) -> dict:
        token = await self.get_token()
        try:
            async with self._client() as client:
                resp = await client.get(path, params=params, headers={"Authorization": f"Bearer {token}"})
                if resp.status_code == 401:
                    # Token revoked before the TTL ran out
                    token = await self.get_token(force=True)
                    resp = await client.get(path, params=params, headers={"Authorization": f"Bearer {token}"})
        except httpx.HTTPError as e:
            raise ExternalCallFailure(f"Carrier request {path} failed: {e}") from e
        if resp.status_code != 200:
            raise ExternalCallFailure(f"Carrier request {path} failed: HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise ExternalCallFailure(f"Carrier returned non-JSON body for {path}") from e

    async def track_shipment(self, shipment_id: str) -> dict:
        return await self._get(f"/courier/track/shipment/{shipment_id}")

    async def track_order(self, carrier_order_id: str) -> dict:
        return await self._get("/courier/track", params={"order_id": carrier_order_id})

    async def track_awb(self, awb: str) -> dict:
        return await self._get(f"/courier/track/awb/{awb}")


def get_carrier_client() -> CarrierClient:
    return CarrierClient.from_settings(get_settings())
