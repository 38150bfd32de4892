"""Geocoding client (Nominatim-compatible search API).

Requests are rate-limited to one per configured interval and results are
cached per normalized address.  Any failure degrades to ``None`` so callers
can report "validation pending" instead of blocking checkout.
"""

from __future__ import annotations

import httpx
import structlog

from artisan_checkout.config import Settings
from artisan_checkout.errors import ServiceClientError
from artisan_checkout.orchestrator.timers import RateLimiter
from artisan_checkout.protocols.http import ServiceClient
from artisan_checkout.protocols.ports import GeocodeResult, GeocodingService

logger = structlog.get_logger(__name__)


class GeocodingClient(ServiceClient, GeocodingService):
    """Async geocoder with rate limiting and an in-process cache."""

    service_name = "geocoding"

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        super().__init__(
            settings.geocoding_url,
            timeout=settings.geocode_timeout,
            max_retries=0,
            transport=transport,
            headers={"User-Agent": f"{settings.service_name}/{settings.service_version}"},
        )
        self._rate_limiter = rate_limiter or RateLimiter(settings.geocode_min_interval_seconds)
        self._cache: dict[str, GeocodeResult] = {}

    async def geocode(self, address: str) -> GeocodeResult | None:
        key = " ".join(address.lower().split())
        if not key:
            return None
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("geocode_cache_hit", address=address)
            return cached

        await self._rate_limiter.wait()
        try:
            data = await self._request(
                "GET",
                "/search",
                params={"q": address, "format": "json", "limit": 1, "addressdetails": 0},
            )
        except ServiceClientError as exc:
            logger.warning("geocode_failed", address=address, error=str(exc))
            return None

        if not isinstance(data, list):
            logger.warning("geocode_malformed_response", address=address, error="expected a list of matches")
            return None
        if not data:
            logger.info("geocode_no_match", address=address)
            return None

        match = data[0]
        try:
            result = GeocodeResult(
                lat=float(match["lat"]),
                lon=float(match["lon"]),
                confidence=round(float(match.get("importance", 0.0)) * 100, 1),
                display_name=match.get("display_name", ""),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("geocode_malformed_response", address=address, error=str(exc))
            return None

        self._cache[key] = result
        return result
