"""Fake geocoder backed by a fixed address book."""

from __future__ import annotations

import asyncio
from typing import Any

from artisan_checkout.protocols.ports import GeocodeResult, GeocodingService


def _normalize(address: str) -> str:
    return " ".join(address.lower().split())


class FakeGeocoder(GeocodingService):
    """Resolves only the addresses it was given; everything else is unknown."""

    def __init__(self, known: dict[str, tuple[float, float]] | None = None, delay: float = 0.0) -> None:
        self.known: dict[str, tuple[float, float]] = {_normalize(k): v for k, v in (known or {}).items()}
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    def add(self, address: str, lat: float, lon: float) -> None:
        self.known[_normalize(address)] = (lat, lon)

    async def geocode(self, address: str) -> GeocodeResult | None:
        self.calls.append({"method": "geocode", "address": address})
        if self.delay:
            await asyncio.sleep(self.delay)
        match = self.known.get(_normalize(address))
        if match is None:
            return None
        return GeocodeResult(lat=match[0], lon=match[1], confidence=90.0, display_name=address)
