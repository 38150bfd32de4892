"""Fake courier quoting service."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import uuid4

from artisan_checkout.delivery.geo import haversine_km
from artisan_checkout.errors import InvalidCoordinates, QuoteServiceUnavailable
from artisan_checkout.models import (
    Coordinates,
    DeliveryAddress,
    PackageDetails,
    PickupLocation,
    to_money,
    utcnow,
)
from artisan_checkout.protocols.ports import CourierQuoteResponse, CourierQuoteService


class FakeCourierService(CourierQuoteService):
    """Prices deliveries as ``base_fee + per_km * distance``.

    Set ``fixed_fee`` to return the same fee for every quote, or
    ``should_fail`` to simulate an outage.
    """

    def __init__(
        self,
        base_fee: Decimal = Decimal("6.00"),
        per_km: Decimal = Decimal("1.25"),
        validity_seconds: int = 900,
        currency: str = "CAD",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.base_fee = base_fee
        self.per_km = per_km
        self.validity_seconds = validity_seconds
        self.currency = currency
        self._clock = clock
        self.fixed_fee: Decimal | None = None
        self.should_fail = False
        self.calls: list[dict[str, Any]] = []

    async def quote(
        self,
        pickup: PickupLocation,
        dropoff: DeliveryAddress,
        package: PackageDetails,
        buffer_percent: Decimal,
    ) -> CourierQuoteResponse:
        self.calls.append(
            {"method": "quote", "dropoff": dropoff.one_line(), "buffer_percent": buffer_percent}
        )
        if self.should_fail:
            raise QuoteServiceUnavailable("Courier quoting is unavailable")

        if self.fixed_fee is not None:
            fee = to_money(self.fixed_fee)
        else:
            distance = 0.0
            if pickup.lat is not None and pickup.lon is not None:
                try:
                    distance = haversine_km(Coordinates(lat=pickup.lat, lon=pickup.lon), dropoff.coordinates)
                except InvalidCoordinates:
                    distance = 0.0
            fee = to_money(self.base_fee + self.per_km * Decimal(str(round(distance, 3))))

        return CourierQuoteResponse(
            quote_id=f"dqt_{uuid4().hex[:12]}",
            estimated_fee=fee,
            currency=self.currency,
            expires_at=self._clock() + timedelta(seconds=self.validity_seconds),
            duration_minutes=45,
        )
