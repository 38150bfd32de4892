"""Courier quoting service client."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import httpx
import structlog

from artisan_checkout.config import Settings
from artisan_checkout.errors import QuoteServiceUnavailable, ServiceClientError
from artisan_checkout.models import DeliveryAddress, PackageDetails, PickupLocation
from artisan_checkout.protocols.http import ServiceClient
from artisan_checkout.protocols.ports import CourierQuoteResponse, CourierQuoteService

logger = structlog.get_logger(__name__)


class CourierQuoteClient(ServiceClient, CourierQuoteService):
    """Requests delivery quotes from the third-party courier."""

    service_name = "courier"

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(settings.courier_url, timeout=settings.courier_timeout, transport=transport)
        self._currency = settings.currency

    async def quote(
        self,
        pickup: PickupLocation,
        dropoff: DeliveryAddress,
        package: PackageDetails,
        buffer_percent: Decimal,
    ) -> CourierQuoteResponse:
        body = {
            "pickup_address": pickup.address,
            "pickup_name": pickup.contact_name or "Pickup",
            "pickup_phone_number": pickup.phone,
            "pickup_latitude": pickup.lat,
            "pickup_longitude": pickup.lon,
            "dropoff_address": dropoff.one_line(),
            "dropoff_latitude": dropoff.lat,
            "dropoff_longitude": dropoff.lon,
            "manifest": {"total_value": str(package.declared_value)},
            "package_size": package.size,
            "buffer_percent": str(buffer_percent),
        }
        try:
            data = await self._request("POST", "/v1/delivery_quotes", json_body=body)
        except ServiceClientError as exc:
            raise QuoteServiceUnavailable(f"Courier quoting failed: {exc}") from exc

        try:
            # Fees arrive in cents.
            fee = (Decimal(str(data["fee"])) / 100).quantize(Decimal("0.01"))
            expires_at = _parse_expiry(data.get("expires_at"))
            return CourierQuoteResponse(
                quote_id=str(data["id"]),
                estimated_fee=fee,
                currency=data.get("currency", self._currency).upper(),
                expires_at=expires_at,
                duration_minutes=data.get("duration"),
            )
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            logger.warning("courier_quote_malformed", error=str(exc))
            raise QuoteServiceUnavailable(f"Malformed courier quote: {exc}") from exc


def _parse_expiry(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
