"""Order creation endpoint client."""

from __future__ import annotations

import httpx

from artisan_checkout.config import Settings
from artisan_checkout.models import OrderDraft
from artisan_checkout.protocols.http import ServiceClient
from artisan_checkout.protocols.ports import OrderService


class OrderClient(ServiceClient, OrderService):
    service_name = "orders"

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(settings.orders_url, timeout=settings.gateway_timeout, transport=transport)

    async def create_order(self, draft: OrderDraft, payment_ref: str) -> str:
        payload = draft.model_dump(mode="json")
        payload["payment_ref"] = payment_ref
        data = await self._request("POST", "/orders", json_body=payload, retries=0)
        return str(data["order_id"])
