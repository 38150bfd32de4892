"""Card payment gateway client.

Maps gateway card errors onto the checkout taxonomy: declines and expired
cards are terminal (:class:`GatewayDeclined`), everything else the buyer can
resubmit with the same intent (:class:`GatewayTransient`).
"""

from __future__ import annotations

import json
from decimal import Decimal

import httpx
import structlog

from artisan_checkout.config import Settings
from artisan_checkout.errors import GatewayDeclined, GatewayTransient, ServiceClientError
from artisan_checkout.models import PaymentHandle
from artisan_checkout.protocols.http import ServiceClient
from artisan_checkout.protocols.ports import GatewayConfirmation, PaymentGateway

logger = structlog.get_logger(__name__)

TERMINAL_DECLINE_CODES = frozenset(
    {
        "card_declined",
        "expired_card",
        "lost_card",
        "stolen_card",
        "insufficient_funds",
        "do_not_honor",
    }
)


def _to_cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


class PaymentGatewayClient(ServiceClient, PaymentGateway):
    """Payment-intent style card gateway."""

    service_name = "payment_gateway"

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            settings.payment_gateway_url,
            timeout=settings.gateway_timeout,
            transport=transport,
        )

    async def create_intent(self, amount: Decimal, currency: str) -> PaymentHandle:
        data = await self._request(
            "POST",
            "/v1/payment_intents",
            json_body={"amount": _to_cents(amount), "currency": currency.lower()},
        )
        return PaymentHandle(
            intent_id=data["id"],
            client_secret=data["client_secret"],
            amount=amount,
            currency=currency,
        )

    async def confirm(self, handle: PaymentHandle, payment_method: str) -> GatewayConfirmation:
        try:
            # Confirmation is not idempotent on the wire; never retry it blindly.
            data = await self._request(
                "POST",
                f"/v1/payment_intents/{handle.intent_id}/confirm",
                json_body={"payment_method": payment_method},
                retries=0,
            )
        except ServiceClientError as exc:
            raise self._map_card_error(exc) from exc

        status = data.get("status", "")
        if status != "succeeded":
            raise GatewayTransient(f"Payment not completed (status: {status or 'unknown'})")
        return GatewayConfirmation(status=status, payment_ref=data.get("id", handle.intent_id))

    async def cancel_intent(self, handle: PaymentHandle) -> None:
        try:
            await self._request("POST", f"/v1/payment_intents/{handle.intent_id}/cancel")
        except ServiceClientError as exc:
            logger.warning("payment_intent_cancel_failed", intent_id=handle.intent_id, error=str(exc))

    @staticmethod
    def _map_card_error(exc: ServiceClientError) -> GatewayDeclined | GatewayTransient:
        code = ""
        message = "Payment could not be processed"
        if exc.upstream_body:
            try:
                error = json.loads(exc.upstream_body).get("error", {})
                code = error.get("code", "") or error.get("decline_code", "")
                message = error.get("message", message)
            except (ValueError, AttributeError):
                pass
        if code in TERMINAL_DECLINE_CODES:
            return GatewayDeclined(f"{message} ({code})", field="payment_method")
        return GatewayTransient(f"{message} ({code or 'transient'})", field="payment_method")
