"""Configurable fake card gateway for development and testing.

Behaves like a card processor in test mode: intents are reserved, confirmed
or cancelled in memory, and the outcome of ``confirm`` can be switched at
runtime between success, a terminal decline and a retryable failure.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import uuid4

from artisan_checkout.errors import GatewayDeclined, GatewayTransient
from artisan_checkout.models import PaymentHandle, to_money
from artisan_checkout.protocols.ports import GatewayConfirmation, PaymentGateway

OUTCOME_SUCCEED = "succeed"
OUTCOME_DECLINE = "decline"
OUTCOME_TRANSIENT = "transient"


class FakePaymentGateway(PaymentGateway):
    """Configurable fake payment gateway."""

    def __init__(self) -> None:
        self.outcome: str = OUTCOME_SUCCEED
        self.failure_reason: str = "Card declined"
        self.calls: list[dict[str, Any]] = []
        self.intents: dict[str, PaymentHandle] = {}
        self.cancelled: set[str] = set()
        self.captured: dict[str, Decimal] = {}

    def configure(self, outcome: str, failure_reason: str = "Card declined") -> None:
        """Configure ``confirm`` behaviour at runtime."""
        self.outcome = outcome
        self.failure_reason = failure_reason

    async def create_intent(self, amount: Decimal, currency: str) -> PaymentHandle:
        self.calls.append({"method": "create_intent", "amount": amount, "currency": currency})
        intent_id = f"pi_{uuid4().hex[:16]}"
        handle = PaymentHandle(
            intent_id=intent_id,
            client_secret=f"{intent_id}_secret_{uuid4().hex[:8]}",
            amount=to_money(amount),
            currency=currency,
        )
        self.intents[intent_id] = handle
        return handle

    async def confirm(self, handle: PaymentHandle, payment_method: str) -> GatewayConfirmation:
        self.calls.append(
            {"method": "confirm", "intent_id": handle.intent_id, "payment_method": payment_method}
        )
        if handle.intent_id in self.cancelled:
            raise GatewayDeclined("This payment was cancelled; start a new payment", field="payment_method")
        if self.outcome == OUTCOME_DECLINE:
            raise GatewayDeclined(self.failure_reason, field="payment_method")
        if self.outcome == OUTCOME_TRANSIENT:
            raise GatewayTransient("The card network did not respond; please try again", field="payment_method")

        self.captured[handle.intent_id] = handle.amount
        return GatewayConfirmation(status="succeeded", payment_ref=f"ch_{uuid4().hex[:12]}")

    async def cancel_intent(self, handle: PaymentHandle) -> None:
        self.calls.append({"method": "cancel_intent", "intent_id": handle.intent_id})
        self.cancelled.add(handle.intent_id)
