"""Ports for the services the checkout orchestrates.

Each external collaborator is programmed against an abstract interface so
that the httpx clients (production) and the in-memory doubles (development
and tests) can be swapped without touching the checkout core.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from artisan_checkout.models import (
    DeliveryAddress,
    OrderDraft,
    PackageDetails,
    PaymentHandle,
    PickupLocation,
)


@dataclass(frozen=True)
class GeocodeResult:
    lat: float
    lon: float
    confidence: float = 0.0
    display_name: str = ""


@dataclass(frozen=True)
class CourierQuoteResponse:
    """Raw quote returned by the courier quoting service."""

    quote_id: str
    estimated_fee: Decimal
    currency: str = "CAD"
    expires_at: datetime | None = None
    duration_minutes: int | None = None


@dataclass(frozen=True)
class GatewayConfirmation:
    status: str
    payment_ref: str
    failure_reason: str | None = None


@dataclass(frozen=True)
class DebitResult:
    success: bool
    new_balance: Decimal | None
    order_ref: str | None = None
    transaction_id: str | None = None


@dataclass(frozen=True)
class CreditResult:
    new_balance: Decimal
    transaction_id: str


class GeocodingService(ABC):
    @abstractmethod
    async def geocode(self, address: str) -> GeocodeResult | None:
        """Resolve *address* to coordinates, ``None`` if it cannot be resolved."""
        ...


class CourierQuoteService(ABC):
    @abstractmethod
    async def quote(
        self,
        pickup: PickupLocation,
        dropoff: DeliveryAddress,
        package: PackageDetails,
        buffer_percent: Decimal,
    ) -> CourierQuoteResponse:
        """Request a priced quote.  Raises ``QuoteServiceUnavailable`` on failure."""
        ...


class PaymentGateway(ABC):
    @abstractmethod
    async def create_intent(self, amount: Decimal, currency: str) -> PaymentHandle:
        """Reserve a payment intent for *amount*."""
        ...

    @abstractmethod
    async def confirm(self, handle: PaymentHandle, payment_method: str) -> GatewayConfirmation:
        """Charge the intent.  Raises ``GatewayDeclined`` or ``GatewayTransient``."""
        ...

    @abstractmethod
    async def cancel_intent(self, handle: PaymentHandle) -> None:
        """Release a reserved intent so it can never be charged."""
        ...


class LedgerService(ABC):
    @abstractmethod
    async def get_balance(self, account_id: str) -> Decimal:
        ...

    @abstractmethod
    async def debit(self, account_id: str, amount: Decimal) -> DebitResult:
        """Compare-and-decrement; ``success`` is false when funds are short."""
        ...

    @abstractmethod
    async def credit(self, account_id: str, amount: Decimal, source: str) -> CreditResult:
        ...

    @abstractmethod
    async def debit_for_order(
        self,
        account_id: str,
        amount: Decimal,
        draft: OrderDraft,
    ) -> DebitResult:
        """Debit and record the order as one atomic unit, idempotent per draft."""
        ...


class OrderService(ABC):
    @abstractmethod
    async def create_order(self, draft: OrderDraft, payment_ref: str) -> str:
        """Persist the finalized order and return its identifier."""
        ...


@dataclass
class CheckoutServices:
    """The collaborators a checkout session is wired to."""

    geocoder: GeocodingService
    courier: CourierQuoteService
    gateway: PaymentGateway
    ledger: LedgerService
    orders: OrderService

    async def close(self) -> None:
        for service in (self.geocoder, self.courier, self.gateway, self.ledger, self.orders):
            close = getattr(service, "close", None)
            if close is not None:
                await close()
