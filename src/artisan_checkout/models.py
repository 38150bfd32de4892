"""Pydantic models for the artisan checkout service.

Covers cart lines and seller groups, seller delivery configuration, delivery
options, courier quotes, pickup schedules, checkout selections, order drafts,
payment results, ledger balances and checkout events.
"""

from __future__ import annotations

import enum
import re
import uuid
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

CENT = Decimal("0.01")


def to_money(value: Decimal | float | int | str) -> Decimal:
    """Quantize *value* to cents, rounding half up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


# ---------------------------------------------------------------------------
# Geography and addresses
# ---------------------------------------------------------------------------


class Coordinates(BaseModel):
    """A latitude/longitude pair in decimal degrees."""

    lat: float
    lon: float


class AddressSource(str, enum.Enum):
    """Where the active delivery address came from."""

    SAVED = "saved"
    ENTERED = "entered"


_WHITESPACE = re.compile(r"\s+")


class DeliveryAddress(BaseModel):
    """A buyer delivery address, optionally geocoded."""

    street: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""
    lat: float | None = None
    lon: float | None = None
    source: AddressSource = AddressSource.ENTERED

    @property
    def is_complete(self) -> bool:
        return all(
            part.strip()
            for part in (self.street, self.city, self.state, self.postal_code, self.country)
        )

    @property
    def missing_fields(self) -> list[str]:
        fields = ("street", "city", "state", "postal_code", "country")
        return [name for name in fields if not getattr(self, name).strip()]

    @property
    def coordinates(self) -> Coordinates | None:
        if self.lat is None or self.lon is None:
            return None
        return Coordinates(lat=self.lat, lon=self.lon)

    def one_line(self) -> str:
        parts = [self.street, self.city, f"{self.state} {self.postal_code}".strip(), self.country]
        return ", ".join(p.strip() for p in parts if p and p.strip())

    def fingerprint(self) -> str:
        """Normalized address key, insensitive to case and spacing."""
        parts = (self.street, self.city, self.state, self.postal_code, self.country)
        return "|".join(_WHITESPACE.sub(" ", p).strip().lower() for p in parts)

    def same_location(self, other: DeliveryAddress | None) -> bool:
        return other is not None and self.fingerprint() == other.fingerprint()


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------


class FulfillmentType(str, enum.Enum):
    READY_TO_SHIP = "ready_to_ship"
    MADE_TO_ORDER = "made_to_order"
    SCHEDULED_ORDER = "scheduled_order"


class LeadTimeUnit(str, enum.Enum):
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


class CartLine(BaseModel):
    """A single product line in the buyer's cart."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    seller_id: str
    unit_price: Decimal = Field(ge=0)
    quantity: int = Field(default=1, ge=1)
    fulfillment_type: FulfillmentType = FulfillmentType.READY_TO_SHIP
    lead_time: int | None = Field(default=None, ge=0)
    lead_time_unit: LeadTimeUnit = LeadTimeUnit.DAYS
    next_available_date: date | None = None
    name: str = ""

    @property
    def line_total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)


# ---------------------------------------------------------------------------
# Pickup schedule
# ---------------------------------------------------------------------------


class PickupTimeWindow(BaseModel):
    """A bookable pickup window, times as ``HH:MM`` strings."""

    value: str
    label: str
    start: str = Field(pattern=r"^\d{2}:\d{2}$")
    end: str = Field(pattern=r"^\d{2}:\d{2}$")


DEFAULT_TIME_WINDOWS: list[PickupTimeWindow] = [
    PickupTimeWindow(value="morning", label="9:00 AM - 12:00 PM", start="09:00", end="12:00"),
    PickupTimeWindow(value="afternoon", label="12:00 PM - 3:00 PM", start="12:00", end="15:00"),
    PickupTimeWindow(value="evening", label="3:00 PM - 6:00 PM", start="15:00", end="18:00"),
]


class DaySchedule(BaseModel):
    """A seller's opening hours for one weekday."""

    enabled: bool = False
    open: str | None = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    close: str | None = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    time_slots: list[PickupTimeWindow] | None = None


class PickupSlot(BaseModel):
    """A concrete pickup window on a given date."""

    pickup_date: date
    slot_id: str
    label: str
    start: str
    end: str

    @property
    def full_label(self) -> str:
        return f"{self.pickup_date.strftime('%a %b %d')} - {self.label}"


# ---------------------------------------------------------------------------
# Seller delivery configuration
# ---------------------------------------------------------------------------


class SellerDeliveryConfig(BaseModel):
    """How a seller offers delivery and pickup."""

    pickup_enabled: bool = True
    personal_delivery_enabled: bool = False
    delivery_radius_km: float = 0.0
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)
    free_delivery_threshold: Decimal | None = None
    professional_delivery_enabled: bool = False
    professional_radius_km: float = 0.0
    location: Coordinates | None = None
    pickup_address: str = ""
    # Raw mapping of weekday name -> day schedule; parsed leniently per day.
    weekly_schedule: dict[str, Any] = Field(default_factory=dict)


class SellerCartGroup(BaseModel):
    """Cart lines bundled by the seller fulfilling them."""

    seller_id: str
    seller_name: str = ""
    lines: list[CartLine] = Field(default_factory=list)
    config: SellerDeliveryConfig = Field(default_factory=SellerDeliveryConfig)

    @property
    def subtotal(self) -> Decimal:
        return to_money(sum((line.line_total for line in self.lines), Decimal("0")))


def group_cart_lines(
    lines: list[CartLine],
    configs: dict[str, SellerDeliveryConfig] | None = None,
) -> list[SellerCartGroup]:
    """Bundle cart lines by seller, preserving first-seen seller order."""
    configs = configs or {}
    groups: dict[str, SellerCartGroup] = {}
    for line in lines:
        group = groups.get(line.seller_id)
        if group is None:
            group = SellerCartGroup(
                seller_id=line.seller_id,
                config=configs.get(line.seller_id, SellerDeliveryConfig()),
            )
            groups[line.seller_id] = group
        group.lines.append(line)
    return list(groups.values())


# ---------------------------------------------------------------------------
# Delivery options and quotes
# ---------------------------------------------------------------------------


class DeliveryMethod(str, enum.Enum):
    PICKUP = "pickup"
    PERSONAL_DELIVERY = "personal_delivery"
    COURIER_DELIVERY = "courier_delivery"

    @property
    def needs_address(self) -> bool:
        return self is not DeliveryMethod.PICKUP


class EligibilityStatus(str, enum.Enum):
    AVAILABLE = "available"
    OUT_OF_RADIUS = "out_of_radius"
    UNCONFIGURED = "unconfigured"
    PENDING_ADDRESS = "pending_address"
    ERROR = "error"


class CourierQuote(BaseModel):
    """A buffered courier delivery quote for one seller."""

    seller_id: str
    quote_id: str
    estimated_fee: Decimal
    buffer_amount: Decimal
    buffer_percent: Decimal = Decimal("20")
    charged_amount: Decimal = Decimal("0")
    currency: str = "CAD"
    expires_at: datetime
    estimated: bool = False
    address_fingerprint: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _charged_is_estimate_plus_buffer(self) -> CourierQuote:
        self.charged_amount = to_money(self.estimated_fee + self.buffer_amount)
        return self

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class DeliveryOption(BaseModel):
    """Eligibility of one delivery method for one seller."""

    method: DeliveryMethod
    status: EligibilityStatus
    reason: str | None = None
    fee: Decimal | None = None
    distance_km: float | None = None
    quote: CourierQuote | None = None

    @property
    def available(self) -> bool:
        return self.status is EligibilityStatus.AVAILABLE

    @property
    def pending(self) -> bool:
        return self.status is EligibilityStatus.PENDING_ADDRESS

    def with_quote(self, quote: CourierQuote) -> DeliveryOption:
        return self.model_copy(update={"quote": quote, "fee": quote.charged_amount})


class DeliveryOptions(BaseModel):
    """The three delivery options evaluated for a seller."""

    seller_id: str
    pickup: DeliveryOption
    personal_delivery: DeliveryOption
    courier_delivery: DeliveryOption

    def get(self, method: DeliveryMethod) -> DeliveryOption:
        return getattr(self, method.value)

    def available_methods(self) -> list[DeliveryMethod]:
        return [m for m in DeliveryMethod if self.get(m).available]


class PackageDetails(BaseModel):
    """Parcel description sent to the courier quoting service."""

    size: str = "medium"
    declared_value: Decimal = Decimal("0")
    description: str = ""


class PickupLocation(BaseModel):
    """Courier pickup point (the seller's premises)."""

    address: str
    lat: float | None = None
    lon: float | None = None
    contact_name: str = ""
    phone: str = ""


# ---------------------------------------------------------------------------
# Checkout selection and order draft
# ---------------------------------------------------------------------------


class CheckoutState(str, enum.Enum):
    """Lifecycle states of a checkout."""

    CONFIGURING_DELIVERY = "configuring_delivery"
    DELIVERY_CONFIRMED = "delivery_confirmed"
    CONFIGURING_PAYMENT = "configuring_payment"
    PAYMENT_IN_FLIGHT = "payment_in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CheckoutSelection(BaseModel):
    """The delivery choice made for one seller group."""

    seller_id: str
    method: DeliveryMethod
    option: DeliveryOption
    pickup_slot: PickupSlot | None = None
    quote: CourierQuote | None = None

    @property
    def fee(self) -> Decimal:
        if self.method is DeliveryMethod.COURIER_DELIVERY:
            return self.quote.charged_amount if self.quote else Decimal("0.00")
        return to_money(self.option.fee or 0)


class DeliveryBlocker(BaseModel):
    """Why a seller group prevents delivery confirmation."""

    seller_id: str
    field: str
    code: str
    message: str


class OrderDraft(BaseModel):
    """Finalized checkout contents handed to payment and order creation."""

    model_config = ConfigDict(frozen=True)

    draft_id: str = Field(default_factory=lambda: f"draft_{uuid.uuid4().hex[:16]}")
    lines: list[CartLine]
    delivery_method_per_seller: dict[str, DeliveryMethod]
    delivery_fees: dict[str, Decimal]
    pickup_slots: dict[str, PickupSlot] = Field(default_factory=dict)
    courier_quotes: dict[str, str] = Field(default_factory=dict)
    delivery_address: DeliveryAddress | None = None
    subtotal: Decimal
    delivery_total: Decimal
    total: Decimal
    currency: str = "CAD"


# ---------------------------------------------------------------------------
# Payments and ledger
# ---------------------------------------------------------------------------


class PaymentRail(str, enum.Enum):
    GATEWAY = "gateway"
    LEDGER = "ledger"


class PaymentStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    TOP_UP_REQUIRED = "top_up_required"
    FAILED = "failed"


class PaymentHandle(BaseModel):
    """A reserved gateway payment intent."""

    intent_id: str
    client_secret: str
    amount: Decimal
    currency: str = "CAD"


class LedgerBalance(BaseModel):
    account_id: str
    balance: Decimal = Field(ge=0)
    currency: str = "CAD"
    fetched_at: datetime = Field(default_factory=utcnow)


class TopUpRequest(BaseModel):
    """Request for the payer to add at least ``minimum_amount`` to the ledger."""

    request_id: str = Field(default_factory=lambda: f"topup_{uuid.uuid4().hex[:12]}")
    account_id: str
    minimum_amount: Decimal
    currency: str = "CAD"


class PendingPayment(BaseModel):
    """A ledger payment suspended while the payer tops up."""

    order_draft: OrderDraft
    account_id: str
    total_amount: Decimal
    shortfall: Decimal
    top_up_request_id: str
    attempted_at: datetime = Field(default_factory=utcnow)


class PaymentResult(BaseModel):
    """Outcome of a payment attempt on either rail."""

    status: PaymentStatus
    rail: PaymentRail
    draft_id: str
    order_ref: str | None = None
    payment_ref: str | None = None
    shortfall: Decimal | None = None
    new_balance: Decimal | None = None
    top_up: TopUpRequest | None = None
    message: str = ""


class RefundObligation(BaseModel):
    """Unused courier buffer owed back to the payer's ledger."""

    seller_id: str
    quote_id: str
    amount: Decimal
    reason: str = "Delivery cost was lower than the charged amount"
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class CheckoutEvent(BaseModel):
    """Structured event emitted by the checkout core for presentation."""

    event_type: str
    session_id: str = ""
    seller_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
