"""Shared test fixtures for the artisan checkout service."""

from datetime import timedelta
from decimal import Decimal

import pytest

from artisan_checkout.config import Settings
from artisan_checkout.mock_services.courier import FakeCourierService
from artisan_checkout.mock_services.gateway import FakePaymentGateway
from artisan_checkout.mock_services.geocoder import FakeGeocoder
from artisan_checkout.mock_services.ledger import InMemoryLedger
from artisan_checkout.mock_services.orders import InMemoryOrderStore
from artisan_checkout.models import (
    CartLine,
    Coordinates,
    DeliveryAddress,
    DeliveryMethod,
    OrderDraft,
    SellerCartGroup,
    SellerDeliveryConfig,
    utcnow,
)
from artisan_checkout.protocols.ports import CheckoutServices
from artisan_checkout.streaming import CheckoutEventStream


class FakeClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


# One degree of latitude on a 6371km sphere.
KM_PER_DEGREE_LAT = 111.19492664

SELLER_LOCATION = Coordinates(lat=45.0, lon=-73.0)

BUYER_STREET = "12 Rue des Artisans"


def north_of_seller(km: float) -> Coordinates:
    return Coordinates(lat=SELLER_LOCATION.lat + km / KM_PER_DEGREE_LAT, lon=SELLER_LOCATION.lon)


def make_address(street: str = BUYER_STREET, at: Coordinates | None = None, **overrides) -> DeliveryAddress:
    fields = {
        "street": street,
        "city": "Montreal",
        "state": "QC",
        "postal_code": "H2Y 1H2",
        "country": "Canada",
    }
    fields.update(overrides)
    if at is not None:
        fields["lat"] = at.lat
        fields["lon"] = at.lon
    return DeliveryAddress(**fields)


def make_line(seller_id: str, price: str, quantity: int = 1, **overrides) -> CartLine:
    return CartLine(
        product_id=overrides.pop("product_id", f"{seller_id}-item-{price}"),
        seller_id=seller_id,
        unit_price=Decimal(price),
        quantity=quantity,
        **overrides,
    )


def make_group(
    seller_id: str,
    *prices: str,
    config: SellerDeliveryConfig | None = None,
    name: str = "",
) -> SellerCartGroup:
    return SellerCartGroup(
        seller_id=seller_id,
        seller_name=name or seller_id.title(),
        lines=[make_line(seller_id, p) for p in prices],
        config=config or SellerDeliveryConfig(location=SELLER_LOCATION),
    )


def make_draft(total: str, seller_id: str = "pottery") -> OrderDraft:
    amount = Decimal(total)
    return OrderDraft(
        lines=[make_line(seller_id, total)],
        delivery_method_per_seller={seller_id: DeliveryMethod.PICKUP},
        delivery_fees={seller_id: Decimal("0.00")},
        subtotal=amount,
        delivery_total=Decimal("0.00"),
        total=amount,
    )


def courier_only_config(**overrides) -> SellerDeliveryConfig:
    """Pickup off, personal delivery within 10km, courier within 25km."""
    fields = {
        "pickup_enabled": False,
        "personal_delivery_enabled": True,
        "delivery_radius_km": 10,
        "delivery_fee": Decimal("5.00"),
        "professional_delivery_enabled": True,
        "professional_radius_km": 25,
        "location": SELLER_LOCATION,
        "pickup_address": "1 Workshop Lane, Montreal, QC",
    }
    fields.update(overrides)
    return SellerDeliveryConfig(**fields)


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        environment="testing",
        address_debounce_seconds=0.0,
        geocode_min_interval_seconds=0.0,
    )


@pytest.fixture
def order_store():
    return InMemoryOrderStore()


@pytest.fixture
def ledger(order_store):
    return InMemoryLedger({"acct-1": Decimal("50.00")}, orders=order_store)


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def courier(clock):
    courier = FakeCourierService(clock=clock)
    courier.fixed_fee = Decimal("10.00")
    return courier


@pytest.fixture
def geocoder():
    return FakeGeocoder()


@pytest.fixture
def services(geocoder, courier, gateway, ledger, order_store):
    return CheckoutServices(
        geocoder=geocoder,
        courier=courier,
        gateway=gateway,
        ledger=ledger,
        orders=order_store,
    )


@pytest.fixture
def stream():
    return CheckoutEventStream()
