"""Factory for the in-memory service doubles.

Wires a complete :class:`CheckoutServices` bundle, seeded with a few demo
artisans, ledger accounts and known addresses so the API is usable without
any external service.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from artisan_checkout.config import Settings
from artisan_checkout.mock_services.courier import FakeCourierService
from artisan_checkout.mock_services.gateway import FakePaymentGateway
from artisan_checkout.mock_services.geocoder import FakeGeocoder
from artisan_checkout.mock_services.ledger import InMemoryLedger
from artisan_checkout.mock_services.orders import InMemoryOrderStore
from artisan_checkout.models import Coordinates, SellerDeliveryConfig
from artisan_checkout.protocols.ports import CheckoutServices

_WEEKDAY_HOURS = {"enabled": True, "open": "09:00", "close": "18:00"}


@dataclass
class DemoSeller:
    name: str
    config: SellerDeliveryConfig = field(default_factory=SellerDeliveryConfig)


DEMO_SELLERS: dict[str, DemoSeller] = {
    "maple-pottery": DemoSeller(
        name="Maple Pottery Studio",
        config=SellerDeliveryConfig(
            pickup_enabled=True,
            personal_delivery_enabled=True,
            delivery_radius_km=15,
            delivery_fee=Decimal("7.50"),
            free_delivery_threshold=Decimal("100"),
            professional_delivery_enabled=True,
            professional_radius_km=40,
            location=Coordinates(lat=45.5019, lon=-73.5674),
            pickup_address="1200 Rue Sainte-Catherine O, Montreal, QC H3B 1K9, Canada",
            weekly_schedule={
                "monday": _WEEKDAY_HOURS,
                "wednesday": _WEEKDAY_HOURS,
                "friday": _WEEKDAY_HOURS,
                "saturday": {"enabled": True, "open": "10:00", "close": "15:00"},
            },
        ),
    ),
    "laurentian-woodworks": DemoSeller(
        name="Laurentian Woodworks",
        config=SellerDeliveryConfig(
            pickup_enabled=False,
            personal_delivery_enabled=True,
            delivery_radius_km=10,
            delivery_fee=Decimal("12.00"),
            professional_delivery_enabled=True,
            professional_radius_km=25,
            location=Coordinates(lat=45.5576, lon=-73.6496),
        ),
    ),
}

DEMO_ADDRESSES: dict[str, tuple[float, float]] = {
    "350 Rue Saint-Paul E, Montreal, QC H2Y 1H2, Canada": (45.5088, -73.5530),
    "1 Place Ville Marie, Montreal, QC H3B 2C4, Canada": (45.5017, -73.5693),
    "2000 Chemin de Chambly, Longueuil, QC J4J 3Y1, Canada": (45.5285, -73.4918),
}

DEMO_BALANCES: dict[str, Decimal] = {
    "acct-artisan-1": Decimal("50.00"),
    "acct-artisan-2": Decimal("250.00"),
}


def build_mock_services(settings: Settings) -> CheckoutServices:
    """Create the in-memory service bundle used when mock services are on."""
    orders = InMemoryOrderStore()
    return CheckoutServices(
        geocoder=FakeGeocoder(DEMO_ADDRESSES),
        courier=FakeCourierService(
            validity_seconds=settings.courier_quote_validity_seconds,
            currency=settings.currency,
        ),
        gateway=FakePaymentGateway(),
        ledger=InMemoryLedger(DEMO_BALANCES, orders=orders),
        orders=orders,
    )
