"""Delivery eligibility rules per seller.

Decides which of pickup, personal (seller-run) delivery and courier delivery
a seller can offer for the buyer's resolved address, and chooses a fallback
method when an address edit invalidates the current choice.  Everything here
is free of side effects: callers receive structured results and decide how to
present them.
"""

from __future__ import annotations

from decimal import Decimal

import structlog
from pydantic import BaseModel

from artisan_checkout.delivery.geo import format_km, haversine_km
from artisan_checkout.errors import InvalidCoordinates
from artisan_checkout.models import (
    Coordinates,
    DeliveryMethod,
    DeliveryOption,
    DeliveryOptions,
    EligibilityStatus,
    SellerDeliveryConfig,
    to_money,
)

logger = structlog.get_logger(__name__)

PENDING_ADDRESS_REASON = "Pending address validation"
DISTANCE_ERROR_REASON = "Distance could not be calculated"

_FALLBACK_ORDER = (DeliveryMethod.PICKUP, DeliveryMethod.COURIER_DELIVERY)

_METHOD_LABELS = {
    DeliveryMethod.PICKUP: "Pickup",
    DeliveryMethod.PERSONAL_DELIVERY: "Personal delivery",
    DeliveryMethod.COURIER_DELIVERY: "Courier delivery",
}


class DeliveryFallback(BaseModel):
    """Result of re-validating a seller's selected method."""

    seller_id: str
    previous: DeliveryMethod
    selected: DeliveryMethod | None
    reason: str


def method_label(method: DeliveryMethod) -> str:
    return _METHOD_LABELS[method]


class DeliveryEligibility:
    """Evaluates delivery options for a seller group."""

    def evaluate(
        self,
        seller_id: str,
        config: SellerDeliveryConfig,
        subtotal: Decimal,
        buyer_location: Coordinates | None,
        seller_location: Coordinates | None = None,
    ) -> DeliveryOptions:
        """Return the pickup, personal and courier options for one seller."""
        seller_location = seller_location or config.location
        options = DeliveryOptions(
            seller_id=seller_id,
            pickup=self._pickup(config),
            personal_delivery=self._personal(config, subtotal, buyer_location, seller_location),
            courier_delivery=self._courier(config, buyer_location, seller_location),
        )
        logger.debug(
            "delivery_options_evaluated",
            seller_id=seller_id,
            pickup=options.pickup.status.value,
            personal=options.personal_delivery.status.value,
            courier=options.courier_delivery.status.value,
        )
        return options

    # ------------------------------------------------------------------
    # Per-method rules
    # ------------------------------------------------------------------

    def _pickup(self, config: SellerDeliveryConfig) -> DeliveryOption:
        if not config.pickup_enabled:
            return DeliveryOption(
                method=DeliveryMethod.PICKUP,
                status=EligibilityStatus.UNCONFIGURED,
                reason="Seller does not offer pickup",
            )
        return DeliveryOption(
            method=DeliveryMethod.PICKUP,
            status=EligibilityStatus.AVAILABLE,
            fee=Decimal("0.00"),
        )

    def _personal(
        self,
        config: SellerDeliveryConfig,
        subtotal: Decimal,
        buyer_location: Coordinates | None,
        seller_location: Coordinates | None,
    ) -> DeliveryOption:
        method = DeliveryMethod.PERSONAL_DELIVERY
        if not config.personal_delivery_enabled or config.delivery_radius_km <= 0:
            return DeliveryOption(
                method=method,
                status=EligibilityStatus.UNCONFIGURED,
                reason="Seller does not offer personal delivery",
            )

        option = self._within_radius(method, config.delivery_radius_km, buyer_location, seller_location)
        if not option.available:
            return option

        fee = to_money(config.delivery_fee)
        if config.free_delivery_threshold is not None and subtotal >= config.free_delivery_threshold:
            fee = Decimal("0.00")
        return option.model_copy(update={"fee": fee})

    def _courier(
        self,
        config: SellerDeliveryConfig,
        buyer_location: Coordinates | None,
        seller_location: Coordinates | None,
    ) -> DeliveryOption:
        method = DeliveryMethod.COURIER_DELIVERY
        if not config.professional_delivery_enabled:
            return DeliveryOption(
                method=method,
                status=EligibilityStatus.UNCONFIGURED,
                reason="Seller does not offer courier delivery",
            )
        # Fee stays unset until a quote is attached.
        return self._within_radius(method, config.professional_radius_km, buyer_location, seller_location)

    def _within_radius(
        self,
        method: DeliveryMethod,
        radius_km: float,
        buyer_location: Coordinates | None,
        seller_location: Coordinates | None,
    ) -> DeliveryOption:
        if buyer_location is None:
            return DeliveryOption(
                method=method,
                status=EligibilityStatus.PENDING_ADDRESS,
                reason=PENDING_ADDRESS_REASON,
            )
        try:
            distance = haversine_km(seller_location, buyer_location)
        except InvalidCoordinates as exc:
            logger.warning("delivery_distance_failed", method=method.value, error=exc.message)
            return DeliveryOption(
                method=method,
                status=EligibilityStatus.ERROR,
                reason=f"{DISTANCE_ERROR_REASON}: {exc.message}",
            )

        if distance > radius_km:
            return DeliveryOption(
                method=method,
                status=EligibilityStatus.OUT_OF_RADIUS,
                reason=f"outside {format_km(radius_km)} radius ({distance:.1f}km away)",
                distance_km=distance,
            )
        return DeliveryOption(
            method=method,
            status=EligibilityStatus.AVAILABLE,
            distance_km=distance,
        )

    # ------------------------------------------------------------------
    # Re-validation after address edits
    # ------------------------------------------------------------------

    def revalidate_selection(
        self,
        seller_id: str,
        current: DeliveryMethod | None,
        options: DeliveryOptions,
    ) -> DeliveryFallback | None:
        """Check the current choice against fresh options.

        Returns ``None`` when the choice still stands (including while the
        address is still pending validation).  Otherwise returns the fallback:
        pickup, then courier delivery, then no method at all.
        """
        if current is None or not current.needs_address:
            return None

        option = options.get(current)
        if option.available or option.pending:
            return None

        for candidate in _FALLBACK_ORDER:
            if candidate is current:
                continue
            if options.get(candidate).available:
                return DeliveryFallback(
                    seller_id=seller_id,
                    previous=current,
                    selected=candidate,
                    reason=(
                        f"{method_label(current)} is no longer available ({option.reason}); "
                        f"switched to {method_label(candidate).lower()}"
                    ),
                )

        return DeliveryFallback(
            seller_id=seller_id,
            previous=current,
            selected=None,
            reason=(
                f"{method_label(current)} is no longer available ({option.reason}) "
                "and no other delivery method is offered; please choose another address"
            ),
        )
