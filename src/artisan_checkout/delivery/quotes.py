"""Buffered courier quote cache.

Quotes are keyed by seller and normalized drop-off address, live until their
expiry, and are evicted wholesale whenever the active delivery address
changes so a quote is never charged against an address it was not priced
for.  The payer is always charged ``estimated_fee + buffer_amount``; whatever
part of the buffer the courier does not consume becomes a refund obligation.
"""

from __future__ import annotations

import enum
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal

import structlog
from pydantic import BaseModel

from artisan_checkout.config import Settings
from artisan_checkout.delivery.geo import haversine_km
from artisan_checkout.errors import InvalidCoordinates, QuoteServiceUnavailable
from artisan_checkout.models import (
    Coordinates,
    CourierQuote,
    DeliveryAddress,
    PackageDetails,
    PickupLocation,
    RefundObligation,
    to_money,
    utcnow,
)
from artisan_checkout.protocols.ports import CourierQuoteService

logger = structlog.get_logger(__name__)


class ExcessAction(str, enum.Enum):
    """What happens when the courier costs more than was charged."""

    NONE = "none"
    AUTO_APPROVE = "auto_approve"
    ASK_SELLER = "ask_seller"
    AUTO_DECLINE = "auto_decline"


class BufferSettlement(BaseModel):
    """Reconciliation of a charged quote against the actual courier fee."""

    seller_id: str
    quote_id: str
    charged_amount: Decimal
    actual_fee: Decimal
    refund_amount: Decimal = Decimal("0.00")
    excess_amount: Decimal = Decimal("0.00")
    excess_action: ExcessAction = ExcessAction.NONE
    refund: RefundObligation | None = None


def compute_buffer(estimated_fee: Decimal, buffer_percent: Decimal, settings: Settings) -> Decimal:
    """Buffer for *estimated_fee*, clamped to the configured bounds if any."""
    buffer = to_money(estimated_fee * buffer_percent / Decimal("100"))
    if settings.courier_min_buffer is not None and buffer < settings.courier_min_buffer:
        buffer = to_money(settings.courier_min_buffer)
    if settings.courier_max_buffer is not None and buffer > settings.courier_max_buffer:
        buffer = to_money(settings.courier_max_buffer)
    return buffer


class CourierQuoteCache:
    """Per-session cache of buffered courier quotes."""

    def __init__(
        self,
        courier: CourierQuoteService,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._courier = courier
        self._settings = settings
        self._clock = clock
        self._quotes: dict[tuple[str, str], CourierQuote] = {}
        self.refund_obligations: list[RefundObligation] = []

    def __len__(self) -> int:
        return len(self._quotes)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get_quote(
        self,
        seller_id: str,
        pickup: PickupLocation,
        dropoff: DeliveryAddress,
        package: PackageDetails | None = None,
        buffer_percent: Decimal | None = None,
    ) -> CourierQuote:
        """Return a live quote for *seller_id* delivering to *dropoff*.

        Served from cache unless expired.  When the quoting service fails a
        locally estimated fallback quote is returned; fallbacks are never
        cached, so the next call asks the service again.
        """
        percent = self._settings.courier_buffer_percent if buffer_percent is None else buffer_percent
        package = package or PackageDetails()
        key = (seller_id, dropoff.fingerprint())
        now = self._clock()

        cached = self._quotes.get(key)
        if cached is not None:
            if not cached.is_expired(now):
                logger.debug("quote_cache_hit", seller_id=seller_id, quote_id=cached.quote_id)
                return cached
            logger.info("quote_cache_expired", seller_id=seller_id, quote_id=cached.quote_id)
            del self._quotes[key]

        try:
            response = await self._courier.quote(pickup, dropoff, package, percent)
        except QuoteServiceUnavailable as exc:
            logger.warning("courier_quote_fallback", seller_id=seller_id, error=exc.message)
            return self._fallback_quote(seller_id, pickup, dropoff, percent, now)

        estimated_fee = to_money(response.estimated_fee)
        quote = CourierQuote(
            seller_id=seller_id,
            quote_id=response.quote_id,
            estimated_fee=estimated_fee,
            buffer_amount=compute_buffer(estimated_fee, percent, self._settings),
            buffer_percent=percent,
            currency=response.currency,
            expires_at=response.expires_at or self._default_expiry(now),
            address_fingerprint=key[1],
            created_at=now,
        )
        self._store(key, quote)
        logger.info(
            "courier_quote_cached",
            seller_id=seller_id,
            quote_id=quote.quote_id,
            estimated_fee=str(quote.estimated_fee),
            charged_amount=str(quote.charged_amount),
        )
        return quote

    def peek(self, seller_id: str, dropoff: DeliveryAddress) -> CourierQuote | None:
        """Return the cached quote without contacting the courier."""
        return self._quotes.get((seller_id, dropoff.fingerprint()))

    def is_live(self, quote: CourierQuote, dropoff: DeliveryAddress | None) -> bool:
        """Whether *quote* may still be charged for *dropoff*."""
        if dropoff is None or quote.address_fingerprint != dropoff.fingerprint():
            return False
        return not quote.is_expired(self._clock())

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate_all(self) -> int:
        """Evict every cached quote (the active address changed)."""
        evicted = len(self._quotes)
        self._quotes.clear()
        if evicted:
            logger.info("quote_cache_invalidated", evicted=evicted)
        return evicted

    def invalidate_seller(self, seller_id: str) -> int:
        keys = [key for key in self._quotes if key[0] == seller_id]
        for key in keys:
            del self._quotes[key]
        return len(keys)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def settle(self, quote: CourierQuote, actual_fee: Decimal) -> BufferSettlement:
        """Reconcile a charged quote with the courier's final fee.

        Any unused part of the charged amount is recorded as a refund
        obligation owed to the payer.  Amounts below
        ``courier_refund_threshold`` are still reported on the settlement
        but not queued.
        """
        actual_fee = to_money(actual_fee)
        settlement = BufferSettlement(
            seller_id=quote.seller_id,
            quote_id=quote.quote_id,
            charged_amount=quote.charged_amount,
            actual_fee=actual_fee,
        )

        if actual_fee < quote.charged_amount:
            refund_amount = to_money(quote.charged_amount - actual_fee)
            settlement.refund_amount = refund_amount
            if refund_amount >= self._settings.courier_refund_threshold and refund_amount > 0:
                obligation = RefundObligation(
                    seller_id=quote.seller_id,
                    quote_id=quote.quote_id,
                    amount=refund_amount,
                )
                self.refund_obligations.append(obligation)
                settlement.refund = obligation
            logger.info(
                "courier_buffer_refund_owed",
                seller_id=quote.seller_id,
                quote_id=quote.quote_id,
                refund_amount=str(refund_amount),
            )
        elif actual_fee > quote.charged_amount:
            excess = to_money(actual_fee - quote.charged_amount)
            settlement.excess_amount = excess
            if excess <= self._settings.courier_auto_approve_threshold:
                settlement.excess_action = ExcessAction.AUTO_APPROVE
            elif excess > self._settings.courier_seller_absorption_limit:
                settlement.excess_action = ExcessAction.AUTO_DECLINE
            else:
                settlement.excess_action = ExcessAction.ASK_SELLER
            logger.warning(
                "courier_fee_exceeds_charge",
                seller_id=quote.seller_id,
                quote_id=quote.quote_id,
                excess=str(excess),
                action=settlement.excess_action.value,
            )
        return settlement

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _store(self, key: tuple[str, str], quote: CourierQuote) -> None:
        # At most one live quote per seller.
        self.invalidate_seller(key[0])
        self._quotes[key] = quote

    def _default_expiry(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self._settings.courier_quote_validity_seconds)

    def _fallback_quote(
        self,
        seller_id: str,
        pickup: PickupLocation,
        dropoff: DeliveryAddress,
        buffer_percent: Decimal,
        now: datetime,
    ) -> CourierQuote:
        distance = self._settings.courier_fallback_distance_km
        if pickup.lat is not None and pickup.lon is not None:
            try:
                distance = haversine_km(Coordinates(lat=pickup.lat, lon=pickup.lon), dropoff.coordinates)
            except InvalidCoordinates as exc:
                logger.debug("fallback_distance_defaulted", seller_id=seller_id, error=exc.message)
        if distance <= 0:
            distance = self._settings.courier_fallback_distance_km

        estimated_fee = to_money(
            self._settings.courier_fallback_base_fee
            + self._settings.courier_fallback_per_km * Decimal(str(round(distance, 3)))
        )
        return CourierQuote(
            seller_id=seller_id,
            quote_id=f"fallback_{uuid.uuid4().hex[:12]}",
            estimated_fee=estimated_fee,
            buffer_amount=compute_buffer(estimated_fee, buffer_percent, self._settings),
            buffer_percent=buffer_percent,
            currency=self._settings.currency,
            expires_at=self._default_expiry(now),
            estimated=True,
            address_fingerprint=dropoff.fingerprint(),
            created_at=now,
        )
