"""Checkout session orchestration.

A :class:`CheckoutSession` owns one buyer's checkout: the pure
:class:`CheckoutStateMachine`, the courier quote cache, the payment rail
selector, the top-up flow, and the session-scoped timers.  It performs all
I/O (geocoding, quoting, payment) and publishes every state machine event to
the :class:`CheckoutEventStream`.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

import structlog

from artisan_checkout.config import Settings
from artisan_checkout.delivery.eligibility import DeliveryEligibility
from artisan_checkout.delivery.quotes import BufferSettlement, CourierQuoteCache
from artisan_checkout.delivery.schedule import PickupScheduleResolver
from artisan_checkout.errors import (
    CheckoutError,
    GatewayDeclined,
    GatewayTransient,
    InvalidTransition,
    LedgerInsufficientFunds,
    QuoteExpired,
    TopUpTooSmall,
)
from artisan_checkout.models import (
    CheckoutEvent,
    CheckoutState,
    CourierQuote,
    DeliveryAddress,
    DeliveryBlocker,
    DeliveryMethod,
    PackageDetails,
    PaymentHandle,
    PaymentRail,
    PaymentResult,
    PickupLocation,
    PickupSlot,
    SellerCartGroup,
    utcnow,
)
from artisan_checkout.orchestrator.graph import (
    OUTCOME_SUCCEEDED,
    OUTCOME_TOP_UP_REQUIRED,
    compile_payment_graph,
)
from artisan_checkout.orchestrator.state import PaymentGraphState
from artisan_checkout.orchestrator.state_machine import CheckoutStateMachine, project_sections
from artisan_checkout.orchestrator.timers import Debouncer, LatestRequestGate
from artisan_checkout.payments.rails import PaymentRailSelector
from artisan_checkout.payments.top_up import LedgerTopUpRetryFlow
from artisan_checkout.protocols.ports import CheckoutServices
from artisan_checkout.streaming import (
    EVENT_ADDRESS_PENDING,
    EVENT_ADDRESS_VALIDATED,
    EVENT_CANCELLED,
    EVENT_PAYMENT_HANDLE_INVALIDATED,
    EVENT_PAYMENT_INTENT_REQUESTED,
    CheckoutEventStream,
)

logger = structlog.get_logger(__name__)

# Failures the payer can act on (new card, retry, top up) keep the checkout
# open; anything else ends it.
PAYER_ACTIONABLE = (
    GatewayDeclined,
    GatewayTransient,
    LedgerInsufficientFunds,
    QuoteExpired,
    TopUpTooSmall,
)

_EDITABLE = (
    CheckoutState.CONFIGURING_DELIVERY,
    CheckoutState.DELIVERY_CONFIRMED,
    CheckoutState.CONFIGURING_PAYMENT,
)


class CheckoutSession:
    """One buyer's checkout across every seller in the cart."""

    def __init__(
        self,
        groups: Iterable[SellerCartGroup],
        services: CheckoutServices,
        settings: Settings,
        stream: CheckoutEventStream,
        session_id: str | None = None,
        account_id: str | None = None,
        account_role: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_id = session_id or f"chk_{uuid.uuid4().hex[:12]}"
        self.account_id = account_id
        self.created_at = clock()
        self.cancelled = False
        self._settings = settings
        self._services = services
        self._stream = stream
        self._clock = clock
        self._log = logger.bind(session_id=self.session_id)

        self.eligibility = DeliveryEligibility()
        self.schedule = PickupScheduleResolver(clock=clock)
        self.quotes = CourierQuoteCache(services.courier, settings, clock=clock)
        self.selector = PaymentRailSelector(services.gateway, services.ledger, services.orders, settings)
        self.top_up_flow = LedgerTopUpRetryFlow(self.selector, services.ledger, currency=settings.currency)

        rail = self.selector.select_rail(account_role)
        self.machine = CheckoutStateMachine(
            groups,
            rail=rail,
            currency=settings.currency,
            session_id=self.session_id,
            eligibility=self.eligibility,
        )
        self._graph = compile_payment_graph(self.selector, self.top_up_flow, stream)
        self._validation = Debouncer(settings.address_debounce_seconds, name="address_validation")
        self._validation_gate = LatestRequestGate()
        self.last_result: PaymentResult | None = None

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    @property
    def state(self) -> CheckoutState:
        return self.machine.state

    @property
    def rail(self) -> PaymentRail:
        return self.machine.rail

    @property
    def payment_handle(self) -> PaymentHandle | None:
        return self.selector.handle

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or self._clock()
        return now - self.created_at > timedelta(seconds=self._settings.session_ttl_seconds)

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready view of the checkout for the API."""
        totals = self.machine.totals()
        handle = self.selector.handle
        return {
            "session_id": self.session_id,
            "state": self.machine.state.value,
            "rail": self.machine.rail.value,
            "cancelled": self.cancelled,
            "sections": project_sections(self.machine),
            "address": self.machine.address.model_dump(mode="json") if self.machine.address else None,
            "sellers": [
                {
                    "seller_id": seller_id,
                    "seller_name": group.seller_name,
                    "subtotal": str(group.subtotal),
                    "options": (
                        self.machine.options[seller_id].model_dump(mode="json")
                        if seller_id in self.machine.options
                        else None
                    ),
                    "selection": (
                        self.machine.selections[seller_id].model_dump(mode="json")
                        if seller_id in self.machine.selections
                        else None
                    ),
                }
                for seller_id, group in self.machine.groups.items()
            ],
            "blockers": [b.model_dump() for b in self.machine.blockers],
            "totals": totals.model_dump(mode="json"),
            "client_secret": handle.client_secret if handle else None,
            "top_up": self.machine.top_up.model_dump(mode="json") if self.machine.top_up else None,
            "order_ref": self.machine.order_ref,
            "failure_reason": self.machine.failure_reason,
        }

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Evaluate every seller's options before any address is known."""
        await self._refresh_options()

    async def set_address(self, address: DeliveryAddress | None) -> None:
        """Switch to or edit the delivery address.

        Known coordinates are used immediately.  Otherwise a complete
        address is validated once typing settles; the options stay in
        "pending address" until then.
        """
        self._require_open()
        current = self.machine.address
        if (
            address is not None
            and address.coordinates is None
            and current is not None
            and current.coordinates is not None
            and address.same_location(current)
            and address.source == current.source
        ):
            address = address.model_copy(update={"lat": current.lat, "lon": current.lon})

        events = self.machine.set_address(address)
        if events:
            self.quotes.invalidate_all()
            # Results of validations already in flight are for a stale address.
            self._validation_gate.invalidate()
        await self._dispatch(events)

        if not events:
            return
        await self._refresh_options()
        if address is not None and address.coordinates is None and address.is_complete:
            self._validation.schedule(lambda: self._validate_address(address))

    async def flush_address_validation(self) -> None:
        """Wait for a scheduled address validation to finish."""
        await self._validation.flush()

    async def _validate_address(self, address: DeliveryAddress) -> None:
        token = self._validation_gate.issue()
        self._log.debug("address_validation_started", token=token)
        result = await self._services.geocoder.geocode(address.one_line())

        if not self._validation_gate.is_current(token) or not address.same_location(self.machine.address):
            self._log.info("address_validation_superseded", token=token)
            return
        if self.machine.state not in _EDITABLE or self.cancelled:
            return

        if result is None:
            await self._stream.emit(
                self.session_id,
                EVENT_ADDRESS_PENDING,
                message="We could not verify this address yet; delivery options stay pending",
            )
            return

        located = address.model_copy(update={"lat": result.lat, "lon": result.lon})
        await self._dispatch(self.machine.set_address(located))
        await self._stream.emit(
            self.session_id,
            EVENT_ADDRESS_VALIDATED,
            data={"lat": result.lat, "lon": result.lon, "confidence": result.confidence},
            message=result.display_name or located.one_line(),
        )
        await self._refresh_options()

    async def _refresh_options(self) -> None:
        buyer = self.machine.address.coordinates if self.machine.address else None
        for seller_id, group in self.machine.groups.items():
            options = self.eligibility.evaluate(seller_id, group.config, group.subtotal, buyer)
            await self._dispatch(self.machine.update_options(options))
            selection = self.machine.selections.get(seller_id)
            if (
                selection is not None
                and selection.method is DeliveryMethod.COURIER_DELIVERY
                and selection.option.available
                and selection.quote is None
            ):
                await self._attach_courier_quote(seller_id)

    async def select_delivery_method(self, seller_id: str, method: DeliveryMethod) -> None:
        self._require_open()
        await self._dispatch(self.machine.select_method(seller_id, method))
        selection = self.machine.selections[seller_id]
        if method is DeliveryMethod.COURIER_DELIVERY and selection.option.available and selection.quote is None:
            await self._attach_courier_quote(seller_id)

    async def _attach_courier_quote(self, seller_id: str) -> CourierQuote:
        address = self.machine.address
        if address is None:
            raise QuoteExpired("Enter a delivery address to get a courier quote", seller_id=seller_id, field="address")
        group = self.machine.groups[seller_id]
        quote = await self.quotes.get_quote(
            seller_id,
            self._pickup_location(group),
            address,
            self._package(group),
        )
        await self._dispatch(self.machine.attach_quote(seller_id, quote))
        return quote

    def pickup_slots(self, seller_id: str) -> list[PickupSlot]:
        group = self._group(seller_id)
        return self.schedule.generate_slots(
            group.config.weekly_schedule,
            group.lines,
            days_ahead=self._settings.pickup_days_ahead,
        )

    async def select_pickup_slot(self, seller_id: str, day: date, slot_id: str) -> PickupSlot:
        self._require_open()
        group = self._group(seller_id)
        slot = self.schedule.validate_selection(day, slot_id, group.config.weekly_schedule, group.lines)
        await self._dispatch(self.machine.select_pickup_slot(seller_id, slot))
        return slot

    async def confirm_delivery(self) -> list[DeliveryBlocker]:
        self._require_open()
        await self._dispatch(self.machine.confirm_delivery())
        if self.machine.state is CheckoutState.CONFIGURING_DELIVERY:
            return list(self.machine.blockers)
        return []

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    async def proceed_to_payment(self) -> None:
        self._require_open()
        await self._dispatch(self.machine.begin_payment())

    async def back_to_delivery(self) -> None:
        self._require_open()
        self.top_up_flow.cancel()
        await self._dispatch(self.machine.back_to_delivery())

    async def pay(self, payment_method: str | None = None) -> PaymentResult:
        """Run the payment workflow for the confirmed checkout."""
        self._require_open()
        if self.machine.state is not CheckoutState.CONFIGURING_PAYMENT:
            raise InvalidTransition(f"Cannot pay while checkout is {self.machine.state.value}")
        if self.machine.top_up is not None:
            raise InvalidTransition("Confirm your top-up to complete this order", field="top_up")
        if self.machine.rail is PaymentRail.LEDGER and not self.account_id:
            raise CheckoutError("A ledger account is required to pay from balance", field="account_id")
        if self.machine.rail is PaymentRail.GATEWAY and not payment_method:
            raise CheckoutError("A payment method is required", field="payment_method")
        await self._refresh_stale_quotes()
        draft = self.machine.start_payment()
        await self._dispatch(self.machine.drain_events())

        final = await self._graph.ainvoke(
            {
                "session_id": self.session_id,
                "draft": draft,
                "rail": self.machine.rail,
                "account_id": self.account_id,
                "payment_method": payment_method,
            }
        )
        return await self._apply_outcome(final)

    async def confirm_top_up(self, request_id: str, amount: Decimal, reference: str = "") -> PaymentResult:
        """Apply a confirmed top-up and replay the held ledger payment."""
        self._require_open()
        if self.machine.top_up is None or self.machine.top_up.request_id != request_id:
            raise InvalidTransition(f"No payment is waiting on top-up {request_id}", field="top_up")
        # A re-priced quote rebuilds the draft the replay charges.
        await self._refresh_stale_quotes()
        draft = self.machine.start_payment()
        await self._dispatch(self.machine.drain_events())

        final = await self._graph.ainvoke(
            {
                "session_id": self.session_id,
                "draft": draft,
                "rail": PaymentRail.LEDGER,
                "account_id": self.account_id,
                "top_up_request_id": request_id,
                "top_up_amount": amount,
                "top_up_reference": reference,
            }
        )
        return await self._apply_outcome(final)

    async def _apply_outcome(self, final: PaymentGraphState) -> PaymentResult:
        outcome = final.get("outcome")
        result = final.get("result")

        if outcome == OUTCOME_SUCCEEDED and result is not None:
            self.last_result = result
            await self._dispatch(self.machine.payment_succeeded(result.order_ref))
            self._log.info("checkout_completed", order_ref=result.order_ref, rail=result.rail.value)
            return result

        if outcome == OUTCOME_TOP_UP_REQUIRED and result is not None and result.top_up is not None:
            self.last_result = result
            await self._dispatch(self.machine.payment_suspended(result.top_up))
            return result

        error = final.get("error") or CheckoutError("Payment could not be completed")
        if isinstance(error, TopUpTooSmall) and self.top_up_flow.request is not None:
            # The held payment is kept; ask for a larger top-up.
            await self._dispatch(self.machine.payment_suspended(self.top_up_flow.request))
            raise error

        terminal = not isinstance(error, PAYER_ACTIONABLE)
        await self._dispatch(self.machine.payment_failed(error.message, terminal=terminal, code=error.code))
        self._log.warning("checkout_payment_failed", code=error.code, terminal=terminal)
        raise error

    async def _refresh_stale_quotes(self) -> None:
        """Re-quote expired quotes and fallback estimates before charging."""
        address = self.machine.address
        for seller_id, quote in self.machine.courier_quotes().items():
            if self.quotes.is_live(quote, address) and not quote.estimated:
                continue
            self._log.info(
                "courier_quote_requote",
                seller_id=seller_id,
                quote_id=quote.quote_id,
                estimated=quote.estimated,
            )
            group = self.machine.groups[seller_id]
            fresh = await self.quotes.get_quote(
                seller_id,
                self._pickup_location(group),
                address,
                self._package(group),
            )
            await self._dispatch(self.machine.refresh_quote(seller_id, fresh))

    def settle_courier_fee(self, seller_id: str, actual_fee: Decimal) -> BufferSettlement:
        """Reconcile a seller's charged courier quote with the final fee."""
        quote = self.machine.courier_quotes().get(seller_id)
        if quote is None:
            raise InvalidTransition(f"No courier quote was charged for seller {seller_id}", seller_id=seller_id)
        return self.quotes.settle(quote, actual_fee)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(self) -> None:
        """Abandon the checkout: nothing reserved for it may be charged."""
        if self.cancelled:
            return
        self.cancelled = True
        self._validation.cancel()
        self._validation_gate.invalidate()
        self.top_up_flow.cancel()
        await self.selector.invalidate_handle()
        evicted = self.quotes.invalidate_all()
        self._log.info("checkout_cancelled", state=self.machine.state.value, quotes_evicted=evicted)
        await self._stream.emit(self.session_id, EVENT_CANCELLED, message="Checkout cancelled")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _dispatch(self, events: list[CheckoutEvent]) -> None:
        """Publish machine events and carry out the effects among them."""
        for event in events:
            if event.event_type == EVENT_PAYMENT_INTENT_REQUESTED:
                handle = await self.selector.prepare(Decimal(event.data["amount"]))
                event = event.model_copy(
                    update={"data": {**event.data, "intent_id": handle.intent_id}}
                )
            elif event.event_type == EVENT_PAYMENT_HANDLE_INVALIDATED:
                await self.selector.invalidate_handle()
            await self._stream.publish(event)

    def _require_open(self) -> None:
        if self.cancelled:
            raise InvalidTransition("This checkout was cancelled")

    def _group(self, seller_id: str) -> SellerCartGroup:
        group = self.machine.groups.get(seller_id)
        if group is None:
            raise InvalidTransition(f"Seller {seller_id} has no items in this cart", seller_id=seller_id)
        return group

    @staticmethod
    def _pickup_location(group: SellerCartGroup) -> PickupLocation:
        location = group.config.location
        return PickupLocation(
            address=group.config.pickup_address,
            lat=location.lat if location else None,
            lon=location.lon if location else None,
            contact_name=group.seller_name,
        )

    @staticmethod
    def _package(group: SellerCartGroup) -> PackageDetails:
        names = ", ".join(line.name for line in group.lines if line.name)
        return PackageDetails(declared_value=group.subtotal, description=names)


class CheckoutSessionManager:
    """In-process registry of live checkout sessions."""

    def __init__(self, services: CheckoutServices, settings: Settings, stream: CheckoutEventStream) -> None:
        self._services = services
        self._settings = settings
        self._stream = stream
        self._sessions: dict[str, CheckoutSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    async def create(
        self,
        groups: Iterable[SellerCartGroup],
        account_id: str | None = None,
        account_role: str | None = None,
    ) -> CheckoutSession:
        await self.purge_expired()
        session = CheckoutSession(
            groups,
            self._services,
            self._settings,
            self._stream,
            account_id=account_id,
            account_role=account_role,
        )
        self._sessions[session.session_id] = session
        await session.open()
        logger.info(
            "checkout_session_created",
            session_id=session.session_id,
            sellers=len(session.machine.groups),
            rail=session.rail.value,
        )
        return session

    def get(self, session_id: str) -> CheckoutSession | None:
        return self._sessions.get(session_id)

    async def purge_expired(self) -> int:
        expired = [s for s in self._sessions.values() if s.is_expired()]
        for session in expired:
            await session.cancel()
            self._stream.clear(session.session_id)
            del self._sessions[session.session_id]
        return len(expired)

    async def close(self) -> None:
        for session in list(self._sessions.values()):
            if session.state not in (CheckoutState.SUCCEEDED, CheckoutState.FAILED):
                await session.cancel()
        self._sessions.clear()
