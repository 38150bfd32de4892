"""Checkout state machine.

A pure object: it performs no I/O and only records the delivery choices,
enforces the lifecycle

    configuring_delivery -> delivery_confirmed -> configuring_payment
        -> payment_in_flight -> succeeded | failed

and returns the :class:`CheckoutEvent` list each command produced.  Two of
those events are effects the session must carry out against the payment
gateway: ``payment_intent_requested`` and ``payment_handle_invalidated``.

Which page sections are expanded is a separate projection
(:func:`project_sections`) so presentation never leaks into the rules.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal
from typing import Any

import structlog
from pydantic import BaseModel

from artisan_checkout.delivery.eligibility import DeliveryEligibility
from artisan_checkout.errors import (
    AddressIncomplete,
    DeliveryIneligible,
    InvalidTransition,
    QuoteExpired,
    ScheduleUnavailable,
)
from artisan_checkout.models import (
    CheckoutEvent,
    CheckoutSelection,
    CheckoutState,
    CourierQuote,
    DeliveryAddress,
    DeliveryBlocker,
    DeliveryMethod,
    DeliveryOptions,
    OrderDraft,
    PaymentRail,
    PickupSlot,
    SellerCartGroup,
    TopUpRequest,
    to_money,
    utcnow,
)
from artisan_checkout.streaming import (
    EVENT_ADDRESS_CHANGED,
    EVENT_COMPLETED,
    EVENT_DELIVERY_BLOCKED,
    EVENT_DELIVERY_CONFIRMED,
    EVENT_DELIVERY_REOPENED,
    EVENT_ERROR,
    EVENT_METHOD_FALLBACK,
    EVENT_METHOD_SELECTED,
    EVENT_OPTIONS_UPDATED,
    EVENT_PAYMENT_CONFIGURING,
    EVENT_PAYMENT_HANDLE_INVALIDATED,
    EVENT_PAYMENT_INTENT_REQUESTED,
    EVENT_PAYMENT_RETRYABLE,
    EVENT_PAYMENT_STARTED,
    EVENT_PICKUP_SLOT_SELECTED,
    EVENT_QUOTE_ATTACHED,
    EVENT_QUOTE_REFRESHED,
    EVENT_QUOTES_INVALIDATED,
    EVENT_TOP_UP_REQUIRED,
)

logger = structlog.get_logger(__name__)

_EDITABLE = (
    CheckoutState.CONFIGURING_DELIVERY,
    CheckoutState.DELIVERY_CONFIRMED,
    CheckoutState.CONFIGURING_PAYMENT,
)


class CheckoutTotals(BaseModel):
    subtotal: Decimal
    delivery_fees: dict[str, Decimal]
    delivery_total: Decimal
    total: Decimal


class CheckoutStateMachine:
    """Delivery and payment lifecycle of one multi-seller checkout."""

    def __init__(
        self,
        groups: Iterable[SellerCartGroup],
        rail: PaymentRail = PaymentRail.GATEWAY,
        currency: str = "CAD",
        session_id: str = "",
        eligibility: DeliveryEligibility | None = None,
    ) -> None:
        self.groups: dict[str, SellerCartGroup] = {g.seller_id: g for g in groups}
        self.rail = rail
        self.currency = currency
        self.session_id = session_id
        self.state = CheckoutState.CONFIGURING_DELIVERY
        self.address: DeliveryAddress | None = None
        self.options: dict[str, DeliveryOptions] = {}
        self.selections: dict[str, CheckoutSelection] = {}
        self.blockers: list[DeliveryBlocker] = []
        self.top_up: TopUpRequest | None = None
        self.order_ref: str | None = None
        self.failure_reason: str | None = None
        self._eligibility = eligibility or DeliveryEligibility()
        self._draft: OrderDraft | None = None
        self._outbox: list[CheckoutEvent] = []

    # ------------------------------------------------------------------
    # Delivery configuration
    # ------------------------------------------------------------------

    def set_address(self, address: DeliveryAddress | None) -> list[CheckoutEvent]:
        """Make *address* the active delivery address.

        Any change of location evicts every attached courier quote and drops
        a confirmed checkout back to delivery configuration.
        """
        self._require(_EDITABLE, "change the delivery address")
        previous = self.address
        self.address = address
        moved = address is None or not address.same_location(previous)
        if moved or (previous is not None and address is not None and previous.source != address.source):
            cleared = self._drop_quotes()
            self._emit(
                EVENT_ADDRESS_CHANGED,
                {
                    "source": address.source.value if address else None,
                    "complete": bool(address and address.is_complete),
                    "quotes_cleared": cleared,
                },
                "Delivery address updated",
            )
            if previous is not None:
                self._reopen("address_changed")
        return self._flush()

    def update_options(self, options: DeliveryOptions) -> list[CheckoutEvent]:
        """Store freshly evaluated options and re-check the seller's choice."""
        self._require(_EDITABLE, "update delivery options")
        seller_id = options.seller_id
        self._group(seller_id)
        self.options[seller_id] = options
        self._emit(
            EVENT_OPTIONS_UPDATED,
            {m.value: options.get(m).model_dump(mode="json", exclude={"quote"}) for m in DeliveryMethod},
            seller_id=seller_id,
        )

        selection = self.selections.get(seller_id)
        if selection is None:
            return self._flush()

        fallback = self._eligibility.revalidate_selection(seller_id, selection.method, options)
        if fallback is None:
            option = options.get(selection.method)
            if selection.quote is not None:
                option = option.with_quote(selection.quote)
            self.selections[seller_id] = selection.model_copy(update={"option": option})
            return self._flush()

        if fallback.selected is None:
            del self.selections[seller_id]
        else:
            self.selections[seller_id] = CheckoutSelection(
                seller_id=seller_id,
                method=fallback.selected,
                option=options.get(fallback.selected),
            )
        logger.info(
            "delivery_method_fallback",
            seller_id=seller_id,
            previous=fallback.previous.value,
            selected=fallback.selected.value if fallback.selected else None,
        )
        self._emit(
            EVENT_METHOD_FALLBACK,
            {
                "previous": fallback.previous.value,
                "selected": fallback.selected.value if fallback.selected else None,
            },
            fallback.reason,
            seller_id=seller_id,
        )
        self._reopen("method_fallback")
        return self._flush()

    def select_method(self, seller_id: str, method: DeliveryMethod) -> list[CheckoutEvent]:
        self._require(_EDITABLE, "change the delivery method")
        group = self._group(seller_id)
        options = self.options.get(seller_id)
        if options is None:
            raise DeliveryIneligible(
                f"Delivery options for {self._name(group)} have not been evaluated yet",
                seller_id=seller_id,
            )
        option = options.get(method)
        if not option.available and not option.pending:
            raise DeliveryIneligible(
                option.reason or f"{method.value} is not available for {self._name(group)}",
                seller_id=seller_id,
            )

        current = self.selections.get(seller_id)
        if current is not None and current.method is method:
            return self._flush()

        self.selections[seller_id] = CheckoutSelection(seller_id=seller_id, method=method, option=option)
        self._emit(
            EVENT_METHOD_SELECTED,
            {"method": method.value, "fee": _money_str(option.fee)},
            seller_id=seller_id,
        )
        self._reopen("method_changed")
        return self._flush()

    def select_pickup_slot(self, seller_id: str, slot: PickupSlot) -> list[CheckoutEvent]:
        self._require(_EDITABLE, "change the pickup time")
        selection = self.selections.get(seller_id)
        if selection is None or selection.method is not DeliveryMethod.PICKUP:
            raise InvalidTransition(
                "Choose pickup before choosing a pickup time",
                seller_id=seller_id,
                field="pickup_slot",
            )
        if selection.pickup_slot == slot:
            return self._flush()
        self.selections[seller_id] = selection.model_copy(update={"pickup_slot": slot})
        self._emit(
            EVENT_PICKUP_SLOT_SELECTED,
            {"date": slot.pickup_date.isoformat(), "slot_id": slot.slot_id, "label": slot.full_label},
            seller_id=seller_id,
        )
        self._reopen("pickup_slot_changed")
        return self._flush()

    def attach_quote(self, seller_id: str, quote: CourierQuote) -> list[CheckoutEvent]:
        """Price the seller's courier delivery with *quote*."""
        self._require(_EDITABLE, "attach a courier quote")
        selection = self._courier_selection(seller_id)
        self._check_quote_address(seller_id, quote)
        previous_fee = selection.fee if selection.quote else None
        self.selections[seller_id] = selection.model_copy(
            update={"quote": quote, "option": selection.option.with_quote(quote)}
        )
        self._emit(
            EVENT_QUOTE_ATTACHED,
            {
                "quote_id": quote.quote_id,
                "estimated_fee": str(quote.estimated_fee),
                "buffer_amount": str(quote.buffer_amount),
                "charged_amount": str(quote.charged_amount),
                "estimated": quote.estimated,
                "expires_at": quote.expires_at.isoformat(),
            },
            seller_id=seller_id,
        )
        if previous_fee != quote.charged_amount:
            self._reopen("courier_fee_changed")
        return self._flush()

    def refresh_quote(self, seller_id: str, quote: CourierQuote) -> list[CheckoutEvent]:
        """Swap an expired quote for a fresh one without leaving payment.

        If the total changes, gateway payers get a re-sized payment intent.
        """
        self._require(
            (CheckoutState.DELIVERY_CONFIRMED, CheckoutState.CONFIGURING_PAYMENT),
            "refresh a courier quote",
        )
        selection = self._courier_selection(seller_id)
        self._check_quote_address(seller_id, quote)
        before = self.totals().total
        self.selections[seller_id] = selection.model_copy(
            update={"quote": quote, "option": selection.option.with_quote(quote)}
        )
        self._draft = None
        after = self.totals().total
        self._emit(
            EVENT_QUOTE_REFRESHED,
            {"quote_id": quote.quote_id, "charged_amount": str(quote.charged_amount), "total": str(after)},
            seller_id=seller_id,
        )
        if after != before and self.rail is PaymentRail.GATEWAY and self.state is CheckoutState.CONFIGURING_PAYMENT:
            self._emit(EVENT_PAYMENT_INTENT_REQUESTED, {"amount": str(after), "currency": self.currency})
        return self._flush()

    def clear_quotes(self) -> list[CheckoutEvent]:
        self._require(_EDITABLE, "clear courier quotes")
        if self._drop_quotes():
            self._reopen("quotes_cleared")
        return self._flush()

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    def delivery_blockers(self) -> list[DeliveryBlocker]:
        """Everything still preventing delivery confirmation, per seller."""
        blockers: list[DeliveryBlocker] = []
        for seller_id, group in self.groups.items():
            name = self._name(group)
            selection = self.selections.get(seller_id)
            if selection is None:
                blockers.append(
                    DeliveryBlocker(
                        seller_id=seller_id,
                        field="delivery_method",
                        code="method_missing",
                        message=f"Choose a delivery method for {name}",
                    )
                )
                continue

            if selection.method is DeliveryMethod.PICKUP:
                if not selection.option.available:
                    blockers.append(self._ineligible(seller_id, selection, name))
                elif selection.pickup_slot is None:
                    blockers.append(
                        DeliveryBlocker(
                            seller_id=seller_id,
                            field="pickup_slot",
                            code=ScheduleUnavailable.code,
                            message=f"Choose a pickup time for {name}",
                        )
                    )
                continue

            if self.address is None or not self.address.is_complete:
                missing = self.address.missing_fields if self.address else ["street", "city", "state", "postal_code", "country"]
                blockers.append(
                    DeliveryBlocker(
                        seller_id=seller_id,
                        field="address",
                        code=AddressIncomplete.code,
                        message=f"Complete the delivery address for {name} (missing: {', '.join(missing)})",
                    )
                )
            elif selection.option.pending:
                blockers.append(
                    DeliveryBlocker(
                        seller_id=seller_id,
                        field="address",
                        code="address_pending",
                        message=f"The delivery address for {name} is still being validated",
                    )
                )
            elif not selection.option.available:
                blockers.append(self._ineligible(seller_id, selection, name))
            elif selection.method is DeliveryMethod.COURIER_DELIVERY and selection.quote is None:
                blockers.append(
                    DeliveryBlocker(
                        seller_id=seller_id,
                        field="courier_quote",
                        code=QuoteExpired.code,
                        message=f"Get a courier delivery quote for {name}",
                    )
                )
        return blockers

    def confirm_delivery(self) -> list[CheckoutEvent]:
        """Lock in delivery choices, or stay put and report the blockers."""
        if self.state is CheckoutState.DELIVERY_CONFIRMED:
            return self._flush()
        self._require((CheckoutState.CONFIGURING_DELIVERY,), "confirm delivery")

        self.blockers = self.delivery_blockers()
        if self.blockers:
            logger.info("delivery_confirmation_blocked", blockers=len(self.blockers))
            self._emit(
                EVENT_DELIVERY_BLOCKED,
                {"blockers": [b.model_dump() for b in self.blockers]},
                self.blockers[0].message,
            )
            return self._flush()

        self.state = CheckoutState.DELIVERY_CONFIRMED
        totals = self.totals()
        self._emit(
            EVENT_DELIVERY_CONFIRMED,
            {
                "subtotal": str(totals.subtotal),
                "delivery_total": str(totals.delivery_total),
                "total": str(totals.total),
                "sections": project_sections(self),
            },
        )
        return self._flush()

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    def begin_payment(self) -> list[CheckoutEvent]:
        """Open the payment step; repeating the call changes nothing."""
        if self.state is CheckoutState.CONFIGURING_PAYMENT:
            return self._flush()
        self._require((CheckoutState.DELIVERY_CONFIRMED,), "continue to payment")
        self.state = CheckoutState.CONFIGURING_PAYMENT
        total = self.totals().total
        self._emit(
            EVENT_PAYMENT_CONFIGURING,
            {"rail": self.rail.value, "total": str(total), "sections": project_sections(self)},
        )
        if self.rail is PaymentRail.GATEWAY:
            self._emit(EVENT_PAYMENT_INTENT_REQUESTED, {"amount": str(total), "currency": self.currency})
        return self._flush()

    def back_to_delivery(self) -> list[CheckoutEvent]:
        self._require(
            (CheckoutState.DELIVERY_CONFIRMED, CheckoutState.CONFIGURING_PAYMENT),
            "go back to delivery",
        )
        self._reopen("back_navigation")
        return self._flush()

    def start_payment(self) -> OrderDraft:
        """Move into ``payment_in_flight`` and return the draft to charge.

        A payment resumed after a top-up reuses the same draft, so its
        ``draft_id`` stays the idempotency key for every attempt.
        """
        self._require((CheckoutState.CONFIGURING_PAYMENT,), "pay")
        draft = self._draft or self.build_order_draft()
        self._draft = draft
        self.state = CheckoutState.PAYMENT_IN_FLIGHT
        self.top_up = None
        self._emit(EVENT_PAYMENT_STARTED, {"draft_id": draft.draft_id, "total": str(draft.total)})
        return draft

    def payment_succeeded(self, order_ref: str | None) -> list[CheckoutEvent]:
        self._require((CheckoutState.PAYMENT_IN_FLIGHT,), "complete payment")
        self.state = CheckoutState.SUCCEEDED
        self.order_ref = order_ref
        self._emit(
            EVENT_COMPLETED,
            {"order_ref": order_ref, "sections": project_sections(self)},
            "Order placed",
        )
        return self._flush()

    def payment_failed(self, reason: str, *, terminal: bool = False, code: str = "") -> list[CheckoutEvent]:
        """Record a failed attempt.

        Non-terminal failures return to payment configuration so the payer
        can retry; terminal ones end the checkout.
        """
        self._require((CheckoutState.PAYMENT_IN_FLIGHT,), "fail payment")
        self.failure_reason = reason
        if terminal:
            self.state = CheckoutState.FAILED
            self._emit(EVENT_ERROR, {"code": code}, reason)
        else:
            self.state = CheckoutState.CONFIGURING_PAYMENT
            self._emit(EVENT_PAYMENT_RETRYABLE, {"code": code, "sections": project_sections(self)}, reason)
        return self._flush()

    def payment_suspended(self, request: TopUpRequest) -> list[CheckoutEvent]:
        """Park a ledger payment until the payer tops up."""
        self._require((CheckoutState.PAYMENT_IN_FLIGHT,), "suspend payment")
        self.state = CheckoutState.CONFIGURING_PAYMENT
        self.top_up = request
        self._emit(
            EVENT_TOP_UP_REQUIRED,
            {
                "request_id": request.request_id,
                "minimum_amount": str(request.minimum_amount),
                "currency": request.currency,
            },
            f"Add at least {request.minimum_amount} {request.currency} to your balance to complete this order",
        )
        return self._flush()

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def totals(self) -> CheckoutTotals:
        subtotal = to_money(sum((g.subtotal for g in self.groups.values()), Decimal("0")))
        fees = {seller_id: selection.fee for seller_id, selection in self.selections.items()}
        delivery_total = to_money(sum(fees.values(), Decimal("0")))
        return CheckoutTotals(
            subtotal=subtotal,
            delivery_fees=fees,
            delivery_total=delivery_total,
            total=to_money(subtotal + delivery_total),
        )

    def build_order_draft(self) -> OrderDraft:
        blockers = self.delivery_blockers()
        if blockers:
            raise InvalidTransition(blockers[0].message, seller_id=blockers[0].seller_id, field=blockers[0].field)
        totals = self.totals()
        needs_address = any(s.method.needs_address for s in self.selections.values())
        return OrderDraft(
            lines=[line for group in self.groups.values() for line in group.lines],
            delivery_method_per_seller={s: sel.method for s, sel in self.selections.items()},
            delivery_fees=totals.delivery_fees,
            pickup_slots={s: sel.pickup_slot for s, sel in self.selections.items() if sel.pickup_slot},
            courier_quotes={s: sel.quote.quote_id for s, sel in self.selections.items() if sel.quote},
            delivery_address=self.address if needs_address else None,
            subtotal=totals.subtotal,
            delivery_total=totals.delivery_total,
            total=totals.total,
            currency=self.currency,
        )

    def courier_quotes(self) -> dict[str, CourierQuote]:
        return {s: sel.quote for s, sel in self.selections.items() if sel.quote is not None}

    def drain_events(self) -> list[CheckoutEvent]:
        """Events recorded outside a command's return value (``start_payment``)."""
        return self._flush()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, allowed: tuple[CheckoutState, ...], action: str) -> None:
        if self.state not in allowed:
            raise InvalidTransition(f"Cannot {action} while checkout is {self.state.value}")

    def _group(self, seller_id: str) -> SellerCartGroup:
        group = self.groups.get(seller_id)
        if group is None:
            raise InvalidTransition(f"Seller {seller_id} has no items in this cart", seller_id=seller_id)
        return group

    def _courier_selection(self, seller_id: str) -> CheckoutSelection:
        selection = self.selections.get(seller_id)
        if selection is None or selection.method is not DeliveryMethod.COURIER_DELIVERY:
            raise InvalidTransition(
                "Courier delivery is not the selected method",
                seller_id=seller_id,
                field="delivery_method",
            )
        return selection

    def _check_quote_address(self, seller_id: str, quote: CourierQuote) -> None:
        if self.address is None or quote.address_fingerprint != self.address.fingerprint():
            raise QuoteExpired(
                "This courier quote was priced for a different address",
                seller_id=seller_id,
                field="courier_quote",
            )

    def _drop_quotes(self) -> int:
        cleared = 0
        for seller_id, selection in list(self.selections.items()):
            if selection.quote is None:
                continue
            option = selection.option.model_copy(update={"quote": None, "fee": None})
            self.selections[seller_id] = selection.model_copy(update={"quote": None, "option": option})
            cleared += 1
        if cleared:
            self._draft = None
            self._emit(EVENT_QUOTES_INVALIDATED, {"count": cleared}, "Courier quotes need refreshing")
        return cleared

    def _reopen(self, cause: str) -> None:
        previous = self.state
        self._draft = None
        if previous is CheckoutState.CONFIGURING_DELIVERY:
            return
        self.state = CheckoutState.CONFIGURING_DELIVERY
        self.top_up = None
        if previous is CheckoutState.CONFIGURING_PAYMENT and self.rail is PaymentRail.GATEWAY:
            self._emit(EVENT_PAYMENT_HANDLE_INVALIDATED, {"cause": cause})
        self._emit(
            EVENT_DELIVERY_REOPENED,
            {"cause": cause, "previous": previous.value, "sections": project_sections(self)},
        )
        logger.debug("delivery_reopened", cause=cause, previous=previous.value)

    def _ineligible(self, seller_id: str, selection: CheckoutSelection, name: str) -> DeliveryBlocker:
        return DeliveryBlocker(
            seller_id=seller_id,
            field="delivery_method",
            code=DeliveryIneligible.code,
            message=f"{name}: {selection.option.reason or 'delivery method unavailable'}",
        )

    @staticmethod
    def _name(group: SellerCartGroup) -> str:
        return group.seller_name or group.seller_id

    def _emit(
        self,
        event_type: str,
        data: dict[str, Any] | None = None,
        message: str = "",
        seller_id: str | None = None,
    ) -> None:
        self._outbox.append(
            CheckoutEvent(
                event_type=event_type,
                session_id=self.session_id,
                seller_id=seller_id,
                data=data or {},
                message=message,
                timestamp=utcnow(),
            )
        )

    def _flush(self) -> list[CheckoutEvent]:
        events, self._outbox = self._outbox, []
        return events


def project_sections(machine: CheckoutStateMachine) -> dict[str, bool]:
    """Which checkout sections are expanded for the current state."""
    state = machine.state
    return {
        "delivery": state is CheckoutState.CONFIGURING_DELIVERY,
        "delivery_summary": state is not CheckoutState.CONFIGURING_DELIVERY,
        "payment": state in (CheckoutState.CONFIGURING_PAYMENT, CheckoutState.PAYMENT_IN_FLIGHT),
        "payment_locked": state is CheckoutState.PAYMENT_IN_FLIGHT,
        "top_up": machine.top_up is not None,
        "confirmation": state is CheckoutState.SUCCEEDED,
    }


def _money_str(value: Decimal | None) -> str | None:
    return None if value is None else str(value)
