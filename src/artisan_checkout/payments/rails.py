"""Payment rail selection and execution.

Artisans pay from their internal ledger balance; everyone else pays through
the card gateway.  The gateway rail reserves a payment intent ahead of
time, sized to the order total, and keeps it across retryable failures.
The ledger rail checks a freshly fetched balance and then debits and
records the order as one atomic unit.
"""

from __future__ import annotations

from decimal import Decimal

import structlog

from artisan_checkout.config import Settings
from artisan_checkout.errors import (
    CheckoutError,
    GatewayDeclined,
    GatewayTransient,
    LedgerInsufficientFunds,
    LedgerRaceLost,
)
from artisan_checkout.models import (
    OrderDraft,
    PaymentHandle,
    PaymentRail,
    PaymentResult,
    PaymentStatus,
    to_money,
)
from artisan_checkout.protocols.ports import LedgerService, OrderService, PaymentGateway

logger = structlog.get_logger(__name__)


class PaymentRailSelector:
    """Routes a finalized order draft to the gateway or the ledger."""

    def __init__(
        self,
        gateway: PaymentGateway,
        ledger: LedgerService,
        orders: OrderService,
        settings: Settings,
    ) -> None:
        self._gateway = gateway
        self._ledger = ledger
        self._orders = orders
        self._settings = settings
        self._handle: PaymentHandle | None = None
        self._completed: dict[str, PaymentResult] = {}

    @property
    def handle(self) -> PaymentHandle | None:
        return self._handle

    def select_rail(self, account_role: str | None) -> PaymentRail:
        if account_role and account_role.lower() in {r.lower() for r in self._settings.ledger_roles}:
            return PaymentRail.LEDGER
        return PaymentRail.GATEWAY

    def completed_result(self, draft_id: str) -> PaymentResult | None:
        return self._completed.get(draft_id)

    # ------------------------------------------------------------------
    # Gateway handle lifecycle
    # ------------------------------------------------------------------

    async def prepare(self, total: Decimal) -> PaymentHandle:
        """Create a payment intent for *total*, reusing one of the same amount."""
        total = to_money(total)
        if self._handle is not None:
            if self._handle.amount == total:
                return self._handle
            logger.info(
                "payment_handle_resized",
                intent_id=self._handle.intent_id,
                old_amount=str(self._handle.amount),
                new_amount=str(total),
            )
            await self.invalidate_handle()

        self._handle = await self._gateway.create_intent(total, self._settings.currency)
        logger.info("payment_handle_created", intent_id=self._handle.intent_id, amount=str(total))
        return self._handle

    async def invalidate_handle(self) -> None:
        """Cancel the held intent so it can never be charged."""
        handle, self._handle = self._handle, None
        if handle is None:
            return
        await self._gateway.cancel_intent(handle)
        logger.info("payment_handle_invalidated", intent_id=handle.intent_id)

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    async def attempt_payment(
        self,
        draft: OrderDraft,
        rail: PaymentRail,
        account_id: str | None = None,
        payment_method: str | None = None,
    ) -> PaymentResult:
        """Charge *draft* on *rail*.

        Raises the rail's :class:`CheckoutError` subclasses on failure.  A
        draft that already succeeded returns its recorded result untouched.
        """
        previous = self._completed.get(draft.draft_id)
        if previous is not None:
            logger.info("payment_already_completed", draft_id=draft.draft_id, order_ref=previous.order_ref)
            return previous

        if rail is PaymentRail.LEDGER:
            if not account_id:
                raise CheckoutError("A ledger account is required to pay from balance", field="account_id")
            result = await self._pay_from_ledger(draft, account_id)
        else:
            if not payment_method:
                raise CheckoutError("A payment method is required", field="payment_method")
            result = await self._pay_with_gateway(draft, payment_method)

        self._completed[draft.draft_id] = result
        return result

    async def _pay_with_gateway(self, draft: OrderDraft, payment_method: str) -> PaymentResult:
        handle = await self.prepare(draft.total)
        log = logger.bind(draft_id=draft.draft_id, intent_id=handle.intent_id)
        try:
            confirmation = await self._gateway.confirm(handle, payment_method)
        except GatewayDeclined:
            log.warning("gateway_payment_declined")
            # A declined intent cannot be reused.
            self._handle = None
            raise
        except GatewayTransient:
            log.warning("gateway_payment_transient_failure")
            raise

        order_ref = await self._orders.create_order(draft, confirmation.payment_ref)
        self._handle = None
        log.info("gateway_payment_succeeded", order_ref=order_ref, amount=str(draft.total))
        return PaymentResult(
            status=PaymentStatus.SUCCEEDED,
            rail=PaymentRail.GATEWAY,
            draft_id=draft.draft_id,
            order_ref=order_ref,
            payment_ref=confirmation.payment_ref,
            message="Payment confirmed",
        )

    async def _pay_from_ledger(self, draft: OrderDraft, account_id: str) -> PaymentResult:
        log = logger.bind(draft_id=draft.draft_id, account_id=account_id)
        total = to_money(draft.total)
        # A rejected debit is retried once against a fresh balance.
        for attempt in range(2):
            balance = to_money(await self._ledger.get_balance(account_id))
            if balance < total:
                shortfall = to_money(total - balance)
                log.info("ledger_insufficient_funds", balance=str(balance), total=str(total), shortfall=str(shortfall))
                raise LedgerInsufficientFunds(shortfall=shortfall, balance=balance, total=total)

            result = await self._ledger.debit_for_order(account_id, total, draft)
            if result.success:
                break
            log.warning("ledger_debit_rejected", balance_seen=str(balance), total=str(total), attempt=attempt + 1)
        else:
            raise LedgerRaceLost(
                "Your balance kept changing while paying; nothing was charged.",
                field="balance",
            )

        log.info("ledger_payment_succeeded", order_ref=result.order_ref, new_balance=str(result.new_balance))
        return PaymentResult(
            status=PaymentStatus.SUCCEEDED,
            rail=PaymentRail.LEDGER,
            draft_id=draft.draft_id,
            order_ref=result.order_ref,
            payment_ref=result.transaction_id,
            new_balance=result.new_balance,
            message="Paid from balance",
        )
