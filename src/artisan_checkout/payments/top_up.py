"""Insufficient-funds top-up and retry for ledger payers.

A ledger payment short of funds is held as a :class:`PendingPayment` while
the payer adds money.  Once the top-up is confirmed the ledger is credited,
the balance is re-read, and the held payment is replayed exactly once.
"""

from __future__ import annotations

from decimal import Decimal

import structlog

from artisan_checkout.errors import CheckoutError, LedgerInsufficientFunds, TopUpTooSmall
from artisan_checkout.models import (
    OrderDraft,
    PaymentRail,
    PaymentResult,
    PaymentStatus,
    PendingPayment,
    TopUpRequest,
    to_money,
)
from artisan_checkout.payments.rails import PaymentRailSelector
from artisan_checkout.protocols.ports import LedgerService

logger = structlog.get_logger(__name__)


class LedgerTopUpRetryFlow:
    """Holds at most one suspended ledger payment per checkout."""

    def __init__(self, selector: PaymentRailSelector, ledger: LedgerService, currency: str = "CAD") -> None:
        self._selector = selector
        self._ledger = ledger
        self._currency = currency
        self.pending: PendingPayment | None = None
        self.request: TopUpRequest | None = None

    async def pay(self, draft: OrderDraft, account_id: str) -> PaymentResult:
        """Pay *draft* from the ledger, suspending it on a shortfall."""
        try:
            return await self._selector.attempt_payment(draft, PaymentRail.LEDGER, account_id=account_id)
        except LedgerInsufficientFunds as exc:
            return self._suspend(draft, account_id, exc.total, exc.balance, exc.message)

    async def confirm_top_up(
        self,
        request_id: str,
        amount: Decimal,
        reference: str = "",
        draft: OrderDraft | None = None,
    ) -> PaymentResult:
        """Credit the top-up and replay the held payment once.

        *draft* replaces the held draft when its courier quotes were
        re-priced while the payer was topping up.  A replacement the new
        balance no longer covers is held again for the remaining shortfall.

        Raises :class:`TopUpTooSmall` (payment stays held) when *amount* does
        not cover the shortfall.  Any failure of the replay propagates and
        the held payment is dropped.
        """
        pending = self.pending
        if pending is None or pending.top_up_request_id != request_id:
            raise CheckoutError(f"No payment is waiting on top-up {request_id}", field="top_up")

        amount = to_money(amount)
        if amount < pending.shortfall:
            raise TopUpTooSmall(
                f"Top-up of {amount} does not cover the shortfall of {pending.shortfall}",
                field="amount",
            )

        credit = await self._ledger.credit(pending.account_id, amount, source=reference or request_id)
        balance = await self._ledger.get_balance(pending.account_id)
        logger.info(
            "ledger_top_up_applied",
            request_id=request_id,
            amount=str(amount),
            transaction_id=credit.transaction_id,
            balance=str(balance),
        )

        self.pending = None
        self.request = None
        replay = draft or pending.order_draft
        repriced = replay.draft_id != pending.order_draft.draft_id
        try:
            if balance < replay.total:
                if repriced:
                    return self._suspend(
                        replay,
                        pending.account_id,
                        replay.total,
                        balance,
                        f"The order total changed to {replay.total} while you were topping up",
                    )
                raise LedgerInsufficientFunds(
                    shortfall=to_money(replay.total - balance),
                    balance=balance,
                    total=replay.total,
                )
            return await self._selector.attempt_payment(
                replay,
                PaymentRail.LEDGER,
                account_id=pending.account_id,
            )
        except CheckoutError as exc:
            logger.warning(
                "ledger_payment_retry_failed",
                draft_id=replay.draft_id,
                code=exc.code,
            )
            raise

    def cancel(self) -> None:
        if self.pending is not None:
            logger.info("ledger_top_up_cancelled", draft_id=self.pending.order_draft.draft_id)
        self.pending = None
        self.request = None

    def _suspend(
        self,
        draft: OrderDraft,
        account_id: str,
        total: Decimal,
        balance: Decimal,
        message: str,
    ) -> PaymentResult:
        shortfall = to_money(total - balance)
        self.request = TopUpRequest(
            account_id=account_id,
            minimum_amount=shortfall,
            currency=self._currency,
        )
        self.pending = PendingPayment(
            order_draft=draft,
            account_id=account_id,
            total_amount=total,
            shortfall=shortfall,
            top_up_request_id=self.request.request_id,
        )
        logger.info(
            "ledger_payment_suspended",
            draft_id=draft.draft_id,
            request_id=self.request.request_id,
            shortfall=str(shortfall),
        )
        return PaymentResult(
            status=PaymentStatus.TOP_UP_REQUIRED,
            rail=PaymentRail.LEDGER,
            draft_id=draft.draft_id,
            shortfall=shortfall,
            new_balance=balance,
            top_up=self.request,
            message=message,
        )
