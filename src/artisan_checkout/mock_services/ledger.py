"""In-memory ledger with atomic compare-and-decrement debits."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any
from uuid import uuid4

import structlog

from artisan_checkout.models import OrderDraft, to_money
from artisan_checkout.mock_services.orders import InMemoryOrderStore
from artisan_checkout.protocols.ports import CreditResult, DebitResult, LedgerService

logger = structlog.get_logger(__name__)


class InMemoryLedger(LedgerService):
    """Account balances held in process.

    Every balance mutation runs under one ``asyncio.Lock``; a debit only
    succeeds if the balance still covers it at that moment.  Order debits
    also record the order in the same critical section and are idempotent
    per draft id.
    """

    def __init__(
        self,
        balances: dict[str, Decimal] | None = None,
        orders: InMemoryOrderStore | None = None,
    ) -> None:
        self.balances: dict[str, Decimal] = {k: to_money(v) for k, v in (balances or {}).items()}
        self.orders = orders or InMemoryOrderStore()
        self.calls: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()
        self._order_debits: dict[str, DebitResult] = {}

    def set_balance(self, account_id: str, amount: Decimal) -> None:
        self.balances[account_id] = to_money(amount)

    async def get_balance(self, account_id: str) -> Decimal:
        self.calls.append({"method": "get_balance", "account_id": account_id})
        balance = self.balances.get(account_id, Decimal("0.00"))
        # The read is stale by the time the caller resumes.
        await asyncio.sleep(0)
        return balance

    async def debit(self, account_id: str, amount: Decimal) -> DebitResult:
        self.calls.append({"method": "debit", "account_id": account_id, "amount": amount})
        async with self._lock:
            return self._compare_and_decrement(account_id, to_money(amount))

    async def credit(self, account_id: str, amount: Decimal, source: str) -> CreditResult:
        self.calls.append({"method": "credit", "account_id": account_id, "amount": amount, "source": source})
        async with self._lock:
            balance = to_money(self.balances.get(account_id, Decimal("0")) + to_money(amount))
            self.balances[account_id] = balance
        logger.info("mock_ledger_credited", account_id=account_id, amount=str(amount), balance=str(balance))
        return CreditResult(new_balance=balance, transaction_id=f"ltx_{uuid4().hex[:12]}")

    async def debit_for_order(
        self,
        account_id: str,
        amount: Decimal,
        draft: OrderDraft,
    ) -> DebitResult:
        self.calls.append(
            {"method": "debit_for_order", "account_id": account_id, "amount": amount, "draft_id": draft.draft_id}
        )
        async with self._lock:
            previous = self._order_debits.get(draft.draft_id)
            if previous is not None:
                return previous

            result = self._compare_and_decrement(account_id, to_money(amount))
            if not result.success:
                return result
            order_ref = self.orders.record(draft, result.transaction_id or "")
            result = DebitResult(
                success=True,
                new_balance=result.new_balance,
                order_ref=order_ref,
                transaction_id=result.transaction_id,
            )
            self._order_debits[draft.draft_id] = result
            return result

    def _compare_and_decrement(self, account_id: str, amount: Decimal) -> DebitResult:
        balance = self.balances.get(account_id, Decimal("0.00"))
        if balance < amount:
            logger.info("mock_ledger_debit_rejected", account_id=account_id, balance=str(balance), amount=str(amount))
            return DebitResult(success=False, new_balance=balance)
        balance = to_money(balance - amount)
        self.balances[account_id] = balance
        return DebitResult(success=True, new_balance=balance, transaction_id=f"ltx_{uuid4().hex[:12]}")
