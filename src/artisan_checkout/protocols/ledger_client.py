"""Internal balance ledger client."""

from __future__ import annotations

from decimal import Decimal

import httpx

from artisan_checkout.config import Settings
from artisan_checkout.errors import ServiceClientError
from artisan_checkout.models import OrderDraft
from artisan_checkout.protocols.http import ServiceClient
from artisan_checkout.protocols.ports import CreditResult, DebitResult, LedgerService


class LedgerClient(ServiceClient, LedgerService):
    """Ledger service whose debits are server-side compare-and-decrement."""

    service_name = "ledger"

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(settings.ledger_url, timeout=settings.ledger_timeout, transport=transport)

    async def get_balance(self, account_id: str) -> Decimal:
        data = await self._request("GET", f"/accounts/{account_id}/balance")
        return Decimal(str(data["balance"]))

    async def debit(self, account_id: str, amount: Decimal) -> DebitResult:
        return await self._debit(f"/accounts/{account_id}/debits", {"amount": str(amount)})

    async def credit(self, account_id: str, amount: Decimal, source: str) -> CreditResult:
        data = await self._request(
            "POST",
            f"/accounts/{account_id}/credits",
            json_body={"amount": str(amount), "source": source},
        )
        return CreditResult(
            new_balance=Decimal(str(data["new_balance"])),
            transaction_id=str(data.get("transaction_id", "")),
        )

    async def debit_for_order(
        self,
        account_id: str,
        amount: Decimal,
        draft: OrderDraft,
    ) -> DebitResult:
        return await self._debit(
            f"/accounts/{account_id}/order-debits",
            {
                "amount": str(amount),
                "idempotency_key": draft.draft_id,
                "order": draft.model_dump(mode="json"),
            },
        )

    async def _debit(self, path: str, body: dict) -> DebitResult:
        try:
            data = await self._request("POST", path, json_body=body, retries=0)
        except ServiceClientError as exc:
            # 409: the balance no longer covers the amount at debit time.
            if exc.upstream_status == 409:
                return DebitResult(success=False, new_balance=None)
            raise
        return DebitResult(
            success=bool(data.get("success", True)),
            new_balance=Decimal(str(data["new_balance"])),
            order_ref=data.get("order_ref"),
            transaction_id=data.get("transaction_id"),
        )
