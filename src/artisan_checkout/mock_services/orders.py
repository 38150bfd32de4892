"""In-memory order store."""

from __future__ import annotations

from uuid import uuid4

from artisan_checkout.models import OrderDraft
from artisan_checkout.protocols.ports import OrderService


class InMemoryOrderStore(OrderService):
    """Records finalized orders, one per draft id."""

    def __init__(self) -> None:
        self.orders: dict[str, dict] = {}
        self._by_draft: dict[str, str] = {}

    def record(self, draft: OrderDraft, payment_ref: str) -> str:
        existing = self._by_draft.get(draft.draft_id)
        if existing is not None:
            return existing
        order_ref = f"ord_{uuid4().hex[:12]}"
        self.orders[order_ref] = {
            "draft": draft,
            "payment_ref": payment_ref,
        }
        self._by_draft[draft.draft_id] = order_ref
        return order_ref

    async def create_order(self, draft: OrderDraft, payment_ref: str) -> str:
        return self.record(draft, payment_ref)

    def for_draft(self, draft_id: str) -> str | None:
        return self._by_draft.get(draft_id)
