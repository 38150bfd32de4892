"""LangGraph state schema for the payment workflow.

The ``PaymentGraphState`` TypedDict describes every piece of data that flows
through the graph.  Nodes read from and write to this shared state.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TypedDict

from artisan_checkout.errors import CheckoutError
from artisan_checkout.models import OrderDraft, PaymentRail, PaymentResult


class PaymentGraphState(TypedDict, total=False):
    """Typed dictionary describing the full state flowing through the graph."""

    # --- Input ----------------------------------------------------------------
    session_id: str
    draft: OrderDraft
    rail: PaymentRail
    account_id: str | None
    payment_method: str | None

    # --- Top-up confirmation (re-invocation after the gate) -------------------
    top_up_request_id: str | None
    top_up_amount: Decimal | None
    top_up_reference: str

    # --- Output ---------------------------------------------------------------
    result: PaymentResult | None
    outcome: str

    # --- Error handling -------------------------------------------------------
    error: CheckoutError | None
