"""LangGraph StateGraph for the payment workflow.

Nodes
-----
route          -- Entry point; decides between a fresh attempt and a top-up
attempt_payment -- Charge the draft on the payer's rail
apply_top_up   -- Credit a confirmed top-up and replay the held payment
complete       -- Payment succeeded
await_top_up   -- Ledger shortfall; the run ends until the payer tops up
fail           -- Payment failed

Edges (with conditional routing)
------
route -> attempt_payment | apply_top_up (if a top-up was confirmed)
attempt_payment -> complete | await_top_up | fail
apply_top_up -> complete | await_top_up (re-priced order) | fail

The top-up gate ends the run.  Confirming the top-up invokes the graph again
with ``top_up_request_id`` set, which routes straight to ``apply_top_up``.
"""

from __future__ import annotations

from decimal import Decimal

import structlog
from langgraph.graph import END, StateGraph

from artisan_checkout.errors import CheckoutError
from artisan_checkout.models import PaymentRail, PaymentStatus
from artisan_checkout.orchestrator.state import PaymentGraphState
from artisan_checkout.payments.rails import PaymentRailSelector
from artisan_checkout.payments.top_up import LedgerTopUpRetryFlow
from artisan_checkout.streaming import (
    EVENT_PAYMENT_PROCESSING,
    EVENT_TOP_UP_CONFIRMED,
    CheckoutEventStream,
)

logger = structlog.get_logger(__name__)

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_TOP_UP_REQUIRED = "top_up_required"
OUTCOME_FAILED = "failed"


# ---------------------------------------------------------------------------
# Node factories
# ---------------------------------------------------------------------------


async def _route_node(state: PaymentGraphState) -> PaymentGraphState:
    """Entry node; routing happens on its outgoing edge."""
    return {**state, "error": None}


def _make_attempt_node(
    selector: PaymentRailSelector,
    top_up_flow: LedgerTopUpRetryFlow,
    stream: CheckoutEventStream,
):
    """Create the *attempt_payment* node function."""

    async def attempt_node(state: PaymentGraphState) -> PaymentGraphState:
        session_id = state.get("session_id", "")
        draft = state["draft"]
        rail = state.get("rail", PaymentRail.GATEWAY)

        await stream.emit(
            session_id,
            EVENT_PAYMENT_PROCESSING,
            data={"draft_id": draft.draft_id, "rail": rail.value, "total": str(draft.total)},
            message="Paying from your balance..." if rail is PaymentRail.LEDGER else "Charging your card...",
        )

        try:
            if rail is PaymentRail.LEDGER:
                result = await top_up_flow.pay(draft, state.get("account_id") or "")
            else:
                result = await selector.attempt_payment(
                    draft,
                    rail,
                    payment_method=state.get("payment_method"),
                )
            return {**state, "result": result, "error": None}
        except CheckoutError as exc:
            logger.warning("attempt_payment_node_error", draft_id=draft.draft_id, code=exc.code)
            return {**state, "result": None, "error": exc}

    return attempt_node


def _make_apply_top_up_node(top_up_flow: LedgerTopUpRetryFlow, stream: CheckoutEventStream):
    """Create the *apply_top_up* node function."""

    async def apply_top_up_node(state: PaymentGraphState) -> PaymentGraphState:
        session_id = state.get("session_id", "")
        request_id = state.get("top_up_request_id") or ""
        amount = state.get("top_up_amount")
        if amount is None:
            amount = Decimal("0")

        try:
            result = await top_up_flow.confirm_top_up(
                request_id,
                amount,
                reference=state.get("top_up_reference", ""),
                draft=state.get("draft"),
            )
        except CheckoutError as exc:
            logger.warning("apply_top_up_node_error", request_id=request_id, code=exc.code)
            return {**state, "result": None, "error": exc}

        await stream.emit(
            session_id,
            EVENT_TOP_UP_CONFIRMED,
            data={"request_id": request_id, "amount": str(amount)},
            message="Balance topped up",
        )
        return {**state, "result": result, "error": None}

    return apply_top_up_node


async def _complete_node(state: PaymentGraphState) -> PaymentGraphState:
    return {**state, "outcome": OUTCOME_SUCCEEDED}


async def _await_top_up_node(state: PaymentGraphState) -> PaymentGraphState:
    """Human-in-the-loop gate: the payer must add funds before a replay."""
    return {**state, "outcome": OUTCOME_TOP_UP_REQUIRED}


async def _fail_node(state: PaymentGraphState) -> PaymentGraphState:
    """Terminal failure node."""
    return {**state, "outcome": OUTCOME_FAILED}


# ---------------------------------------------------------------------------
# Conditional routing functions
# ---------------------------------------------------------------------------


def _after_route(state: PaymentGraphState) -> str:
    if state.get("top_up_request_id"):
        return "apply_top_up"
    return "attempt_payment"


def _after_payment(state: PaymentGraphState) -> str:
    result = state.get("result")
    if state.get("error") is not None or result is None:
        return "fail"
    if result.status is PaymentStatus.TOP_UP_REQUIRED:
        return "await_top_up"
    return "complete"


# ---------------------------------------------------------------------------
# Graph builder
# ---------------------------------------------------------------------------


def build_payment_graph(
    selector: PaymentRailSelector,
    top_up_flow: LedgerTopUpRetryFlow,
    stream: CheckoutEventStream,
) -> StateGraph:
    """Construct the LangGraph payment workflow.

    Parameters
    ----------
    selector:
        Rail selector holding the session's gateway handle.
    top_up_flow:
        Ledger top-up flow holding any suspended payment.
    stream:
        SSE event stream for real-time updates.

    Returns
    -------
    StateGraph
        An uncompiled graph.  Call ``.compile()`` before invoking.
    """
    graph = StateGraph(PaymentGraphState)

    graph.add_node("route", _route_node)
    graph.add_node("attempt_payment", _make_attempt_node(selector, top_up_flow, stream))
    graph.add_node("apply_top_up", _make_apply_top_up_node(top_up_flow, stream))
    graph.add_node("complete", _complete_node)
    graph.add_node("await_top_up", _await_top_up_node)
    graph.add_node("fail", _fail_node)

    graph.set_entry_point("route")

    graph.add_conditional_edges(
        "route",
        _after_route,
        {"attempt_payment": "attempt_payment", "apply_top_up": "apply_top_up"},
    )
    graph.add_conditional_edges(
        "attempt_payment",
        _after_payment,
        {"complete": "complete", "await_top_up": "await_top_up", "fail": "fail"},
    )
    graph.add_conditional_edges(
        "apply_top_up",
        _after_payment,
        {"complete": "complete", "await_top_up": "await_top_up", "fail": "fail"},
    )

    graph.add_edge("complete", END)
    graph.add_edge("await_top_up", END)
    graph.add_edge("fail", END)

    return graph


def compile_payment_graph(
    selector: PaymentRailSelector,
    top_up_flow: LedgerTopUpRetryFlow,
    stream: CheckoutEventStream,
):
    """Build and compile the payment graph into a runnable."""
    return build_payment_graph(selector, top_up_flow, stream).compile()
