"""SSE streaming manager for real-time checkout updates.

Provides an event bus that the checkout session writes to and that API
endpoints consume via ``async for`` iteration.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import structlog

from artisan_checkout.models import CheckoutEvent, utcnow

logger = structlog.get_logger(__name__)

# Canonical event type constants
EVENT_ADDRESS_CHANGED = "address_changed"
EVENT_ADDRESS_VALIDATED = "address_validated"
EVENT_ADDRESS_PENDING = "address_pending"
EVENT_OPTIONS_UPDATED = "options_updated"
EVENT_METHOD_SELECTED = "method_selected"
EVENT_METHOD_FALLBACK = "method_fallback"
EVENT_QUOTE_ATTACHED = "quote_attached"
EVENT_QUOTE_REFRESHED = "quote_refreshed"
EVENT_QUOTES_INVALIDATED = "quotes_invalidated"
EVENT_PICKUP_SLOT_SELECTED = "pickup_slot_selected"
EVENT_DELIVERY_BLOCKED = "delivery_blocked"
EVENT_DELIVERY_CONFIRMED = "delivery_confirmed"
EVENT_DELIVERY_REOPENED = "delivery_reopened"
EVENT_PAYMENT_CONFIGURING = "payment_configuring"
EVENT_PAYMENT_INTENT_REQUESTED = "payment_intent_requested"
EVENT_PAYMENT_HANDLE_INVALIDATED = "payment_handle_invalidated"
EVENT_PAYMENT_STARTED = "payment_started"
EVENT_PAYMENT_PROCESSING = "payment_processing"
EVENT_PAYMENT_RETRYABLE = "payment_retryable"
EVENT_TOP_UP_REQUIRED = "top_up_required"
EVENT_TOP_UP_CONFIRMED = "top_up_confirmed"
EVENT_COMPLETED = "completed"
EVENT_ERROR = "error"
EVENT_CANCELLED = "cancelled"

TERMINAL_EVENTS = frozenset({EVENT_COMPLETED, EVENT_ERROR, EVENT_CANCELLED})


class CheckoutEventStream:
    """In-memory pub/sub for checkout session SSE events.

    Each checkout session gets its own ``asyncio.Queue`` per subscriber so
    that multiple SSE clients can consume events independently.
    """

    def __init__(self, max_queue_size: int = 256) -> None:
        self._queues: dict[str, list[asyncio.Queue[CheckoutEvent | None]]] = {}
        self._max_queue_size = max_queue_size
        self._history: dict[str, list[CheckoutEvent]] = {}

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, event: CheckoutEvent) -> CheckoutEvent:
        """Fan an already-built event out to the subscribers of its session."""
        session_id = event.session_id
        self._history.setdefault(session_id, []).append(event)

        queues = self._queues.get(session_id, [])
        for queue in queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "event_queue_full",
                    session_id=session_id,
                    event_type=event.event_type,
                )

        logger.debug(
            "event_emitted",
            session_id=session_id,
            event_type=event.event_type,
            subscribers=len(queues),
        )
        return event

    async def emit(
        self,
        session_id: str,
        event_type: str,
        data: dict[str, Any] | None = None,
        message: str = "",
        seller_id: str | None = None,
    ) -> CheckoutEvent:
        """Build and push an event to all subscribers of *session_id*."""
        event = CheckoutEvent(
            event_type=event_type,
            session_id=session_id,
            seller_id=seller_id,
            data=data or {},
            message=message,
            timestamp=utcnow(),
        )
        return await self.publish(event)

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------

    async def subscribe(self, session_id: str) -> AsyncIterator[CheckoutEvent]:
        """Yield events for *session_id* as they arrive.

        The iterator terminates on a terminal event (``completed``,
        ``error`` or ``cancelled``), or when ``close(session_id)`` pushes
        the ``None`` sentinel.
        """
        queue: asyncio.Queue[CheckoutEvent | None] = asyncio.Queue(maxsize=self._max_queue_size)
        # Snapshot and register together; later events arrive only via the queue.
        history = list(self._history.get(session_id, []))
        self._queues.setdefault(session_id, []).append(queue)

        try:
            # Replay historical events first so late joiners catch up
            for past_event in history:
                yield past_event
                if past_event.event_type in TERMINAL_EVENTS:
                    return

            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
                if event.event_type in TERMINAL_EVENTS:
                    break
        finally:
            session_queues = self._queues.get(session_id, [])
            if queue in session_queues:
                session_queues.remove(queue)

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def close(self, session_id: str) -> None:
        """Signal all subscribers of *session_id* to stop iterating."""
        for queue in self._queues.get(session_id, []):
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                logger.warning("event_queue_close_dropped", session_id=session_id)
        self._queues.pop(session_id, None)

    def get_history(self, session_id: str) -> list[CheckoutEvent]:
        """Return all events emitted for a given session."""
        return list(self._history.get(session_id, []))

    def clear(self, session_id: str) -> None:
        """Remove all state associated with a session."""
        self.close(session_id)
        self._history.pop(session_id, None)
