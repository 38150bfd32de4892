"""Checkout error taxonomy.

Every error carries a user-facing message naming the blocking seller or
field where one applies.  ``recoverable`` marks errors that have a local
recovery path (fallback estimate, top-up, resubmission with the same handle).
"""

from __future__ import annotations

from decimal import Decimal


class CheckoutError(Exception):
    """Base class for all checkout orchestration errors."""

    code = "checkout_error"
    status_code = 400
    recoverable = False

    def __init__(
        self,
        message: str,
        *,
        seller_id: str | None = None,
        field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.seller_id = seller_id
        self.field = field


class InvalidCoordinates(CheckoutError):
    code = "invalid_coordinates"


class InvalidTransition(CheckoutError):
    code = "invalid_transition"
    status_code = 409


class AddressIncomplete(CheckoutError):
    code = "address_incomplete"


class DeliveryIneligible(CheckoutError):
    code = "delivery_ineligible"

    def __init__(self, reason: str, *, seller_id: str | None = None) -> None:
        super().__init__(reason, seller_id=seller_id, field="delivery_method")
        self.reason = reason


class QuoteExpired(CheckoutError):
    code = "quote_expired"
    status_code = 409


class QuoteServiceUnavailable(CheckoutError):
    code = "quote_service_unavailable"
    status_code = 503
    recoverable = True


class GatewayDeclined(CheckoutError):
    """Terminal card failure; the buyer must enter a new payment method."""

    code = "gateway_declined"
    status_code = 402


class GatewayTransient(CheckoutError):
    """Retryable card failure; the same payment handle stays valid."""

    code = "gateway_transient"
    status_code = 402
    recoverable = True


class LedgerInsufficientFunds(CheckoutError):
    code = "ledger_insufficient_funds"
    status_code = 402
    recoverable = True

    def __init__(self, shortfall: Decimal, balance: Decimal, total: Decimal) -> None:
        super().__init__(
            f"Insufficient balance: {balance} available, {total} required "
            f"(top up at least {shortfall})",
            field="balance",
        )
        self.shortfall = shortfall
        self.balance = balance
        self.total = total


class LedgerRaceLost(CheckoutError):
    """The balance changed between the check and the debit."""

    code = "ledger_race_lost"
    status_code = 409


class TopUpTooSmall(CheckoutError):
    code = "top_up_too_small"


class ScheduleUnavailable(CheckoutError):
    code = "schedule_unavailable"


class ServiceClientError(CheckoutError):
    """Raised when an outbound service request fails after retries."""

    code = "service_unavailable"
    status_code = 503

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        upstream_body: str = "",
    ) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body
