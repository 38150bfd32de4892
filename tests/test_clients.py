"""Tests for the httpx service clients using mock transports."""

import json
from decimal import Decimal

import httpx
import pytest

from artisan_checkout.errors import GatewayDeclined, GatewayTransient, QuoteServiceUnavailable
from artisan_checkout.models import PackageDetails, PaymentHandle, PickupLocation
from artisan_checkout.protocols.courier_client import CourierQuoteClient
from artisan_checkout.protocols.gateway_client import PaymentGatewayClient
from artisan_checkout.protocols.geocoding_client import GeocodingClient
from artisan_checkout.protocols.ledger_client import LedgerClient
from artisan_checkout.protocols.order_client import OrderClient

from conftest import make_address, make_draft


class Recorder:
    """Mock transport handler that records requests and replays a response."""

    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.payload = payload if payload is not None else {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def body(self, index=-1):
        return json.loads(self.requests[index].content)


class TestGeocodingClient:
    async def test_match_is_cached(self, settings):
        recorder = Recorder(payload=[{"lat": "45.5", "lon": "-73.6", "importance": 0.82, "display_name": "Montreal"}])
        client = GeocodingClient(settings, transport=recorder.transport)

        first = await client.geocode("12 Rue des Artisans, Montreal")
        second = await client.geocode("12  rue des artisans, MONTREAL")

        assert first.lat == 45.5
        assert first.confidence == 82.0
        assert second == first
        assert len(recorder.requests) == 1
        assert recorder.requests[0].url.params["q"] == "12 Rue des Artisans, Montreal"
        await client.close()

    async def test_no_match(self, settings):
        client = GeocodingClient(settings, transport=Recorder(payload=[]).transport)
        assert await client.geocode("nowhere") is None

    async def test_failure_degrades_to_none(self, settings):
        client = GeocodingClient(settings, transport=Recorder(status_code=503).transport)
        assert await client.geocode("12 Rue des Artisans") is None

    async def test_non_json_body_degrades_to_none(self, settings):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>busy</html>"))
        client = GeocodingClient(settings, transport=transport)
        assert await client.geocode("12 Rue des Artisans") is None

    async def test_object_body_degrades_to_none(self, settings):
        client = GeocodingClient(settings, transport=Recorder(payload={"error": "bad"}).transport)
        assert await client.geocode("12 Rue des Artisans") is None


class TestCourierQuoteClient:
    pickup = PickupLocation(address="1 Workshop Lane", lat=45.0, lon=-73.0, contact_name="Maple Pottery")

    async def test_fee_in_cents(self, settings):
        recorder = Recorder(
            payload={"id": "dqt_1", "fee": 1075, "currency": "cad", "expires_at": "2026-03-02T10:15:00Z"}
        )
        client = CourierQuoteClient(settings, transport=recorder.transport)

        response = await client.quote(self.pickup, make_address(), PackageDetails(), Decimal("20"))

        assert response.quote_id == "dqt_1"
        assert response.estimated_fee == Decimal("10.75")
        assert response.currency == "CAD"
        assert response.expires_at.isoformat() == "2026-03-02T10:15:00+00:00"
        assert recorder.body()["pickup_name"] == "Maple Pottery"
        assert recorder.requests[0].url.path == "/v1/delivery_quotes"

    async def test_outage_raises_quote_unavailable(self, settings):
        recorder = Recorder(status_code=503)
        client = CourierQuoteClient(settings, transport=recorder.transport)

        with pytest.raises(QuoteServiceUnavailable):
            await client.quote(self.pickup, make_address(), PackageDetails(), Decimal("20"))
        assert len(recorder.requests) == 3

    async def test_malformed_quote(self, settings):
        client = CourierQuoteClient(settings, transport=Recorder(payload={"id": "dqt_1"}).transport)
        with pytest.raises(QuoteServiceUnavailable):
            await client.quote(self.pickup, make_address(), PackageDetails(), Decimal("20"))


class TestPaymentGatewayClient:
    handle = PaymentHandle(intent_id="pi_1", client_secret="pi_1_secret", amount=Decimal("40.00"))

    async def test_create_intent_in_cents(self, settings):
        recorder = Recorder(payload={"id": "pi_1", "client_secret": "pi_1_secret"})
        client = PaymentGatewayClient(settings, transport=recorder.transport)

        handle = await client.create_intent(Decimal("52.20"), "CAD")

        assert handle.intent_id == "pi_1"
        assert recorder.body() == {"amount": 5220, "currency": "cad"}

    async def test_confirm_success(self, settings):
        recorder = Recorder(payload={"id": "ch_1", "status": "succeeded"})
        client = PaymentGatewayClient(settings, transport=recorder.transport)

        confirmation = await client.confirm(self.handle, "pm_card_visa")

        assert confirmation.payment_ref == "ch_1"
        assert recorder.requests[0].url.path == "/v1/payment_intents/pi_1/confirm"

    async def test_card_declined_is_terminal(self, settings):
        recorder = Recorder(
            status_code=402,
            payload={"error": {"code": "card_declined", "message": "Your card was declined"}},
        )
        client = PaymentGatewayClient(settings, transport=recorder.transport)

        with pytest.raises(GatewayDeclined) as exc_info:
            await client.confirm(self.handle, "pm_card_visa")
        assert "Your card was declined" in exc_info.value.message

    async def test_processing_error_is_retryable(self, settings):
        recorder = Recorder(
            status_code=402,
            payload={"error": {"code": "processing_error", "message": "Try again"}},
        )
        client = PaymentGatewayClient(settings, transport=recorder.transport)

        with pytest.raises(GatewayTransient):
            await client.confirm(self.handle, "pm_card_visa")
        assert len(recorder.requests) == 1

    async def test_cancel_failure_is_logged_not_raised(self, settings):
        client = PaymentGatewayClient(settings, transport=Recorder(status_code=404).transport)
        await client.cancel_intent(self.handle)


class TestLedgerClient:
    async def test_balance(self, settings):
        client = LedgerClient(settings, transport=Recorder(payload={"balance": "42.50"}).transport)
        assert await client.get_balance("acct-1") == Decimal("42.50")

    async def test_order_debit_sends_idempotency_key(self, settings):
        recorder = Recorder(payload={"new_balance": "20.00", "order_ref": "ord_1", "transaction_id": "ltx_1"})
        client = LedgerClient(settings, transport=recorder.transport)
        draft = make_draft("30.00")

        result = await client.debit_for_order("acct-1", Decimal("30.00"), draft)

        assert result.success is True
        assert result.order_ref == "ord_1"
        assert recorder.body()["idempotency_key"] == draft.draft_id

    async def test_conflict_means_debit_rejected(self, settings):
        client = LedgerClient(settings, transport=Recorder(status_code=409, payload={"error": "insufficient"}).transport)

        result = await client.debit("acct-1", Decimal("30.00"))

        assert result.success is False

    async def test_credit(self, settings):
        recorder = Recorder(payload={"new_balance": "75.00", "transaction_id": "ltx_9"})
        client = LedgerClient(settings, transport=recorder.transport)

        result = await client.credit("acct-1", Decimal("25.00"), source="etransfer-1")

        assert result.new_balance == Decimal("75.00")
        assert recorder.body() == {"amount": "25.00", "source": "etransfer-1"}


class TestOrderClient:
    async def test_create_order(self, settings):
        recorder = Recorder(payload={"order_id": "ord_42"})
        client = OrderClient(settings, transport=recorder.transport)
        draft = make_draft("30.00")

        assert await client.create_order(draft, "ch_1") == "ord_42"
        assert recorder.body()["payment_ref"] == "ch_1"
        assert recorder.body()["draft_id"] == draft.draft_id
