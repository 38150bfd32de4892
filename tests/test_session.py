"""Tests for checkout session orchestration against the in-memory services."""

import asyncio
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from artisan_checkout.config import Settings
from artisan_checkout.delivery.schedule import WEEKDAYS
from artisan_checkout.errors import CheckoutError, GatewayDeclined, InvalidTransition, TopUpTooSmall
from artisan_checkout.mock_services.gateway import OUTCOME_DECLINE, OUTCOME_SUCCEED
from artisan_checkout.models import (
    CheckoutState,
    DeliveryMethod,
    EligibilityStatus,
    PaymentRail,
    PaymentStatus,
    SellerDeliveryConfig,
)
from artisan_checkout.orchestrator.session import CheckoutSession, CheckoutSessionManager
from artisan_checkout.protocols.geocoding_client import GeocodingClient
from artisan_checkout.streaming import (
    EVENT_ADDRESS_PENDING,
    EVENT_ADDRESS_VALIDATED,
    EVENT_CANCELLED,
    EVENT_METHOD_FALLBACK,
    EVENT_TOP_UP_REQUIRED,
)

from conftest import (
    SELLER_LOCATION,
    courier_only_config,
    make_address,
    make_group,
    north_of_seller,
)

OPEN_EVERY_DAY = {day: {"enabled": True, "open": "09:00", "close": "18:00"} for day in WEEKDAYS}


def pickup_config() -> SellerDeliveryConfig:
    return SellerDeliveryConfig(location=SELLER_LOCATION, weekly_schedule=OPEN_EVERY_DAY)


@pytest.fixture
def new_session(services, settings, stream, clock):
    async def _new(*groups, account_id=None, account_role=None, session_settings=None):
        session = CheckoutSession(
            groups,
            services,
            session_settings or settings,
            stream,
            account_id=account_id,
            account_role=account_role,
            clock=clock,
        )
        await session.open()
        return session

    return _new


def history_types(stream, session):
    return [e.event_type for e in stream.get_history(session.session_id)]


async def book_first_slot(session, seller_id):
    slot = session.pickup_slots(seller_id)[0]
    await session.select_pickup_slot(seller_id, slot.pickup_date, slot.slot_id)


async def ready_for_payment(session, seller_id="pottery"):
    await session.select_delivery_method(seller_id, DeliveryMethod.PICKUP)
    await book_first_slot(session, seller_id)
    assert await session.confirm_delivery() == []
    await session.proceed_to_payment()


async def courier_ledger_checkout(new_session):
    session = await new_session(
        make_group("woodworks", "40.00", config=courier_only_config()),
        account_id="acct-1",
        account_role="artisan",
    )
    await session.set_address(make_address(at=north_of_seller(5)))
    await session.select_delivery_method("woodworks", DeliveryMethod.COURIER_DELIVERY)
    assert await session.confirm_delivery() == []
    await session.proceed_to_payment()
    return session


class TestAddressValidation:
    async def test_open_evaluates_options(self, new_session):
        session = await new_session(make_group("pottery", "25.00", config=pickup_config()))

        seller = session.snapshot()["sellers"][0]
        assert seller["options"]["pickup"]["status"] == EligibilityStatus.AVAILABLE.value
        assert seller["selection"] is None
        assert session.state is CheckoutState.CONFIGURING_DELIVERY

    async def test_burst_of_edits_validates_once(self, new_session, geocoder, stream):
        settings = Settings(environment="testing", address_debounce_seconds=0.05)
        session = await new_session(
            make_group("woodworks", "40.00", config=courier_only_config()),
            session_settings=settings,
        )
        first = make_address("12 Rue des Artisa")
        final = make_address("12 Rue des Artisans")
        located = north_of_seller(5)
        geocoder.add(first.one_line(), 1.0, 1.0)
        geocoder.add(final.one_line(), located.lat, located.lon)

        await session.set_address(first)
        await session.set_address(final)
        await session.flush_address_validation()

        assert [c["address"] for c in geocoder.calls] == [final.one_line()]
        assert session.machine.address.coordinates == located
        assert EVENT_ADDRESS_VALIDATED in history_types(stream, session)
        options = session.machine.options["woodworks"]
        assert options.personal_delivery.status is EligibilityStatus.AVAILABLE

    async def test_stale_validation_is_discarded(self, new_session, geocoder):
        session = await new_session(make_group("woodworks", "40.00", config=courier_only_config()))
        first = make_address("1 First Avenue")
        final = make_address("2 Second Avenue")
        geocoder.add(first.one_line(), 45.01, -73.0)
        geocoder.add(final.one_line(), 45.02, -73.0)
        geocoder.delay = 0.05

        await session.set_address(first)
        # Let the first lookup start before the edit lands.
        await asyncio.sleep(0.01)
        await session.set_address(final)
        await session.flush_address_validation()
        await asyncio.sleep(0.1)

        assert session.machine.address.street == "2 Second Avenue"
        assert session.machine.address.lat == 45.02

    async def test_unknown_address_stays_pending(self, new_session, stream):
        session = await new_session(make_group("woodworks", "40.00", config=courier_only_config()))

        await session.set_address(make_address("404 Nowhere Road"))
        await session.flush_address_validation()

        assert EVENT_ADDRESS_PENDING in history_types(stream, session)
        options = session.machine.options["woodworks"]
        assert options.courier_delivery.status is EligibilityStatus.PENDING_ADDRESS

    async def test_unreadable_geocoder_reply_stays_pending(self, services, settings, stream, clock):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>busy</html>"))
        session = CheckoutSession(
            [make_group("woodworks", "40.00", config=courier_only_config())],
            replace(services, geocoder=GeocodingClient(settings, transport=transport)),
            settings,
            stream,
            clock=clock,
        )
        await session.open()

        await session.set_address(make_address())
        await session.flush_address_validation()

        assert EVENT_ADDRESS_PENDING in history_types(stream, session)
        assert session.machine.options["woodworks"].courier_delivery.status is EligibilityStatus.PENDING_ADDRESS

    async def test_saved_address_with_coordinates_skips_geocoding(self, new_session, geocoder):
        session = await new_session(make_group("woodworks", "40.00", config=courier_only_config()))

        await session.set_address(make_address(at=north_of_seller(5)))
        await session.flush_address_validation()

        assert geocoder.calls == []
        assert session.machine.options["woodworks"].personal_delivery.fee == Decimal("5.00")


class TestCourierQuotes:
    async def test_fallback_to_courier_fetches_quote(self, new_session, courier, stream):
        session = await new_session(make_group("woodworks", "40.00", config=courier_only_config()))
        await session.set_address(make_address(at=north_of_seller(5)))
        await session.select_delivery_method("woodworks", DeliveryMethod.PERSONAL_DELIVERY)
        assert await session.confirm_delivery() == []

        await session.set_address(make_address("99 Chemin du Lac", at=north_of_seller(12)))

        selection = session.machine.selections["woodworks"]
        assert selection.method is DeliveryMethod.COURIER_DELIVERY
        assert selection.quote.charged_amount == Decimal("12.00")
        assert len(courier.calls) == 1
        assert session.state is CheckoutState.CONFIGURING_DELIVERY
        assert EVENT_METHOD_FALLBACK in history_types(stream, session)
        assert session.machine.totals().total == Decimal("52.00")

    async def test_address_change_requotes(self, new_session, courier):
        session = await new_session(make_group("woodworks", "40.00", config=courier_only_config()))
        await session.set_address(make_address(at=north_of_seller(5)))
        await session.select_delivery_method("woodworks", DeliveryMethod.COURIER_DELIVERY)
        first = session.machine.selections["woodworks"].quote

        moved = make_address("7 Avenue du Parc", at=north_of_seller(6))
        await session.set_address(moved)

        second = session.machine.selections["woodworks"].quote
        assert second.quote_id != first.quote_id
        assert second.address_fingerprint == moved.fingerprint()
        assert len(courier.calls) == 2
        assert len(session.quotes) == 1

    async def test_expired_quote_is_refreshed_before_paying(self, new_session, courier, gateway, clock):
        session = await new_session(make_group("woodworks", "40.00", config=courier_only_config()))
        await session.set_address(make_address(at=north_of_seller(5)))
        await session.select_delivery_method("woodworks", DeliveryMethod.COURIER_DELIVERY)
        assert await session.confirm_delivery() == []
        await session.proceed_to_payment()
        original = session.payment_handle
        assert original.amount == Decimal("52.00")

        clock.advance(901)
        courier.fixed_fee = Decimal("11.00")
        result = await session.pay("pm_card_visa")

        assert result.status is PaymentStatus.SUCCEEDED
        assert original.intent_id in gateway.cancelled
        assert list(gateway.captured.values()) == [Decimal("53.20")]
        assert session.state is CheckoutState.SUCCEEDED

    async def test_fallback_estimate_is_requoted_before_paying(self, new_session, courier, gateway):
        session = await new_session(make_group("woodworks", "40.00", config=courier_only_config()))
        await session.set_address(make_address(at=north_of_seller(5)))
        courier.should_fail = True
        await session.select_delivery_method("woodworks", DeliveryMethod.COURIER_DELIVERY)
        estimate = session.machine.selections["woodworks"].quote
        assert estimate.estimated
        assert estimate.charged_amount == Decimal("18.60")
        assert await session.confirm_delivery() == []
        await session.proceed_to_payment()

        courier.should_fail = False
        result = await session.pay("pm_card_visa")

        quote = session.machine.selections["woodworks"].quote
        assert result.status is PaymentStatus.SUCCEEDED
        assert not quote.estimated
        assert quote.quote_id != estimate.quote_id
        assert len(courier.calls) == 2
        assert list(gateway.captured.values()) == [Decimal("52.00")]

    async def test_settle_courier_fee(self, new_session):
        session = await new_session(make_group("woodworks", "40.00", config=courier_only_config()))
        await session.set_address(make_address(at=north_of_seller(5)))
        await session.select_delivery_method("woodworks", DeliveryMethod.COURIER_DELIVERY)

        settlement = session.settle_courier_fee("woodworks", Decimal("10.50"))

        assert settlement.refund_amount == Decimal("1.50")
        assert session.quotes.refund_obligations[0].amount == Decimal("1.50")


class TestGatewayCheckout:
    async def test_pickup_checkout(self, new_session, gateway, order_store):
        session = await new_session(make_group("pottery", "25.00", "15.00", config=pickup_config()))
        await ready_for_payment(session)

        snapshot = session.snapshot()
        assert snapshot["client_secret"] == session.payment_handle.client_secret
        assert snapshot["sections"]["payment"] is True

        result = await session.pay("pm_card_visa")

        assert result.status is PaymentStatus.SUCCEEDED
        assert session.state is CheckoutState.SUCCEEDED
        assert session.machine.order_ref == result.order_ref
        assert len(order_store.orders) == 1
        assert list(gateway.captured.values()) == [Decimal("40.00")]

    async def test_pay_requires_payment_method(self, new_session):
        session = await new_session(make_group("pottery", "25.00", config=pickup_config()))
        await ready_for_payment(session)

        with pytest.raises(CheckoutError) as exc_info:
            await session.pay()
        assert exc_info.value.field == "payment_method"
        assert session.state is CheckoutState.CONFIGURING_PAYMENT

    async def test_decline_then_retry(self, new_session, gateway):
        session = await new_session(make_group("pottery", "25.00", config=pickup_config()))
        await ready_for_payment(session)
        gateway.configure(OUTCOME_DECLINE, failure_reason="Card expired")

        with pytest.raises(GatewayDeclined):
            await session.pay("pm_card_expired")

        assert session.state is CheckoutState.CONFIGURING_PAYMENT
        assert session.machine.failure_reason == "Card expired"
        assert session.payment_handle is None

        gateway.configure(OUTCOME_SUCCEED)
        result = await session.pay("pm_card_visa")
        assert result.status is PaymentStatus.SUCCEEDED

    async def test_back_to_delivery_cancels_intent(self, new_session, gateway):
        session = await new_session(make_group("pottery", "25.00", config=pickup_config()))
        await ready_for_payment(session)
        handle = session.payment_handle

        await session.back_to_delivery()

        assert session.payment_handle is None
        assert handle.intent_id in gateway.cancelled
        assert session.state is CheckoutState.CONFIGURING_DELIVERY

    async def test_cancel(self, new_session, gateway, stream):
        session = await new_session(make_group("pottery", "25.00", config=pickup_config()))
        await ready_for_payment(session)
        handle = session.payment_handle

        await session.cancel()

        assert handle.intent_id in gateway.cancelled
        assert history_types(stream, session)[-1] == EVENT_CANCELLED
        with pytest.raises(InvalidTransition):
            await session.set_address(make_address())


class TestLedgerCheckout:
    async def test_top_up_and_retry(self, new_session, ledger, order_store, stream):
        session = await new_session(
            make_group("pottery", "70.00", config=pickup_config()),
            account_id="acct-1",
            account_role="artisan",
        )
        assert session.rail is PaymentRail.LEDGER
        await ready_for_payment(session)
        assert session.payment_handle is None

        suspended = await session.pay()

        assert suspended.status is PaymentStatus.TOP_UP_REQUIRED
        assert suspended.shortfall == Decimal("20.00")
        assert session.state is CheckoutState.CONFIGURING_PAYMENT
        assert session.snapshot()["sections"]["top_up"] is True
        assert EVENT_TOP_UP_REQUIRED in history_types(stream, session)
        with pytest.raises(InvalidTransition):
            await session.pay()

        request_id = suspended.top_up.request_id
        with pytest.raises(TopUpTooSmall):
            await session.confirm_top_up(request_id, Decimal("10.00"))
        assert session.machine.top_up.request_id == request_id

        result = await session.confirm_top_up(request_id, Decimal("25.00"), reference="etransfer-1")

        assert result.status is PaymentStatus.SUCCEEDED
        assert result.draft_id == suspended.draft_id
        assert ledger.balances["acct-1"] == Decimal("5.00")
        assert session.state is CheckoutState.SUCCEEDED
        assert len(order_store.orders) == 1

    async def test_quote_expired_during_top_up_is_requoted(self, new_session, courier, ledger, clock):
        session = await courier_ledger_checkout(new_session)
        suspended = await session.pay()
        expired = session.machine.selections["woodworks"].quote
        assert suspended.shortfall == Decimal("2.00")

        clock.advance(3600)
        result = await session.confirm_top_up(suspended.top_up.request_id, Decimal("2.00"))

        fresh = session.machine.selections["woodworks"].quote
        assert result.status is PaymentStatus.SUCCEEDED
        assert fresh.quote_id != expired.quote_id
        assert not fresh.is_expired(clock())
        assert len(courier.calls) == 2
        assert result.draft_id != suspended.draft_id
        assert ledger.balances["acct-1"] == Decimal("0.00")
        assert session.state is CheckoutState.SUCCEEDED

    async def test_repriced_quote_during_top_up_asks_for_more(self, new_session, courier, ledger, clock, order_store):
        session = await courier_ledger_checkout(new_session)
        suspended = await session.pay()

        clock.advance(3600)
        courier.fixed_fee = Decimal("15.00")
        held = await session.confirm_top_up(suspended.top_up.request_id, Decimal("5.00"))

        assert held.status is PaymentStatus.TOP_UP_REQUIRED
        assert held.shortfall == Decimal("3.00")
        assert ledger.balances["acct-1"] == Decimal("55.00")
        assert session.state is CheckoutState.CONFIGURING_PAYMENT
        assert session.machine.top_up.request_id == held.top_up.request_id
        assert order_store.orders == {}

        result = await session.confirm_top_up(held.top_up.request_id, Decimal("3.00"))

        assert result.status is PaymentStatus.SUCCEEDED
        assert result.draft_id == held.draft_id
        assert ledger.balances["acct-1"] == Decimal("0.00")
        assert len(courier.calls) == 2

    async def test_ledger_without_shortfall(self, new_session, ledger):
        session = await new_session(
            make_group("pottery", "30.00", config=pickup_config()),
            account_id="acct-1",
            account_role="artisan",
        )
        await ready_for_payment(session)

        result = await session.pay()

        assert result.new_balance == Decimal("20.00")
        assert ledger.balances["acct-1"] == Decimal("20.00")


class TestCheckoutSessionManager:
    async def test_create_and_get(self, services, settings, stream):
        manager = CheckoutSessionManager(services, settings, stream)
        session = await manager.create([make_group("pottery", "25.00", config=pickup_config())])

        assert manager.get(session.session_id) is session
        assert manager.get("missing") is None
        assert len(manager) == 1

    async def test_purge_expired(self, services, settings, stream):
        manager = CheckoutSessionManager(services, settings, stream)
        session = await manager.create([make_group("pottery", "25.00", config=pickup_config())])
        session.created_at -= timedelta(seconds=settings.session_ttl_seconds + 1)

        assert await manager.purge_expired() == 1
        assert session.cancelled is True
        assert manager.get(session.session_id) is None
