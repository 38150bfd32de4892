"""FastAPI application for the artisan checkout service.

Exposes REST endpoints for:
- Checkout session lifecycle (create, status, cancel)
- Delivery configuration (address, method per seller, pickup slots)
- Delivery confirmation and payment (gateway or ledger, top-up retry)
- Courier buffer settlement
- SSE streaming of checkout events
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from common import ErrorResponse, HealthResponse

from artisan_checkout.config import Settings
from artisan_checkout.errors import CheckoutError
from artisan_checkout.mock_services.factory import DEMO_SELLERS, build_mock_services
from artisan_checkout.models import (
    CartLine,
    DeliveryAddress,
    DeliveryMethod,
    SellerCartGroup,
    SellerDeliveryConfig,
    group_cart_lines,
)
from artisan_checkout.orchestrator.session import CheckoutSession, CheckoutSessionManager
from artisan_checkout.protocols.courier_client import CourierQuoteClient
from artisan_checkout.protocols.gateway_client import PaymentGatewayClient
from artisan_checkout.protocols.geocoding_client import GeocodingClient
from artisan_checkout.protocols.ledger_client import LedgerClient
from artisan_checkout.protocols.order_client import OrderClient
from artisan_checkout.protocols.ports import CheckoutServices
from artisan_checkout.streaming import CheckoutEventStream

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class SellerInfo(BaseModel):
    name: str = ""
    config: SellerDeliveryConfig = Field(default_factory=SellerDeliveryConfig)


class CreateCheckoutRequest(BaseModel):
    """Cart contents and payer identity for a new checkout."""

    lines: list[CartLine] = Field(min_length=1)
    sellers: dict[str, SellerInfo] = Field(default_factory=dict)
    account_id: str | None = None
    account_role: str | None = None


class AddressRequest(BaseModel):
    address: DeliveryAddress | None = None
    wait_for_validation: bool = False


class MethodRequest(BaseModel):
    method: DeliveryMethod


class PickupSlotRequest(BaseModel):
    pickup_date: date
    slot_id: str


class PayRequest(BaseModel):
    payment_method: str | None = None


class TopUpConfirmRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    reference: str = ""


class SettlementRequest(BaseModel):
    actual_fee: Decimal = Field(ge=0)


# ---------------------------------------------------------------------------
# Application state container
# ---------------------------------------------------------------------------


def build_http_services(settings: Settings) -> CheckoutServices:
    """Service bundle backed by the real HTTP collaborators."""
    return CheckoutServices(
        geocoder=GeocodingClient(settings),
        courier=CourierQuoteClient(settings),
        gateway=PaymentGatewayClient(settings),
        ledger=LedgerClient(settings),
        orders=OrderClient(settings),
    )


class AppState:
    """Shared application state accessible from route handlers."""

    def __init__(self, settings: Settings, services: CheckoutServices | None = None) -> None:
        self.settings = settings
        if services is None:
            services = build_mock_services(settings) if settings.use_mock_services else build_http_services(settings)
        self.services = services
        self.event_stream = CheckoutEventStream()
        self.sessions = CheckoutSessionManager(services, settings, self.event_stream)

    def seller_groups(self, req: CreateCheckoutRequest) -> list[SellerCartGroup]:
        groups = group_cart_lines(req.lines)
        for group in groups:
            info = req.sellers.get(group.seller_id)
            if info is None and self.settings.use_mock_services:
                demo = DEMO_SELLERS.get(group.seller_id)
                if demo is not None:
                    info = SellerInfo(name=demo.name, config=demo.config)
            if info is not None:
                group.seller_name = info.name
                group.config = info.config
        return groups


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None, services: CheckoutServices | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or Settings()
    state = AppState(settings, services)

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # type: ignore[no-untyped-def]
        yield
        await state.sessions.close()
        await state.services.close()
        logger.info("application_shutdown", service=settings.service_name)

    app = FastAPI(
        title="Artisan Checkout",
        description=(
            "Checkout and delivery-fee orchestration for multi-seller artisan "
            "carts: delivery eligibility, buffered courier quotes, pickup "
            "scheduling, and card or ledger payment with top-up retry."
        ),
        version=settings.service_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.app_state = state
    app.state.settings = settings

    def _session(session_id: str) -> CheckoutSession:
        session = state.sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Checkout {session_id} not found")
        return session

    # -------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health() -> HealthResponse:
        return HealthResponse(
            status="healthy",
            service=settings.service_name,
            version=settings.service_version,
        )

    # -------------------------------------------------------------------
    # Checkout session endpoints
    # -------------------------------------------------------------------

    @app.post("/api/v1/checkouts", status_code=201, tags=["checkout"])
    async def create_checkout(req: CreateCheckoutRequest) -> dict[str, Any]:
        """Open a checkout for a cart; items are grouped by seller."""
        session = await state.sessions.create(
            state.seller_groups(req),
            account_id=req.account_id,
            account_role=req.account_role,
        )
        return {
            **session.snapshot(),
            "stream_url": f"/api/v1/checkouts/{session.session_id}/stream",
        }

    @app.get("/api/v1/checkouts/{session_id}", tags=["checkout"])
    async def get_checkout(session_id: str) -> dict[str, Any]:
        return _session(session_id).snapshot()

    @app.get("/api/v1/checkouts/{session_id}/stream", tags=["checkout"])
    async def stream_checkout(session_id: str) -> EventSourceResponse:
        """SSE stream of checkout events."""
        _session(session_id)

        async def event_generator():  # type: ignore[no-untyped-def]
            async for event in state.event_stream.subscribe(session_id):
                yield {
                    "event": event.event_type,
                    "data": json.dumps(event.model_dump(mode="json"), default=str),
                }

        return EventSourceResponse(event_generator())

    @app.post("/api/v1/checkouts/{session_id}/cancel", tags=["checkout"])
    async def cancel_checkout(session_id: str) -> dict[str, Any]:
        session = _session(session_id)
        await session.cancel()
        return session.snapshot()

    # -------------------------------------------------------------------
    # Delivery endpoints
    # -------------------------------------------------------------------

    @app.put("/api/v1/checkouts/{session_id}/address", tags=["delivery"])
    async def set_address(session_id: str, req: AddressRequest) -> dict[str, Any]:
        """Set or edit the delivery address.

        Validation runs in the background once input settles; pass
        ``wait_for_validation`` to block until it has finished.
        """
        session = _session(session_id)
        await session.set_address(req.address)
        if req.wait_for_validation:
            await session.flush_address_validation()
        return session.snapshot()

    @app.put("/api/v1/checkouts/{session_id}/sellers/{seller_id}/method", tags=["delivery"])
    async def select_method(session_id: str, seller_id: str, req: MethodRequest) -> dict[str, Any]:
        session = _session(session_id)
        await session.select_delivery_method(seller_id, req.method)
        return session.snapshot()

    @app.get("/api/v1/checkouts/{session_id}/sellers/{seller_id}/pickup-slots", tags=["delivery"])
    async def list_pickup_slots(session_id: str, seller_id: str) -> dict[str, Any]:
        slots = _session(session_id).pickup_slots(seller_id)
        return {
            "seller_id": seller_id,
            "slots": [{**s.model_dump(mode="json"), "full_label": s.full_label} for s in slots],
            "total": len(slots),
        }

    @app.put("/api/v1/checkouts/{session_id}/sellers/{seller_id}/pickup-slot", tags=["delivery"])
    async def select_pickup_slot(session_id: str, seller_id: str, req: PickupSlotRequest) -> dict[str, Any]:
        session = _session(session_id)
        await session.select_pickup_slot(seller_id, req.pickup_date, req.slot_id)
        return session.snapshot()

    @app.post("/api/v1/checkouts/{session_id}/confirm-delivery", tags=["delivery"])
    async def confirm_delivery(session_id: str) -> dict[str, Any]:
        """Confirm delivery choices; blockers are returned when incomplete."""
        session = _session(session_id)
        blockers = await session.confirm_delivery()
        return {**session.snapshot(), "confirmed": not blockers}

    @app.post(
        "/api/v1/checkouts/{session_id}/sellers/{seller_id}/courier-settlement",
        tags=["delivery"],
    )
    async def settle_courier_fee(session_id: str, seller_id: str, req: SettlementRequest) -> dict[str, Any]:
        """Reconcile the charged courier quote with the final courier fee."""
        settlement = _session(session_id).settle_courier_fee(seller_id, req.actual_fee)
        return settlement.model_dump(mode="json")

    # -------------------------------------------------------------------
    # Payment endpoints
    # -------------------------------------------------------------------

    @app.post("/api/v1/checkouts/{session_id}/payment", tags=["payment"])
    async def proceed_to_payment(session_id: str) -> dict[str, Any]:
        session = _session(session_id)
        await session.proceed_to_payment()
        return session.snapshot()

    @app.post("/api/v1/checkouts/{session_id}/back", tags=["payment"])
    async def back_to_delivery(session_id: str) -> dict[str, Any]:
        session = _session(session_id)
        await session.back_to_delivery()
        return session.snapshot()

    @app.post("/api/v1/checkouts/{session_id}/pay", tags=["payment"])
    async def pay(session_id: str, req: PayRequest) -> dict[str, Any]:
        session = _session(session_id)
        result = await session.pay(req.payment_method)
        return {**session.snapshot(), "result": result.model_dump(mode="json")}

    @app.post("/api/v1/checkouts/{session_id}/top-ups/{request_id}/confirm", tags=["payment"])
    async def confirm_top_up(session_id: str, request_id: str, req: TopUpConfirmRequest) -> dict[str, Any]:
        session = _session(session_id)
        result = await session.confirm_top_up(request_id, req.amount, req.reference)
        return {**session.snapshot(), "result": result.model_dump(mode="json")}

    # -------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
        logger.info(
            "checkout_error",
            code=exc.code,
            error=exc.message,
            seller_id=exc.seller_id,
            field=exc.field,
            path=request.url.path,
        )
        content = ErrorResponse(
            error=exc.message,
            detail=exc.field,
            status_code=exc.status_code,
            code=exc.code,
        ).model_dump()
        content["seller_id"] = exc.seller_id
        content["recoverable"] = exc.recoverable
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled_exception", error=str(exc), path=request.url.path)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="Internal server error",
                detail=str(exc),
                status_code=500,
            ).model_dump(),
        )

    return app
