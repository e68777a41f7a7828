"""HTTP API for checkout, payment actions, webhooks and currency conversion."""

import logging
import os
import re
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import get_caller, limiter, require_admin, require_caller
from .config import Settings
from .connectors.base import PaymentGateway
from .container import ServiceContainer, build_container
from .currency import CurrencyService
from .database import DatabaseManager
from .errors import CheckoutError, ValidationError
from .notifications import NotificationDispatcher
from .services import Caller, CreateOrderRequest
from .state_machine import PaymentProvider

logger = logging.getLogger(__name__)

ORDER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9-]+$")


def _order_rate_limit() -> str:
    return os.getenv("ORDER_RATE_LIMIT", "30/minute")


def _container(request: Request) -> ServiceContainer:
    return request.app.state.container


def _check_order_id(order_id: str) -> str:
    if not order_id or not ORDER_ID_PATTERN.match(order_id):
        raise ValidationError("Invalid order ID format")
    return order_id


class UpdateStatusBody(BaseModel):
    status: Optional[str] = None
    payment_status: Optional[str] = None
    note: Optional[str] = None


class RefundBody(BaseModel):
    amount: Optional[Decimal] = Field(default=None, description="Amount in the charged currency")
    reason: Optional[str] = None


class ConvertItem(BaseModel):
    amount: Decimal
    currency: str


class ConvertBatchBody(BaseModel):
    items: List[ConvertItem]
    target_currency: str


router = APIRouter()


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    container = _container(request)
    return {
        "status": "ok",
        "providers": sorted(provider.value for provider in container.gateways),
    }


# Orders

@router.post("/orders", status_code=201)
@limiter.limit(_order_rate_limit)
async def create_order(
    request: Request,
    body: CreateOrderRequest,
    caller: Caller = Depends(get_caller),
):
    """
    Create an order and start payment with the chosen provider.

    Returns the order with the client secret (Stripe) or approval URL (PayPal)
    the frontend needs to complete the payment.
    """
    created = await _container(request).order_service.create_order(body, user_id=caller.user_id)
    order = created.order
    response: Dict[str, Any] = {
        "success": True,
        "message": "Order created successfully",
        "order": order.to_dict(include_internal=caller.is_admin),
        "payment_provider": created.provider.value,
        "currency": order.currency,
        "display_total": str(order.charged_amount),
        "exchange_rate": str(created.conversion.rate),
        "conversion_source": created.conversion.source,
    }
    if created.provider == PaymentProvider.STRIPE:
        response["client_secret"] = created.client_handle
    else:
        response["approval_url"] = created.client_handle
    return response


@router.get("/orders/{order_id}")
async def get_order(request: Request, order_id: str, caller: Caller = Depends(get_caller)):
    _check_order_id(order_id)
    order = await _container(request).order_service.view_order(order_id, caller)
    return {"success": True, "order": order}


@router.put("/admin/orders/{order_id}/status")
async def update_order_status(
    request: Request,
    order_id: str,
    body: UpdateStatusBody,
    caller: Caller = Depends(require_admin),
):
    _check_order_id(order_id)
    order = await _container(request).order_service.update_order_status(
        order_id, status=body.status, payment_status=body.payment_status, note=body.note
    )
    return {
        "success": True,
        "message": "Order status updated",
        "order": order.to_dict(include_internal=True),
    }


# Payments

async def _handle_webhook(request: Request, provider: PaymentProvider) -> Dict[str, Any]:
    processor = _container(request).webhook_processor
    header_name = processor.signature_header_name(provider)
    signature = request.headers.get(header_name) if header_name else None
    payload = await request.body()
    result = await processor.process(provider, payload, signature)
    return {"received": True, **result.model_dump()}


@router.post("/payments/webhook/stripe")
async def stripe_webhook(request: Request):
    return await _handle_webhook(request, PaymentProvider.STRIPE)


@router.post("/payments/webhook/paypal")
async def paypal_webhook(request: Request):
    return await _handle_webhook(request, PaymentProvider.PAYPAL)


@router.post("/payments/capture/{order_id}")
async def capture_payment(
    request: Request,
    order_id: str,
    caller: Caller = Depends(require_caller),
):
    _check_order_id(order_id)
    outcome = await _container(request).payment_service.capture(order_id, caller)
    return {
        "success": True,
        "message": "Payment already captured" if outcome.already_captured else "Payment captured successfully",
        "order": outcome.order.to_dict(include_internal=caller.is_admin),
    }


@router.post("/payments/refund/{order_id}")
async def refund_payment(
    request: Request,
    order_id: str,
    body: Optional[RefundBody] = None,
    caller: Caller = Depends(require_admin),
):
    _check_order_id(order_id)
    body = body or RefundBody()
    outcome = await _container(request).payment_service.refund(
        order_id, amount=body.amount, reason=body.reason
    )
    return {
        "success": True,
        "message": "Refund processed successfully",
        "order": outcome.order.to_dict(include_internal=True),
        "refund_amount": str(outcome.amount),
        "refund_id": outcome.refund_id,
    }


@router.get("/payments/status/{order_id}")
async def payment_status(
    request: Request,
    order_id: str,
    caller: Caller = Depends(require_caller),
):
    _check_order_id(order_id)
    data = await _container(request).payment_service.payment_status(order_id, caller)
    return {"success": True, "data": data}


# Currency

def _require_currency(code: str) -> str:
    code = (code or "").upper()
    if not CurrencyService.is_supported(code):
        raise ValidationError(f"Unsupported currency: {code}")
    return code


@router.get("/currency/supported")
async def supported_currencies(request: Request):
    return {
        "success": True,
        "base_currency": _container(request).settings.base_currency,
        "data": [c.model_dump() for c in CurrencyService.supported_currencies()],
    }


@router.get("/currency/convert")
async def convert_price(
    request: Request,
    amount: Decimal = Query(..., ge=0),
    from_currency: str = Query(..., alias="from"),
    to_currency: str = Query(..., alias="to"),
):
    result = await _container(request).currency_service.convert(
        amount, _require_currency(from_currency), _require_currency(to_currency)
    )
    return {
        "success": True,
        "data": {
            "original_amount": str(amount),
            "from": from_currency.upper(),
            "to": to_currency.upper(),
            "converted_amount": str(result.converted_amount),
            "rate": str(result.rate),
            "source": result.source,
            "timestamp": result.timestamp.isoformat(),
        },
    }


@router.post("/currency/convert-batch")
async def convert_price_list(request: Request, body: ConvertBatchBody):
    target = _require_currency(body.target_currency)
    items = [(item.amount, _require_currency(item.currency)) for item in body.items]
    results = await _container(request).currency_service.convert_many(items, target)
    return {
        "success": True,
        "data": [{key: str(value) for key, value in entry.items()} for entry in results],
    }


@router.get("/currency/format")
async def format_price(amount: Decimal = Query(...), currency: str = Query(...)):
    code = _require_currency(currency)
    return {"success": True, "data": {"formatted": CurrencyService.format_price(amount, code)}}


@router.get("/currency/detect")
async def detect_currency(country: str = Query(..., min_length=2, max_length=2)):
    return {"success": True, "data": {"currency": CurrencyService.detect_currency_from_country(country)}}


@router.get("/admin/currency/cache-stats")
async def currency_cache_stats(request: Request, caller: Caller = Depends(require_admin)):
    return {"success": True, "data": _container(request).currency_service.cache_stats()}


@router.post("/admin/currency/clear-cache")
async def clear_currency_cache(request: Request, caller: Caller = Depends(require_admin)):
    _container(request).currency_service.clear_cache()
    return {"success": True, "message": "Currency cache cleared"}


# Error rendering

async def _checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, "code": exc.code},
    )


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Invalid request", "code": "validation_error", "errors": errors},
    )


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal server error", "code": "internal_error"},
    )


def create_app(
    container: Optional[ServiceContainer] = None,
    settings: Optional[Settings] = None,
    gateways: Optional[Dict[PaymentProvider, PaymentGateway]] = None,
    currency_service: Optional[CurrencyService] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Without an injected container the services are wired at start-up from
    ``settings`` (or the environment), with a database created on the
    configured URL.

    Args:
        container: Fully built services to serve.
        settings: Settings to build the services from.
        gateways: Gateways to use instead of those derived from settings.
        currency_service: Currency service override.
        dispatcher: Notification dispatcher override.

    Returns:
        FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db_manager = None
        if getattr(app.state, "container", None) is None:
            app_settings = settings or Settings.from_env()
            db_manager = DatabaseManager(app_settings.database_url)
            await db_manager.initialize()
            app.state.container = build_container(
                app_settings,
                db_manager.session_factory,
                gateways=gateways,
                currency_service=currency_service,
                dispatcher=dispatcher,
            )
        limiter.enabled = app.state.container.settings.rate_limit_enabled
        logger.info("Order payments API started")
        try:
            yield
        finally:
            await app.state.container.shutdown()
            if db_manager is not None:
                await db_manager.shutdown()
                app.state.container = None

    app = FastAPI(title="Order Payments API", lifespan=lifespan)
    app.state.container = container
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(CheckoutError, _checkout_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)
    app.include_router(router)
    return app


app = create_app()
