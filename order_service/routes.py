import logging
from typing import List, Optional

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from order_service.auth import require_admin, verify_token
from order_service.config import get_settings
from order_service.database import get_db
from order_service.errors import ValidationError
from order_service.gateways import LineItem, decode_line_items, from_minor_units
from order_service.schemas import (
    GenericOrderRequest,
    OrderResponse,
    OrderStatusUpdate,
    OrderSubmissionRequest,
    PaymentIntentConfirm,
    PaymentIntentCreate,
    PaymentIntentResponse,
    PayPalOrderCreate,
    PayPalOrderResponse,
    StatusResponse,
)
from order_service.service import OrderReconciliationService, PaymentSubmission, resolve_gateway_name
from order_service.store import OrderStore

logger = logging.getLogger(__name__)

router = APIRouter()

# (method, path, endpoint name); checked against the router at startup
ROUTE_TABLE = [
    ("POST", "/orders/create-payment-intent", "create_payment_intent"),
    ("POST", "/orders/confirm-payment-intent", "confirm_payment_intent"),
    ("POST", "/orders/create-paypal-order", "create_paypal_order"),
    ("GET", "/orders/mine", "list_my_orders"),
    ("GET", "/orders", "list_orders"),
    ("POST", "/orders", "create_order"),
    ("POST", "/orders/{provider}-order", "create_provider_order"),
    ("PATCH", "/orders/{order_id}/status", "update_order_status"),
    ("POST", "/webhook", "stripe_webhook"),
]


def get_gateways(request: Request):
    return request.app.state.gateways


def get_service(db: Session = Depends(get_db), gateways=Depends(get_gateways)) -> OrderReconciliationService:
    return OrderReconciliationService(gateways, OrderStore(db))


def _currency(value: Optional[str]) -> str:
    return (value or get_settings().default_currency).upper()


def _submission(payment_method: str, body: OrderSubmissionRequest, claims: dict) -> PaymentSubmission:
    buyer_id = str(claims["id"])
    if body.buyer_id is not None and body.buyer_id != buyer_id:
        raise ValidationError("buyerId does not match the authenticated user")

    return PaymentSubmission(
        payment_method=payment_method,
        transaction_id=body.transaction_details.id,
        total_amount=body.total_amount,
        currency=_currency(body.currency),
        buyer_id=buyer_id,
        line_items=[LineItem(i.product_id, i.quantity) for i in body.cart_items],
    )


def _intent_response(outcome) -> PaymentIntentResponse:
    return PaymentIntentResponse(
        payment_intent={
            "id": outcome.transaction_id,
            "status": outcome.raw_status or outcome.status.value,
            "amount": outcome.amount,
            "currency": outcome.currency,
        }
    )


# --- Two-phase Stripe flow ---

@router.post("/orders/create-payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(
    body: PaymentIntentCreate,
    claims: dict = Depends(verify_token),
    service: OrderReconciliationService = Depends(get_service),
):
    outcome = service.create_payment_intent(
        body.payment_method_id,
        body.amount,
        _currency(body.currency),
        [LineItem(i.product_id, i.quantity) for i in body.cart_items],
        buyer_id=str(claims["id"]),
    )
    return _intent_response(outcome)


@router.post("/orders/confirm-payment-intent", response_model=PaymentIntentResponse)
def confirm_payment_intent(
    body: PaymentIntentConfirm,
    claims: dict = Depends(verify_token),
    service: OrderReconciliationService = Depends(get_service),
):
    return _intent_response(service.confirm_payment_intent(body.payment_intent_id))


@router.post("/orders/create-paypal-order", response_model=PayPalOrderResponse)
def create_paypal_order(
    body: PayPalOrderCreate,
    claims: dict = Depends(verify_token),
    service: OrderReconciliationService = Depends(get_service),
):
    outcome = service.create_paypal_order(body.total, _currency(body.currency), buyer_id=str(claims["id"]))
    return PayPalOrderResponse(id=outcome.transaction_id, status=outcome.raw_status)


# --- Order history ---

@router.get("/orders/mine", response_model=List[OrderResponse])
def list_my_orders(claims: dict = Depends(verify_token), db: Session = Depends(get_db)):
    return OrderStore(db).list_for_buyer(str(claims["id"]))


@router.get("/orders", response_model=List[OrderResponse])
def list_orders(status: Optional[str] = None, claims: dict = Depends(require_admin), db: Session = Depends(get_db)):
    return OrderStore(db).list_all(status=status)


@router.patch("/orders/{order_id}/status", response_model=OrderResponse)
def update_order_status(
    order_id: int,
    body: OrderStatusUpdate,
    claims: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    order = OrderStore(db).update_status(order_id, body.status)
    logger.info("Order status updated", extra={"order_id": order.id, "outcome": order.status})
    return order


# --- Reconciliation ---

@router.post("/orders", response_model=StatusResponse)
def create_order(
    body: GenericOrderRequest,
    claims: dict = Depends(verify_token),
    service: OrderReconciliationService = Depends(get_service),
):
    resolve_gateway_name(body.payment_method)
    service.reconcile(_submission(body.payment_method, body, claims))
    return StatusResponse()


@router.post("/orders/{provider}-order", response_model=StatusResponse)
def create_provider_order(
    provider: str,
    body: OrderSubmissionRequest,
    claims: dict = Depends(verify_token),
    service: OrderReconciliationService = Depends(get_service),
):
    resolve_gateway_name(provider)
    service.reconcile(_submission(provider, body, claims))
    return StatusResponse()


# --- Stripe webhook ---

@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    service: OrderReconciliationService = Depends(get_service),
):
    payload = await request.body()

    try:
        event = stripe.Webhook.construct_event(
            payload,
            stripe_signature,
            get_settings().stripe_webhook_secret,
        )
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    if event["type"] != "payment_intent.succeeded":
        return {"ok": True}

    intent = event["data"]["object"]
    metadata = intent.get("metadata") or {}
    try:
        items = decode_line_items(metadata)
        submission = PaymentSubmission(
            payment_method="credit-card",
            transaction_id=intent["id"],
            total_amount=from_minor_units(intent["amount"]),
            currency=intent["currency"].upper(),
            buyer_id=metadata["buyer_id"],
            line_items=items,
        )
    except (KeyError, TypeError, ValueError):
        # intents created outside this service carry no cart to persist
        logger.warning("Webhook intent has no order metadata", extra={"external_id": intent.get("id")})
        return {"ok": True}

    await run_in_threadpool(service.reconcile, submission)
    return {"ok": True}
