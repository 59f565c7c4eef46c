import enum
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Mapping, Optional, Sequence

from order_service.errors import (
    AlreadyCapturedError,
    AmountMismatchError,
    DuplicateTransactionError,
    GatewayError,
    OrderServiceError,
    PaymentFailure,
    ValidationError,
)
from order_service.gateways import LineItem, PaymentGateway, TransactionOutcome, TransactionStatus
from order_service.models import Order, OrderItem, OrderStatus
from order_service.store import OrderStore

logger = logging.getLogger(__name__)

# payment method token sent by the client -> gateway name
PAYMENT_METHODS = {
    "paypal": "paypal",
    "credit-card": "stripe",
}


def resolve_gateway_name(payment_method: str) -> str:
    try:
        return PAYMENT_METHODS[payment_method]
    except (KeyError, TypeError):
        raise ValidationError("Unsupported payment method")


@dataclass
class PaymentSubmission:
    payment_method: str
    transaction_id: str
    total_amount: Decimal
    currency: str
    buyer_id: str
    line_items: List[LineItem] = field(default_factory=list)


class ReconciliationState(str, enum.Enum):
    PERSISTED = "persisted"
    SKIPPED = "skipped"


@dataclass
class ReconciliationResult:
    state: ReconciliationState
    order: Optional[Order] = None


class OrderReconciliationService:
    """Turns a confirmed gateway transaction into exactly one local order.

    A submission is first matched against the store by its transaction id.
    Known ids are replays (client retry, double click, webhook redelivery) and
    succeed without touching the gateway. Unknown ids are captured through the
    gateway and persisted only when the gateway reports success; losing the
    insert race to a concurrent request also counts as success.
    """

    def __init__(self, gateways: Mapping[str, PaymentGateway], store: OrderStore):
        self.gateways = gateways
        self.store = store

    def gateway_for(self, payment_method: str) -> PaymentGateway:
        name = resolve_gateway_name(payment_method)
        gateway = self.gateways.get(name)
        if gateway is None:
            raise GatewayError(f"Payment gateway {name!r} is not configured")
        return gateway

    def reconcile(self, submission: PaymentSubmission) -> ReconciliationResult:
        self._validate(submission)
        gateway = self.gateway_for(submission.payment_method)
        log_extra = {"provider": gateway.name, "external_id": submission.transaction_id}

        existing = self.store.find_by_external_id(submission.transaction_id)
        if existing is not None:
            logger.info("Transaction already reconciled", extra={**log_extra, "outcome": "skipped"})
            return ReconciliationResult(ReconciliationState.SKIPPED, existing)

        outcome = gateway.capture_transaction(submission.transaction_id)
        self._check_outcome(outcome, submission, log_extra)

        order = Order(
            external_id=submission.transaction_id,
            provider=gateway.name,
            buyer_id=submission.buyer_id,
            total_amount=submission.total_amount,
            currency=submission.currency,
            status=OrderStatus.PAID.value,
            items=[
                OrderItem(position=i, product_id=item.product_id, quantity=item.quantity)
                for i, item in enumerate(submission.line_items)
            ],
        )
        try:
            order = self.store.insert(order)
        except DuplicateTransactionError:
            existing = self.store.find_by_external_id(submission.transaction_id)
            if existing is None:
                raise OrderServiceError("Order could not be persisted")
            logger.info("Concurrent request persisted the order first", extra={**log_extra, "outcome": "skipped"})
            return ReconciliationResult(ReconciliationState.SKIPPED, existing)

        logger.info("Order persisted", extra={**log_extra, "order_id": order.id, "outcome": "persisted"})
        return ReconciliationResult(ReconciliationState.PERSISTED, order)

    def create_payment_intent(
        self,
        payment_method_id: str,
        amount: Decimal,
        currency: str,
        line_items: Sequence[LineItem] = (),
        buyer_id: Optional[str] = None,
    ) -> TransactionOutcome:
        if not payment_method_id:
            raise ValidationError("paymentMethodId is required")
        self._validate_amount(amount)
        # carried on the intent so the webhook can rebuild the submission
        metadata = {"buyer_id": buyer_id} if buyer_id else None
        return self.gateway_for("credit-card").create_transaction(
            amount, currency, line_items, payment_method_id=payment_method_id, metadata=metadata
        )

    def confirm_payment_intent(self, intent_id: str) -> TransactionOutcome:
        if not intent_id:
            raise ValidationError("paymentIntentId is required")
        outcome = self.gateway_for("credit-card").confirm_transaction(intent_id)
        if outcome.status == TransactionStatus.FAILED:
            raise PaymentFailure()
        if outcome.status == TransactionStatus.ALREADY_CAPTURED:
            raise AlreadyCapturedError()
        return outcome

    def create_paypal_order(self, amount: Decimal, currency: str, buyer_id: Optional[str] = None) -> TransactionOutcome:
        self._validate_amount(amount)
        metadata = {"buyer_id": buyer_id} if buyer_id else None
        return self.gateway_for("paypal").create_transaction(amount, currency, metadata=metadata)

    @staticmethod
    def _validate_amount(amount: Decimal):
        if amount is None or amount <= 0:
            raise ValidationError("Amount must be positive")

    def _validate(self, submission: PaymentSubmission):
        resolve_gateway_name(submission.payment_method)
        if not submission.transaction_id or not isinstance(submission.transaction_id, str):
            raise ValidationError("Missing transaction id")
        self._validate_amount(submission.total_amount)
        if not submission.buyer_id:
            raise ValidationError("Missing buyer id")
        if not submission.currency or not isinstance(submission.currency, str):
            raise ValidationError("Missing currency")
        if not submission.line_items:
            raise ValidationError("Cart is empty")
        for item in submission.line_items:
            if not item.product_id or not isinstance(item.product_id, str):
                raise ValidationError("Missing product id")
            if not isinstance(item.quantity, int) or isinstance(item.quantity, bool) or item.quantity <= 0:
                raise ValidationError("Quantity must be a positive integer")

    @staticmethod
    def _check_outcome(outcome: TransactionOutcome, submission: PaymentSubmission, log_extra: dict):
        status = outcome.status
        if status == TransactionStatus.SUCCEEDED:
            if outcome.amount is not None and outcome.amount != submission.total_amount:
                logger.warning("Captured amount differs from order total", extra={**log_extra, "outcome": "rejected"})
                raise AmountMismatchError()
            if outcome.currency is not None and outcome.currency != submission.currency:
                logger.warning("Captured currency differs from order currency", extra={**log_extra, "outcome": "rejected"})
                raise AmountMismatchError("Captured currency does not match the order currency")
            return

        logger.warning(
            "Gateway did not report success: %s", outcome.raw_status or status.value,
            extra={**log_extra, "outcome": "rejected"},
        )
        if status == TransactionStatus.FAILED:
            raise PaymentFailure()
        if status == TransactionStatus.ALREADY_CAPTURED:
            raise AlreadyCapturedError()
        raise GatewayError(f"Unexpected transaction status: {outcome.raw_status or status.value}")
