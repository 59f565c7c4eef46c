"""Payment gateway clients.

Each gateway is constructed explicitly with its credentials and handed to the
reconciliation service; nothing here touches module-level SDK state.
"""
import enum
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

import httpx
import stripe

from order_service.errors import GatewayError, ValidationError

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Convert a two-decimal currency amount to integer cents."""
    return int((amount * 100).to_integral_value())


def from_minor_units(value: int) -> Decimal:
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


class TransactionStatus(str, enum.Enum):
    CREATED = "created"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ALREADY_CAPTURED = "already_captured"
    UNKNOWN = "unknown"


@dataclass
class TransactionOutcome:
    transaction_id: str
    status: TransactionStatus
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    raw_status: Optional[str] = None


@dataclass
class LineItem:
    product_id: str
    quantity: int


class PaymentGateway(ABC):
    name: str

    @abstractmethod
    def create_transaction(
        self,
        amount: Decimal,
        currency: str,
        line_items: Sequence[LineItem] = (),
        payment_method_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> TransactionOutcome:
        ...

    @abstractmethod
    def confirm_transaction(self, transaction_id: str) -> TransactionOutcome:
        ...

    @abstractmethod
    def capture_transaction(self, transaction_id: str) -> TransactionOutcome:
        ...


# --- Stripe ---

STRIPE_STATUSES = {
    "succeeded": TransactionStatus.SUCCEEDED,
    "requires_payment_method": TransactionStatus.FAILED,
    "canceled": TransactionStatus.FAILED,
    "requires_confirmation": TransactionStatus.REQUIRES_CONFIRMATION,
    "requires_action": TransactionStatus.REQUIRES_ACTION,
    "processing": TransactionStatus.PENDING,
    "requires_capture": TransactionStatus.PENDING,
}


# Stripe caps metadata at 50 keys of at most 500 characters each
METADATA_MAX_KEYS = 50
METADATA_MAX_VALUE = 500
CART_KEY = "cart_{}"


def _compact(entries) -> str:
    return json.dumps(entries, separators=(",", ":"))


def encode_line_items(line_items: Sequence[LineItem], reserved_keys: int = 0) -> Dict[str, str]:
    """Pack ``[[productId, quantity], ...]`` into as many ``cart_N`` metadata values as needed.

    Chunks split on item boundaries. Raises ``ValidationError`` when one item
    alone exceeds a metadata value or the cart needs more keys than remain.
    """
    chunks: List[list] = []
    current: list = []
    for item in line_items:
        entry = [item.product_id, item.quantity]
        if len(_compact(current + [entry])) <= METADATA_MAX_VALUE:
            current.append(entry)
            continue
        if len(_compact([entry])) > METADATA_MAX_VALUE:
            raise ValidationError("Product id too long to attach to the payment")
        chunks.append(current)
        current = [entry]
    if current:
        chunks.append(current)

    if len(chunks) + reserved_keys > METADATA_MAX_KEYS:
        raise ValidationError("Cart has too many items to attach to the payment")
    return {CART_KEY.format(n): _compact(chunk) for n, chunk in enumerate(chunks)}


def decode_line_items(metadata: Dict[str, str]) -> List[LineItem]:
    """Inverse of :func:`encode_line_items`; raises ``KeyError`` when no cart is attached."""
    if CART_KEY.format(0) not in metadata:
        raise KeyError(CART_KEY.format(0))
    items = []
    n = 0
    while CART_KEY.format(n) in metadata:
        for product_id, quantity in json.loads(metadata[CART_KEY.format(n)]):
            items.append(LineItem(str(product_id), quantity))
        n += 1
    return items


class StripeGateway(PaymentGateway):
    name = "stripe"

    def __init__(self, api_key: str, timeout: float = 10.0, client: Optional[stripe.StripeClient] = None):
        if client is None:
            if not api_key:
                raise RuntimeError("STRIPE_SECRET_KEY is not set. Check your .env file.")
            client = stripe.StripeClient(
                api_key,
                http_client=stripe.RequestsClient(timeout=timeout),
                max_network_retries=0,
            )
        self.client = client

    def create_transaction(self, amount, currency, line_items=(), payment_method_id=None, metadata=None):
        params = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "confirmation_method": "manual",
            "confirm": False,
            "metadata": dict(metadata or {}),
        }
        if line_items:
            params["metadata"].update(encode_line_items(line_items, reserved_keys=len(params["metadata"])))
        if payment_method_id:
            params["payment_method"] = payment_method_id

        intent = self._call("create", params=params)
        return self._outcome(intent)

    def confirm_transaction(self, transaction_id):
        try:
            intent = self.client.payment_intents.confirm(transaction_id)
        except stripe.CardError as exc:
            logger.info("Stripe declined card", extra={"external_id": transaction_id})
            return TransactionOutcome(
                transaction_id=transaction_id,
                status=TransactionStatus.FAILED,
                raw_status=exc.code,
            )
        except stripe.InvalidRequestError as exc:
            if exc.code != "payment_intent_unexpected_state":
                raise self._gateway_error(exc)
            current = self._call("retrieve", transaction_id)
            if current.status != "succeeded":
                raise self._gateway_error(exc)
            outcome = self._outcome(current)
            outcome.status = TransactionStatus.ALREADY_CAPTURED
            return outcome
        except stripe.StripeError as exc:
            raise self._gateway_error(exc)
        return self._outcome(intent)

    def capture_transaction(self, transaction_id):
        # Automatic-capture intents are final once succeeded; manual-capture
        # ones sit in requires_capture until captured here.
        intent = self._call("retrieve", transaction_id)
        if intent.status == "requires_capture":
            intent = self._call("capture", transaction_id)
        return self._outcome(intent)

    def _call(self, method: str, *args, **kwargs):
        try:
            return getattr(self.client.payment_intents, method)(*args, **kwargs)
        except stripe.StripeError as exc:
            raise self._gateway_error(exc)

    @staticmethod
    def _gateway_error(exc: "stripe.StripeError") -> GatewayError:
        return GatewayError(
            f"Stripe request failed: {exc.user_message or exc.code or type(exc).__name__}",
            upstream_status=exc.http_status,
            body=exc.json_body,
        )

    @staticmethod
    def _outcome(intent) -> TransactionOutcome:
        try:
            transaction_id = intent.id
            raw_status = intent.status
            amount = from_minor_units(intent.amount)
            currency = intent.currency.upper()
        except (AttributeError, KeyError, TypeError, InvalidOperation) as exc:
            raise GatewayError("Malformed PaymentIntent returned by Stripe", body=str(intent)) from exc
        return TransactionOutcome(
            transaction_id=transaction_id,
            status=STRIPE_STATUSES.get(raw_status, TransactionStatus.UNKNOWN),
            amount=amount,
            currency=currency,
            raw_status=raw_status,
        )


# --- PayPal ---

PAYPAL_STATUSES = {
    "CREATED": TransactionStatus.CREATED,
    "SAVED": TransactionStatus.CREATED,
    "APPROVED": TransactionStatus.REQUIRES_CONFIRMATION,
    "PAYER_ACTION_REQUIRED": TransactionStatus.REQUIRES_ACTION,
    "COMPLETED": TransactionStatus.SUCCEEDED,
    "VOIDED": TransactionStatus.FAILED,
}

PAYPAL_FAILED_CAPTURES = {"DECLINED", "FAILED"}


class PayPalGateway(PaymentGateway):
    name = "paypal"

    # refresh the access token this many seconds before PayPal expires it
    TOKEN_LEEWAY = 60

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str,
        timeout: float = 10.0,
        http_client: Optional[httpx.Client] = None,
    ):
        if not client_id or not client_secret:
            raise RuntimeError("PAYPAL_CLIENT_ID or PAYPAL_CLIENT_SECRET is missing")
        self.client_id = client_id
        self.client_secret = client_secret
        self.http = http_client or httpx.Client(base_url=base_url, timeout=timeout)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def close(self):
        self.http.close()

    def create_transaction(self, amount, currency, line_items=(), payment_method_id=None, metadata=None):
        purchase_unit: Dict[str, Any] = {
            "amount": {"currency_code": currency.upper(), "value": f"{amount:.2f}"},
        }
        if metadata and metadata.get("buyer_id"):
            purchase_unit["custom_id"] = metadata["buyer_id"]
        body = {"intent": "CAPTURE", "purchase_units": [purchase_unit]}

        response = self._request("POST", "/v2/checkout/orders", json=body)
        return self._outcome(self._json(response))

    def confirm_transaction(self, transaction_id):
        response = self._request("GET", f"/v2/checkout/orders/{transaction_id}")
        return self._outcome(self._json(response))

    def capture_transaction(self, transaction_id):
        response = self._request(
            "POST",
            f"/v2/checkout/orders/{transaction_id}/capture",
            json={},
            allow_statuses=(422,),
        )
        data = self._json(response)

        if response.status_code == 422:
            if "ORDER_ALREADY_CAPTURED" in self._issues(data):
                return TransactionOutcome(
                    transaction_id=transaction_id,
                    status=TransactionStatus.ALREADY_CAPTURED,
                    raw_status="ORDER_ALREADY_CAPTURED",
                )
            raise GatewayError(
                "PayPal rejected the capture request",
                upstream_status=response.status_code,
                body=data,
            )

        outcome = self._outcome(data)
        captures = self._captures(data)
        if any(c.get("status") in PAYPAL_FAILED_CAPTURES for c in captures):
            outcome.status = TransactionStatus.FAILED
        return outcome

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        try:
            response = self.http.post(
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
        except httpx.HTTPError as exc:
            raise GatewayError(f"PayPal authentication failed: {exc}") from exc
        if response.status_code != 200:
            raise GatewayError(
                "PayPal authentication failed",
                upstream_status=response.status_code,
                body=response.text,
            )

        data = self._json(response)
        try:
            self._token = data["access_token"]
            expires_in = int(data.get("expires_in", 0))
        except (KeyError, TypeError, ValueError) as exc:
            raise GatewayError("Malformed PayPal token response", body=data) from exc
        self._token_expires_at = time.monotonic() + max(expires_in - self.TOKEN_LEEWAY, 0)
        return self._token

    def _request(self, method: str, path: str, allow_statuses=(), **kwargs) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        try:
            response = self.http.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayError(f"PayPal request timed out: {method} {path}") from exc
        except httpx.HTTPError as exc:
            raise GatewayError(f"PayPal request failed: {exc}") from exc

        if response.is_success or response.status_code in allow_statuses:
            return response

        raise GatewayError(
            f"PayPal returned HTTP {response.status_code}",
            upstream_status=response.status_code,
            body=response.text,
        )

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError(
                "Malformed response from PayPal",
                upstream_status=response.status_code,
                body=response.text,
            ) from exc
        if not isinstance(data, dict):
            raise GatewayError("Malformed response from PayPal", upstream_status=response.status_code, body=data)
        return data

    @staticmethod
    def _issues(data: Dict[str, Any]) -> List[str]:
        return [d.get("issue") for d in data.get("details") or [] if isinstance(d, dict)]

    @staticmethod
    def _captures(data: Dict[str, Any]) -> List[Dict[str, Any]]:
        units = data.get("purchase_units") or []
        if not units:
            return []
        return (units[0].get("payments") or {}).get("captures") or []

    def _outcome(self, data: Dict[str, Any]) -> TransactionOutcome:
        if "id" not in data or "status" not in data:
            raise GatewayError("Malformed order returned by PayPal", body=data)

        amount = currency = None
        captures = self._captures(data)
        units = data.get("purchase_units") or []
        money = captures[0].get("amount") if captures else (units[0].get("amount") if units else None)
        if money:
            try:
                amount = Decimal(money["value"])
                currency = money["currency_code"].upper()
            except (KeyError, InvalidOperation, AttributeError) as exc:
                raise GatewayError("Malformed amount returned by PayPal", body=data) from exc

        return TransactionOutcome(
            transaction_id=data["id"],
            status=PAYPAL_STATUSES.get(data["status"], TransactionStatus.UNKNOWN),
            amount=amount,
            currency=currency,
            raw_status=data["status"],
        )
