from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# gateway ids are opaque but never contain whitespace or path separators
TRANSACTION_ID_PATTERN = r"^[A-Za-z0-9_\-]{1,255}$"
CURRENCY_PATTERN = r"^[A-Za-z]{3}$"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartItem(CamelModel):
    product_id: str = Field(..., min_length=1, validation_alias=AliasChoices("productId", "product_id", "_id"))
    quantity: int = Field(..., gt=0, strict=True)


class TransactionDetails(CamelModel):
    id: str = Field(..., pattern=TRANSACTION_ID_PATTERN)


class OrderSubmissionRequest(CamelModel):
    transaction_details: TransactionDetails = Field(
        ..., validation_alias=AliasChoices("transactionDetails", "paymentDetails", "transaction_details")
    )
    cart_items: List[CartItem] = Field(..., min_length=1)
    total_amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    currency: Optional[str] = Field(None, pattern=CURRENCY_PATTERN)
    buyer_id: Optional[str] = None

    @field_validator("currency")
    def upper_currency(cls, v):
        return v.upper() if v else v


class GenericOrderRequest(OrderSubmissionRequest):
    payment_method: str


class PaymentIntentCreate(CamelModel):
    payment_method_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    currency: Optional[str] = Field(None, pattern=CURRENCY_PATTERN)
    cart_items: List[CartItem] = []


class PaymentIntentConfirm(CamelModel):
    payment_intent_id: str = Field(..., pattern=TRANSACTION_ID_PATTERN)


class PayPalOrderCreate(CamelModel):
    total: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    currency: Optional[str] = Field(None, pattern=CURRENCY_PATTERN)


class OrderStatusUpdate(CamelModel):
    status: str


class StatusResponse(BaseModel):
    status: str = "success"


class PaymentIntentBody(BaseModel):
    id: str
    status: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None


class PaymentIntentResponse(CamelModel):
    payment_intent: PaymentIntentBody


class PayPalOrderResponse(BaseModel):
    id: str
    status: Optional[str] = None


class OrderItemResponse(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    product_id: str
    quantity: int


class OrderResponse(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    external_id: str
    provider: str
    buyer_id: str
    total_amount: Decimal
    currency: str
    status: str
    created_at: datetime
    items: List[OrderItemResponse]
