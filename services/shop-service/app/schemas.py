from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Generic, Literal, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")

OrderStatusLiteral = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
PaymentStatusLiteral = Literal["pending", "completed", "failed", "refunded"]


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    message: str | None = None
    data: T | None = None
    count: int | None = None


# Cart

class CartItemAdd(BaseModel):
    product_id: int
    quantity: int = Field(default=1, ge=1)


class CartItemUpdate(BaseModel):
    item_id: int
    quantity: int = Field(ge=1)


class CartItemOut(BaseModel):
    id: int
    product_id: int
    quantity: int
    unit_price: float

    model_config = ConfigDict(from_attributes=True)


class CartOut(BaseModel):
    id: int
    user_id: int
    items: list[CartItemOut]
    total_price: float
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Orders

class ShippingAddress(BaseModel):
    address: str = Field(min_length=1)
    city: str = ""
    phone: str = ""


class OrderCreateIn(BaseModel):
    shipping_address: ShippingAddress


class OrderStatusUpdate(BaseModel):
    status: OrderStatusLiteral


class OrderPaymentStatusIn(BaseModel):
    # optional expectation; the value itself always comes from the payment records
    payment_status: PaymentStatusLiteral | None = None


class OrderItemOut(BaseModel):
    product_id: int
    name: str
    quantity: int
    unit_price: float

    model_config = ConfigDict(from_attributes=True)


class OrderOut(BaseModel):
    id: int
    user_id: int
    items: list[OrderItemOut]
    total_amount: float
    shipping_address: dict[str, Any]
    status: str
    payment_status: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Payments

class CardPaymentIn(BaseModel):
    method: Literal["card"]
    number: str = Field(pattern=r"^\d{12,19}$")
    name: str = Field(min_length=1)
    expiry: str = Field(pattern=r"^(0[1-9]|1[0-2])/\d{2}$")
    cvv: str = Field(pattern=r"^\d{3,4}$")
    brand: str | None = None

    def persisted(self) -> dict[str, Any]:
        # full card data is never stored
        return {"last_four": self.number[-4:], "brand": self.brand or "unknown"}


class BankTransferPaymentIn(BaseModel):
    method: Literal["bank_transfer"]
    account_name: str = Field(min_length=1)
    bank_name: str = Field(min_length=1)
    transfer_date: date
    reference_number: str = Field(min_length=1)
    slip_url: str | None = None
    slip_id: str | None = None

    def persisted(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"method"})


class CashOnDeliveryPaymentIn(BaseModel):
    method: Literal["cash_on_delivery"]

    def persisted(self) -> dict[str, Any]:
        return {}


PaymentMethodIn = Annotated[
    Union[CardPaymentIn, BankTransferPaymentIn, CashOnDeliveryPaymentIn],
    Field(discriminator="method"),
]


class PaymentCreateIn(BaseModel):
    order_id: int
    amount: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    # checked against PaymentMethodIn only after the order checks pass
    payment: dict[str, Any]
    transaction_id: str | None = Field(default=None, max_length=64)


class PaymentStatusUpdate(BaseModel):
    status: PaymentStatusLiteral
    admin_note: str | None = None


class PaymentOut(BaseModel):
    id: int
    order_id: int
    user_id: int
    amount: float
    method: str
    method_payload: dict[str, Any]
    transaction_id: str | None = None
    status: str
    admin_note: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Inventory

class RestockIn(BaseModel):
    quantity: int = Field(ge=1)


class InventoryOut(BaseModel):
    product_id: int
    name: str
    available_quantity: int
