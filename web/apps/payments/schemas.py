"""Pydantic schemas for the payments API.

Request bodies use the camelCase names the storefront sends; attributes
are snake_case. ``parse`` turns a pydantic failure into the API's own
``ValidationError`` so views can render it like any other checkout error.
"""

from decimal import Decimal
from typing import List, Optional, Type, TypeVar

from django.conf import settings
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from apps.orders.domain import PaymentMethod

from .domain import Customer, LineItem
from .errors import ValidationError

T = TypeVar("T", bound=BaseModel)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class CartItemIn(_CamelModel):
    """One cart line as submitted by the storefront.

    Attributes:
        product_id: Catalogue id, if the line maps to a product.
        name: Display name, copied to the order item.
        price: Unit price in major units, >= 0.
        quantity: Units, >= 1.
    """

    product_id: Optional[str] = Field(default=None, alias="productId")
    name: str = Field(min_length=1, max_length=255)
    price: Decimal = Field(ge=0)
    quantity: int = Field(ge=1)

    @field_validator("product_id", mode="before")
    @classmethod
    def stringify_product_id(cls, v):
        return str(v) if v is not None else None

    def as_line_item(self) -> LineItem:
        return LineItem(name=self.name, unit_price=self.price, quantity=self.quantity)


class CustomerInfoIn(_CamelModel):
    """Buyer details; stored verbatim as billing and shipping snapshots."""

    email: EmailStr
    name: str = Field(min_length=1, max_length=255)
    address: str = ""
    city: str = ""
    state: str = ""
    postcode: str = ""
    country: str = Field(default_factory=lambda: settings.CHECKOUT_DEFAULT_COUNTRY)

    def as_customer(self) -> Customer:
        return Customer(email=str(self.email), name=self.name)

    def snapshot(self) -> dict:
        return self.model_dump(mode="json")


class ConfirmPaymentDTO(_CamelModel):
    """Body of ``POST /api/payments/confirm/``."""

    payment_method: PaymentMethod = Field(alias="paymentMethod")
    provider_transaction_ref: str = Field(alias="providerTransactionRef", min_length=1, max_length=255)
    items: List[CartItemIn] = Field(min_length=1)
    customer_info: CustomerInfoIn = Field(alias="customerInfo")


class CreatePaymentDTO(_CamelModel):
    """Body of the create-session / create-order endpoints.

    ``amount`` is what the storefront displayed. It is advisory only: the
    amount sent to the provider is always recomputed from ``items``.
    """

    amount: Optional[Decimal] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    items: List[CartItemIn] = Field(min_length=1)
    customer_info: CustomerInfoIn = Field(alias="customerInfo")

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


def _field_name(loc) -> str:
    return ".".join(str(p) for p in loc) or "body"


def parse(dto_cls: Type[T], data) -> T:
    """Validate ``data`` into ``dto_cls``.

    Raises:
        ValidationError: ``INVALID_REQUEST`` with a field → message map.
    """
    try:
        return dto_cls.model_validate(data)
    except PydanticValidationError as e:
        field_errors = {_field_name(err["loc"]): err["msg"] for err in e.errors()}
        raise ValidationError("INVALID_REQUEST", field_errors=field_errors) from e
