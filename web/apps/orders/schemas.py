"""Pydantic schemas for reading orders back out of the ledger."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _ReadModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class OrderItemReadDTO(_ReadModel):
    product_id: Optional[str] = Field(default=None, alias="productId")
    product_name: str = Field(alias="productName")
    quantity: int
    unit_price: str = Field(alias="unitPrice")
    tax_amount: str = Field(alias="taxAmount")
    total_price: str = Field(alias="totalPrice")


class OrderReadDTO(_ReadModel):
    """Public view of an order.

    Amounts are rendered as decimal strings so no precision is lost in JSON.
    Items are included on the detail endpoint only.
    """

    id: str
    order_number: str = Field(alias="orderNumber")
    status: str
    payment_status: str = Field(alias="paymentStatus")
    payment_method: str = Field(alias="paymentMethod")
    transaction_id: str = Field(alias="transactionId")
    subtotal: str
    tax_amount: str = Field(alias="taxAmount")
    total: str
    currency: str
    guest_email: str = Field(alias="guestEmail")
    items_count: int = Field(alias="itemsCount")
    created_at: datetime = Field(alias="createdAt")
    items: Optional[List[OrderItemReadDTO]] = None

    @classmethod
    def from_model(cls, o, with_items: bool = False) -> "OrderReadDTO":
        items = None
        if with_items:
            items = [
                OrderItemReadDTO(
                    product_id=it.product_id,
                    product_name=it.product_name,
                    quantity=it.quantity,
                    unit_price=str(it.unit_price),
                    tax_amount=str(it.tax_amount),
                    total_price=str(it.total_price),
                )
                for it in o.items.all()
            ]
        return cls(
            id=str(o.id),
            order_number=o.order_number,
            status=o.status,
            payment_status=o.payment_status,
            payment_method=o.payment_method,
            transaction_id=o.payment_transaction_id,
            subtotal=str(o.subtotal),
            tax_amount=str(o.tax_amount),
            total=str(o.total_amount),
            currency=o.currency,
            guest_email=o.guest_email,
            items_count=o.items_count,
            created_at=o.created_at,
            items=items,
        )

    def as_body(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
