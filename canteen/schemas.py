"""Pydantic models shared by the cart engine and the services."""

import re
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from canteen.cart.line_items import LineItem


class OrderStatus(str, Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    DELIVERING = "delivering"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (OrderStatus.PENDING, OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.DELIVERING)
CLOSED_STATUSES = (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


class PaymentMethod(str, Enum):
    UPI = "upi"
    CARD = "card"
    CASH = "cash"


class CheckoutRequest(BaseModel):
    """Checkout form. Payment details are only checked for shape, never charged."""

    pickup_time: str
    payment_method: PaymentMethod
    special_instructions: Optional[str] = None

    upi_id: Optional[str] = None
    card_number: Optional[str] = None
    card_name: Optional[str] = None
    card_expiry: Optional[str] = None
    card_cvv: Optional[str] = None

    @field_validator("pickup_time")
    @classmethod
    def validate_pickup_time(cls, v):
        if not v or not v.strip():
            raise ValueError("Please choose a pickup time")
        return v.strip()

    @field_validator("card_number", "card_cvv")
    @classmethod
    def digits_only(cls, v):
        if v is None:
            return v
        return re.sub(r"\D", "", v)

    @model_validator(mode="after")
    def validate_payment(self):
        if self.payment_method == PaymentMethod.UPI:
            if not self.upi_id or not self.upi_id.strip():
                raise ValueError("Please enter a valid UPI ID")
        elif self.payment_method == PaymentMethod.CARD:
            if not self.card_number or len(self.card_number) < 16:
                raise ValueError("Please enter a valid card number")
            if not self.card_name or not self.card_name.strip():
                raise ValueError("Please enter the cardholder name")
            if not self.card_expiry or not re.match(r"^(0[1-9]|1[0-2])/\d{2}$", self.card_expiry.strip()):
                raise ValueError("Please enter a valid expiry date (MM/YY)")
            if not self.card_cvv or len(self.card_cvv) < 3:
                raise ValueError("Please enter a valid CVV")
        return self


class OrderRecord(BaseModel):
    """A submitted order as seen in the customer's history."""

    model_config = ConfigDict(frozen=True)

    id: str
    order_number: str
    status: OrderStatus
    total_amount: float
    items: Tuple[LineItem, ...]
    payment_method: Optional[str] = None
    pickup_time: Optional[str] = None
    special_instructions: Optional[str] = None
    created_at: Optional[datetime] = None
