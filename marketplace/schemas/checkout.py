from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field
from typing import List, Optional

class CustomerInfo(BaseModel):
    name: str = ""
    phone: str = ""
    email: Optional[str] = None  # plain str to allow .local and other dev domains
    address: str = ""

class CheckoutRequest(BaseModel):
    customer: CustomerInfo
    # Reuse the same key when retrying a failed or interrupted checkout
    idempotencyKey: Optional[str] = Field(default=None, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")

class OrderItemIn(BaseModel):
    productId: Optional[str] = None
    productName: str
    unitPrice: Decimal
    quantity: int = Field(default=1, ge=1)
    subtotal: Optional[Decimal] = None

class OrderCreate(BaseModel):
    vendorId: str
    customerName: str
    customerEmail: Optional[str] = None
    customerPhone: str
    customerAddress: str
    totalAmount: Decimal
    platformFee: Decimal
    items: List[OrderItemIn]
    idempotencyKey: Optional[str] = Field(default=None, max_length=120)

class ReservationCreate(BaseModel):
    orderId: str
    productId: str
    vendorId: str
    customerId: Optional[str] = None  # defaults to the signed-in user
    startTime: datetime
    endTime: datetime
    depositAmount: Decimal
    totalPrice: Decimal

class OrderStatusUpdate(BaseModel):
    status: str

class ReservationStatusUpdate(BaseModel):
    status: str
    customerAttended: Optional[bool] = None
    # Settling is irreversible; terminal statuses require an explicit confirmation.
    confirm: bool = False

class ReservationCancel(BaseModel):
    confirm: bool = False

class SettlementOut(BaseModel):
    refundAmount: str
    businessPayout: str

class SettledReservationOut(BaseModel):
    reservation: dict
    settlement: SettlementOut
