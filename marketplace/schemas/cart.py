from datetime import datetime
from pydantic import BaseModel, Field

class CartLineIn(BaseModel):
    productId: str
    quantity: int = Field(default=1, ge=1)

class ReservationLineIn(BaseModel):
    productId: str
    start: datetime
    end: datetime

class QuantityUpdate(BaseModel):
    quantity: int  # <= 0 removes the line

class QuoteRequest(BaseModel):
    productId: str
    start: datetime
    end: datetime

class QuoteOut(BaseModel):
    productId: str
    rate: str
    rateUnit: str
    rateUnitLabel: str
    durationCount: int
    durationUnit: str
    totalPrice: str
    platformFee: str
    total: str
    depositAmount: str
