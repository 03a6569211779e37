from pydantic import BaseModel
from typing import Optional

class PaymentInitiate(BaseModel):
    orderId: str
    phone: Optional[str] = None  # falls back to the order's contact phone

class PaypackWebhookData(BaseModel):
    ref: str
    status: str
    kind: Optional[str] = None

class PlatformFeeUpdate(BaseModel):
    rate: str  # decimal string, e.g. "0.05"
