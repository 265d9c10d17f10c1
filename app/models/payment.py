from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class PaymentIntentCreate(BaseModel):
    booking_id: str
    tip_amount: float = Field(default=0.0, ge=0)


class PaymentIntentResponse(BaseModel):
    payment_id: str
    invoice_number: str
    client_secret: Optional[str] = None
    intent_id: str
    amount: float
    currency: str
    simulated: bool = False


class PaymentResponse(BaseModel):
    id: str
    reference_number: str
    booking_id: str
    amount: float
    currency: str
    commission_rate: float
    commission_amount: Optional[float] = None
    tip_amount: float = 0.0
    provider_payout: Optional[float] = None
    status: str
    escrow_status: Optional[str] = None
    external_transaction_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True
