from typing import Any
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import deps
from app.db.database import get_db
from app.db.db_models import User
from app.models.payment import PaymentIntentCreate, PaymentIntentResponse
from app.services.payment_service import PaymentService

router = APIRouter()


@router.post("/intent", response_model=PaymentIntentResponse)
async def create_payment_intent(
    intent_in: PaymentIntentCreate,
    current_user: User = Depends(deps.get_current_customer),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    Create a payment intent for a booking awaiting payment (service price + tip).
    """
    result = await PaymentService(db).create_payment_intent(
        current_user, intent_in.booking_id, intent_in.tip_amount
    )
    return PaymentIntentResponse(
        payment_id=result.payment.id,
        invoice_number=result.payment.reference_number,
        client_secret=result.client_secret,
        intent_id=result.intent_id,
        amount=result.payment.amount,
        currency=result.payment.currency,
        simulated=result.simulated,
    )


@router.post("/webhook")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Handle Stripe webhooks. Redelivered events are safe to process again.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    service = PaymentService(db)
    event = service.parse_event(payload, sig_header)
    return await service.handle_event(event)
