import json
import logging
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from marketplace.db.session import get_db
from marketplace.api.deps import get_optional_user, get_paypack, http_error
from marketplace.core.config import settings
from marketplace.core.errors import MarketplaceError
from marketplace.models.order import Order
from marketplace.models.user import User
from marketplace.schemas.payments import PaymentInitiate, PaypackWebhookData
from marketplace.services.payment_service import (
    handle_settlement_webhook, initiate_payment, latest_payment_for_order, payment_out, verify_webhook_signature,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


@router.post("/payments/initiate")
def post_initiate_payment(body: PaymentInitiate, db: Session = Depends(get_db),
                          user: User | None = Depends(get_optional_user), client=Depends(get_paypack)):
    """Push a mobile-money prompt to the customer's phone. Confirmation arrives on the webhook."""
    order = db.get(Order, body.orderId)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.customer_id and (not user or (user.id != order.customer_id and user.role != "admin")):
        raise HTTPException(status_code=403, detail="Forbidden")
    try:
        p = initiate_payment(db, order.id, body.phone or "", client, actor_id=user.id if user else "public")
    except MarketplaceError as e:
        raise http_error(e)
    return {**payment_out(p), "message": "Approve the payment on your phone to confirm the order."}


@router.get("/payments/orders/{order_id}/status")
def get_payment_status(order_id: str, db: Session = Depends(get_db)):
    order = db.get(Order, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    p = latest_payment_for_order(db, order_id)
    return {"orderId": order.id, "orderStatus": order.status, "payment": payment_out(p) if p else None}


@router.post("/webhooks/paypack")
async def paypack_webhook(request: Request, db: Session = Depends(get_db)):
    """PayPack transaction callback. Accepts {ref, status} or {data: {ref, status, kind}}."""
    body = await request.body()
    if settings.PAYPACK_WEBHOOK_VERIFY:
        if not verify_webhook_signature(body, request.headers.get("x-paypack-signature")):
            logger.warning("rejected PayPack webhook with bad signature")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    try:
        event = PaypackWebhookData(**data)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Missing ref or status")
    if event.kind and event.kind.upper() not in ("CASHIN", ""):
        return {"ok": True, "ignored": event.kind}
    return {"ok": True, **handle_settlement_webhook(db, event.ref, event.status)}
