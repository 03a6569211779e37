import base64
import hashlib
import hmac
import logging
import uuid
from datetime import datetime, timedelta, timezone
from functools import lru_cache

from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.core.errors import GatewayError, NotFoundError, ValidationError
from marketplace.models.order import Order
from marketplace.models.payment import Payment
from marketplace.services.audit_service import log_audit
from marketplace.services.paypack_client import ChargeResult, PaypackClient, PaypackConfig
from marketplace.services.pricing import to_money
from marketplace.services.reservation_service import confirm_reservations_for_order

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = ("successful", "success", "completed")
FAILED_STATUSES = ("failed", "failure", "rejected")


@lru_cache
def get_paypack_client() -> PaypackClient:
    """Process-wide client so its token cache survives across requests."""
    return PaypackClient(PaypackConfig(
        base_url=settings.PAYPACK_BASE_URL,
        client_id=settings.PAYPACK_CLIENT_ID,
        client_secret=settings.PAYPACK_CLIENT_SECRET,
        timeout=settings.PAYPACK_TIMEOUT,
        webhook_mode=settings.PAYPACK_WEBHOOK_MODE,
        refresh_margin_seconds=settings.PAYPACK_TOKEN_REFRESH_MARGIN_SECONDS,
    ))


def verify_webhook_signature(body: bytes, signature: str | None, secret: str | None = None) -> bool:
    """PayPack signs the raw body: base64(HMAC-SHA256(secret, body)) in X-Paypack-Signature."""
    secret = secret if secret is not None else settings.PAYPACK_WEBHOOK_SECRET
    if not signature or not secret:
        return False
    computed = base64.b64encode(hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()).decode("ascii")
    return hmac.compare_digest(computed, signature.strip())


def initiate_payment(db: Session, order_id: str, phone: str, client: PaypackClient, actor_id: str = "public") -> Payment:
    """Start a mobile-money charge for the order total.

    A gateway failure leaves the order untouched, so the caller can simply retry.
    """
    order = db.get(Order, order_id)
    if not order:
        raise NotFoundError("order not found")
    if order.status != "pending":
        raise ValidationError(f"order is {order.status}; only pending orders can be paid", field="order_id")
    if db.query(Payment).filter(Payment.order_id == order.id, Payment.status == "completed").first():
        raise ValidationError("order is already paid", field="order_id")
    phone = (phone or order.customer_phone or "").strip()
    if not phone:
        raise ValidationError("phone number is required", field="phone")

    amount = to_money(order.total_amount)
    if settings.PAYPACK_SANDBOX:
        result = ChargeResult(gateway_ref=f"sandbox-{uuid.uuid4().hex[:12]}", raw={"sandbox": True})
    else:
        try:
            result = client.initiate_charge(phone, amount)
        except GatewayError as e:
            logger.error("PayPack charge for order %s failed: %s", order.id, e)
            log_audit(db, actor_id, "payment.failed", "order", order.id, {"error": str(e)})
            db.commit()
            raise

    p = Payment(
        id=str(uuid.uuid4()),
        order_id=order.id,
        provider="paypack",
        gateway_ref=result.gateway_ref,
        amount=amount,
        phone=phone,
        status="pending",
    )
    db.add(p)
    log_audit(db, actor_id, "payment.initiated", "order", order.id, {"ref": result.gateway_ref, "amount": amount})
    db.commit()
    db.refresh(p)
    return p


def handle_settlement_webhook(db: Session, gateway_ref: str, status: str) -> dict:
    """Apply a gateway callback. Safe to receive the same callback more than once."""
    status = (status or "").strip().lower()
    p = db.query(Payment).filter(Payment.gateway_ref == gateway_ref).first()
    if not p:
        logger.warning("PayPack webhook for unknown ref %s (status=%s)", gateway_ref, status)
        return {"matched": False}

    now = datetime.now(timezone.utc)
    if status in SUCCESS_STATUSES:
        first_time = p.status != "completed"
        if first_time:
            p.status = "completed"
            p.updated_at = now
        order = db.get(Order, p.order_id)
        confirmed = 0
        if order and order.status == "pending":
            order.status = "confirmed"
            order.updated_at = now
        if order and order.status in ("pending", "confirmed"):
            confirmed = confirm_reservations_for_order(db, order.id)
        elif order and order.status == "cancelled" and first_time:
            # money arrived for an order nobody will fulfil; flag it for a manual refund
            logger.warning("payment %s completed for cancelled order %s", gateway_ref, order.id)
            log_audit(db, "paypack", "payment.completed_on_cancelled_order", "order", order.id, {"ref": gateway_ref, "amount": p.amount})
        log_audit(db, "paypack", "payment.completed", "payment", p.id, {"ref": gateway_ref, "order_id": p.order_id, "reservations_confirmed": confirmed})
        db.commit()
        logger.info("payment %s completed for order %s (%s)", gateway_ref, p.order_id, order.status if order else "missing")
    elif status in FAILED_STATUSES:
        if p.status == "pending":
            p.status = "failed"
            p.updated_at = now
            log_audit(db, "paypack", "payment.failed", "payment", p.id, {"ref": gateway_ref})
            db.commit()
    else:
        logger.info("PayPack webhook %s with unhandled status %r", gateway_ref, status)
    return {"matched": True, "paymentStatus": p.status, "orderId": p.order_id}


def latest_payment_for_order(db: Session, order_id: str) -> Payment | None:
    return db.query(Payment).filter(Payment.order_id == order_id).order_by(Payment.created_at.desc()).first()


def expire_stale_payments(db: Session, older_than_minutes: int | None = None) -> int:
    """Mark pending payments nobody confirmed as failed. The order stays pending for a retry."""
    minutes = older_than_minutes if older_than_minutes is not None else settings.PAYMENT_PENDING_TIMEOUT_MINUTES
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    stale = db.query(Payment).filter(Payment.status == "pending", Payment.created_at < cutoff).all()
    for p in stale:
        p.status = "failed"
        p.updated_at = datetime.now(timezone.utc)
        log_audit(db, "system", "payment.expired", "payment", p.id, {"ref": p.gateway_ref})
    db.commit()
    return len(stale)


def payment_out(p: Payment) -> dict:
    return {
        "id": p.id,
        "orderId": p.order_id,
        "gatewayRef": p.gateway_ref,
        "amount": str(to_money(p.amount)),
        "phone": p.phone,
        "status": p.status,
        "createdAt": p.created_at.isoformat() if p.created_at else None,
    }
