import hashlib
import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.core.errors import NotFoundError, ValidationError
from marketplace.models.order import Order, OrderItem
from marketplace.models.payment import Payment
from marketplace.models.product import Product
from marketplace.models.reservation import Reservation
from marketplace.models.vendor import Vendor
from marketplace.services.audit_service import log_audit
from marketplace.services.fees import platform_fee as compute_platform_fee
from marketplace.services.pricing import compute_price, to_money, validate_window
from marketplace.services.reservation_service import cancel_reservations_for_order
from marketplace.services.settings_service import get_platform_fee_rate

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "confirmed", "processing", "completed", "cancelled")
ORDER_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"processing", "completed", "cancelled"},
    "processing": {"completed", "cancelled"},
}
REQUIRED_CUSTOMER_FIELDS = ("name", "phone", "address")


def validate_customer(customer: dict) -> dict:
    """Return the stripped contact snapshot, or raise on the first missing required field."""
    clean = {k: (customer.get(k) or "").strip() for k in ("name", "phone", "email", "address")}
    for field in REQUIRED_CUSTOMER_FIELDS:
        if not clean[field]:
            raise ValidationError(f"customer {field} is required", field=field)
    clean["email"] = clean["email"] or None
    return clean


def _item_amounts(it: dict) -> tuple[Decimal, int, Decimal]:
    """(unit price, quantity, subtotal) of a requested item, rejecting inconsistent amounts."""
    quantity = int(it.get("quantity") or 1)
    if quantity < 1:
        raise ValidationError("item quantity must be at least 1", field="quantity")
    unit_price = to_money(it["unit_price"])
    if unit_price < 0:
        raise ValidationError("item price must not be negative", field="unit_price")
    subtotal = to_money(unit_price * quantity)
    if it.get("subtotal") is not None and to_money(it["subtotal"]) != subtotal:
        raise ValidationError(f"item subtotal must be {subtotal} ({quantity} x {unit_price})", field="subtotal")
    return unit_price, quantity, subtotal


def _build_items(order_id: str, items: list[dict]) -> list[OrderItem]:
    if not items:
        raise ValidationError("an order needs at least one item", field="items")
    rows = []
    for it in items:
        unit_price, quantity, subtotal = _item_amounts(it)
        rows.append(OrderItem(
            id=str(uuid.uuid4()),
            order_id=order_id,
            product_id=it.get("product_id"),
            product_name=it.get("product_name") or "",
            unit_price=unit_price,
            quantity=quantity,
            subtotal=subtotal,
        ))
    return rows


def request_fingerprint(*, vendor_id: str, customer_id: str | None, contact: dict, lines: list, **extra) -> str:
    """sha256 over who is ordering, from which vendor, and which lines (order-insensitive)."""
    payload = {
        "vendor_id": vendor_id,
        "customer_id": customer_id,
        "contact": [contact.get(k) for k in ("name", "phone", "email", "address")],
        "lines": sorted([str(v) for v in line] for line in lines),
        **{k: str(v) for k, v in extra.items()},
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


def find_by_idempotency_key(db: Session, key: str | None, customer_id: str | None, fingerprint: str) -> Order | None:
    """The order already stored under ``key``, provided it was placed by the same request."""
    if not key:
        return None
    order = db.query(Order).filter(Order.idempotency_key == key).first()
    if order is None:
        return None
    if order.customer_id != customer_id or order.idempotency_fingerprint != fingerprint:
        logger.warning("idempotency key %s reused for a different request", key)
        raise ValidationError("this idempotency key was already used for a different order", field="idempotency_key")
    return order


def stage_order(
    db: Session,
    *,
    vendor_id: str,
    customer: dict,
    total_amount,
    platform_fee,
    items: list[dict],
    customer_id: str | None = None,
    idempotency_key: str | None = None,
    idempotency_fingerprint: str | None = None,
) -> Order:
    """Add an Order and its items to the session without committing.

    Rejects totals that do not equal sum(item subtotals) + platform_fee.
    """
    contact = validate_customer(customer)
    fee = to_money(platform_fee)
    if fee < 0:
        raise ValidationError("platform fee must not be negative", field="platform_fee")

    order_id = str(uuid.uuid4())
    rows = _build_items(order_id, items)
    expected = sum((r.subtotal for r in rows), Decimal("0")) + fee
    if to_money(total_amount) != expected:
        raise ValidationError(f"order total {to_money(total_amount)} does not match items plus fee ({expected})", field="total_amount")

    order = Order(
        id=order_id,
        vendor_id=vendor_id,
        customer_id=customer_id,
        customer_name=contact["name"],
        customer_phone=contact["phone"],
        customer_email=contact["email"],
        customer_address=contact["address"],
        total_amount=expected,
        platform_fee=fee,
        status="pending",
        idempotency_key=idempotency_key,
        idempotency_fingerprint=idempotency_fingerprint,
    )
    db.add(order)
    for r in rows:
        db.add(r)
    return order


def _whole_units(amount: Decimal, rate: Decimal) -> bool:
    if rate == 0:
        return amount == 0
    count = amount / rate
    return count >= 1 and count == count.to_integral_value()


def _check_against_catalogue(db: Session, vendor_id: str, items: list[dict]) -> list[dict]:
    """Re-price items that name a product; free-text items are taken as sent."""
    checked = []
    for it in items:
        it = dict(it)
        if it.get("product_id"):
            product = db.get(Product, it["product_id"])
            if product is None:
                raise ValidationError(f"product {it['product_id']} does not exist", field="product_id")
            if product.vendor_id != vendor_id:
                raise ValidationError(f"{product.name} is not sold by this vendor", field="product_id")
            unit_price, quantity, _ = _item_amounts(it)
            price = to_money(product.price)
            if product.is_reservable:
                # the window itself is checked by create_reservation
                if quantity != 1 or not _whole_units(unit_price, price):
                    raise ValidationError(f"{product.name} is priced in whole units of {price}", field="unit_price")
            elif unit_price != price:
                raise ValidationError(f"{product.name} costs {price}, not {unit_price}", field="unit_price")
            it["product_name"] = product.name
        checked.append(it)
    return checked


def create_order(db: Session, **kwargs) -> Order:
    """Order placed directly through the API.

    Item prices are checked against the catalogue and the platform fee is recomputed
    from the current rate; the client's figures are only accepted when they agree.
    A repeated ``idempotency_key`` returns the stored order for the same request.
    """
    vendor_id = kwargs["vendor_id"]
    customer_id = kwargs.get("customer_id")
    items = kwargs.get("items") or []
    if not items:
        raise ValidationError("an order needs at least one item", field="items")

    key = kwargs.get("idempotency_key")
    fingerprint = None
    if key:
        fingerprint = request_fingerprint(
            vendor_id=vendor_id,
            customer_id=customer_id,
            contact=validate_customer(kwargs["customer"]),
            lines=[(it.get("product_id"), *_item_amounts(it)) for it in items],
            total=to_money(kwargs["total_amount"]),
            fee=to_money(kwargs["platform_fee"]),
        )
        existing = find_by_idempotency_key(db, key, customer_id, fingerprint)
        if existing:
            return existing

    if db.get(Vendor, vendor_id) is None:
        raise NotFoundError("vendor not found")
    items = _check_against_catalogue(db, vendor_id, items)
    subtotal = to_money(sum((_item_amounts(it)[2] for it in items), Decimal("0")))
    fee = compute_platform_fee(subtotal, get_platform_fee_rate(db))
    if to_money(kwargs["platform_fee"]) != fee:
        raise ValidationError(f"platform fee must be {fee} on a subtotal of {subtotal}", field="platform_fee")

    try:
        order = stage_order(db, **{**kwargs, "items": items}, idempotency_fingerprint=fingerprint)
        log_audit(db, customer_id or "public", "order.created", "order", order.id, {"total": order.total_amount, "fee": order.platform_fee})
        db.commit()
    except IntegrityError:
        # A concurrent retry with the same key won the insert.
        db.rollback()
        existing = find_by_idempotency_key(db, key, customer_id, fingerprint) if key else None
        if existing:
            return existing
        raise
    db.refresh(order)
    logger.info("order %s created for vendor %s total=%s", order.id, order.vendor_id, order.total_amount)
    return order


def stage_reservation(
    db: Session,
    *,
    order_id: str,
    product_id: str | None,
    vendor_id: str,
    customer_id: str,
    start_time: datetime,
    end_time: datetime,
    deposit_amount,
    total_price,
) -> Reservation:
    validate_window(start_time, end_time)
    if not customer_id:
        raise ValidationError("a signed-in customer is required to reserve", field="customer_id")
    deposit = to_money(deposit_amount)
    total = to_money(total_price)
    if total < 0:
        raise ValidationError("total price must not be negative", field="total_price")
    if deposit != total:
        raise ValidationError("deposit must equal the full reservation price", field="deposit_amount")

    r = Reservation(
        id=str(uuid.uuid4()),
        order_id=order_id,
        product_id=product_id,
        vendor_id=vendor_id,
        customer_id=customer_id,
        start_time=start_time,
        end_time=end_time,
        deposit_amount=deposit,
        total_price=total,
        status="pending",
        refund_amount=Decimal("0.00"),
        business_payout=Decimal("0.00"),
    )
    db.add(r)
    return r


def create_reservation(db: Session, **kwargs) -> Reservation:
    """Standalone reservation for an existing order; the price is re-checked against the product."""
    order = db.get(Order, kwargs["order_id"])
    if not order:
        raise NotFoundError("order not found")
    if order.vendor_id != kwargs["vendor_id"]:
        raise ValidationError("reservation vendor does not match the order", field="vendor_id")

    product = db.get(Product, kwargs["product_id"]) if kwargs.get("product_id") else None
    if product is not None:
        if not product.is_reservable:
            raise ValidationError(f"{product.name} cannot be reserved", field="product_id")
        quote = compute_price(product.price, product.rate_unit, kwargs["start_time"], kwargs["end_time"])
        if to_money(kwargs["total_price"]) != quote.total_price:
            raise ValidationError(f"price does not match {quote.duration_count} {quote.duration_unit} at {product.price}", field="total_price")

    r = stage_reservation(db, **kwargs)
    log_audit(db, kwargs["customer_id"], "reservation.created", "reservation", r.id, {"order_id": order.id, "deposit": r.deposit_amount})
    db.commit()
    db.refresh(r)
    return r


def update_order_status(db: Session, order_id: str, status: str, actor_id: str) -> Order:
    """Move an order along ORDER_TRANSITIONS. Cancelling also cancels its open reservations."""
    order = db.get(Order, order_id)
    if not order:
        raise NotFoundError("order not found")
    status = (status or "").strip().lower()
    if status not in ORDER_STATUSES:
        raise ValidationError(f"unknown order status: {status}", field="status")
    if status == order.status:
        return order
    if status not in ORDER_TRANSITIONS.get(order.status, set()):
        raise ValidationError(f"cannot move order from {order.status} to {status}", field="status")

    previous = order.status
    try:
        order.status = status
        order.updated_at = datetime.now(timezone.utc)
        cancelled = 0
        if status == "cancelled":
            paid = db.query(Payment.id).filter(Payment.order_id == order.id, Payment.status == "completed").first() is not None
            cancelled = cancel_reservations_for_order(db, order.id, actor_id, paid=paid)
        log_audit(db, actor_id, "order.status", "order", order.id, {"from": previous, "to": status, "reservations_cancelled": cancelled})
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    if cancelled:
        logger.info("order %s cancelled with %d open reservations", order.id, cancelled)
    return order


def orders_for_vendor(db: Session, vendor_id: str, status: str = "", limit: int = 200) -> list[Order]:
    q = select(Order).where(Order.vendor_id == vendor_id)
    if status:
        q = q.where(Order.status == status)
    q = q.order_by(Order.created_at.desc()).limit(min(max(limit, 1), 1000))
    return list(db.execute(q).scalars())


def orders_for_customer(db: Session, customer_id: str, limit: int = 200) -> list[Order]:
    q = select(Order).where(Order.customer_id == customer_id).order_by(Order.created_at.desc()).limit(min(max(limit, 1), 1000))
    return list(db.execute(q).scalars())


def vendor_stats(db: Session, vendor_id: str) -> dict:
    """Order counts plus revenue net of platform fee (completed) and pending balance."""
    orders = db.query(Order.total_amount, Order.platform_fee, Order.status).filter(Order.vendor_id == vendor_id).all()
    completed = [o for o in orders if o.status == "completed"]
    pending = [o for o in orders if o.status == "pending"]

    def net(rows):
        return to_money(sum((Decimal(o.total_amount) - Decimal(o.platform_fee) for o in rows), Decimal("0")))

    return {
        "totalOrders": len(orders),
        "completedOrders": len(completed),
        "pendingOrders": len(pending),
        "totalRevenue": str(net(completed)),
        "pendingBalance": str(net(pending)),
    }


def order_out(order: Order) -> dict:
    return {
        "id": order.id,
        "vendorId": order.vendor_id,
        "customerId": order.customer_id,
        "customerName": order.customer_name,
        "customerPhone": order.customer_phone,
        "customerEmail": order.customer_email,
        "customerAddress": order.customer_address,
        "totalAmount": str(to_money(order.total_amount)),
        "platformFee": str(to_money(order.platform_fee)),
        "status": order.status,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "items": [
            {
                "productId": it.product_id,
                "productName": it.product_name,
                "unitPrice": str(to_money(it.unit_price)),
                "quantity": it.quantity,
                "subtotal": str(to_money(it.subtotal)),
            }
            for it in order.items
        ],
    }
