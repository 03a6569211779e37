"""Turn a cart into one order per vendor, plus a reservation for each reserved line.

The datastore cannot commit several vendors' orders atomically, so each vendor order
is its own transaction keyed by ``<checkout key>:<vendor id>``. Retrying a checkout
with the same key returns the orders that already exist and only creates the missing
ones; nothing is rolled back across vendors. A key stays bound to the customer and
the cart lines it was first used with.
"""
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.core.errors import PersistenceError, ValidationError
from marketplace.models.order import Order, OrderItem
from marketplace.models.product import Product
from marketplace.models.reservation import Reservation
from marketplace.services.audit_service import log_audit
from marketplace.services.cart import Cart, CartLine
from marketplace.services.fees import platform_fee
from marketplace.services.order_service import (
    find_by_idempotency_key, order_out, request_fingerprint, stage_order, stage_reservation, validate_customer,
)
from marketplace.services.pricing import compute_price, to_money
from marketplace.services.reservation_service import reservation_out

logger = logging.getLogger(__name__)


@dataclass
class PlacedOrder:
    order: Order
    reservations: list[Reservation] = field(default_factory=list)
    reused: bool = False


@dataclass
class VendorFailure:
    vendor_id: str
    error: str
    retryable: bool = True


@dataclass
class CheckoutResult:
    idempotency_key: str
    placed: list[PlacedOrder] = field(default_factory=list)
    failures: list[VendorFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def partially_placed(self) -> bool:
        return bool(self.placed) and bool(self.failures)


def _line_amount(line: CartLine) -> tuple[Decimal, Decimal]:
    """(unit price, subtotal) for an order item. Reservation lines are re-quoted from their window."""
    if line.is_reservation:
        quote = compute_price(line.product.price, line.product.rate_unit, line.window.start, line.window.end)
        return quote.total_price, quote.total_price
    unit = to_money(line.product.price)
    return unit, to_money(unit * line.quantity)


def _prevalidate(db: Session, cart: Cart, customer: dict, customer_id: str | None) -> dict:
    if cart.is_empty:
        raise ValidationError("cart is empty", field="cart")
    contact = validate_customer(customer)
    for line in cart.lines:
        if line.is_reservation and not customer_id:
            raise ValidationError("please sign in to make a reservation", field="customer_id")
        product = db.get(Product, line.product.id)
        if product is None or not product.is_available:
            raise ValidationError(f"{line.product.name} is no longer available", field="product_id")
        if product.vendor_id != line.product.vendor_id:
            raise ValidationError(f"{line.product.name} changed vendor; remove it and add it again", field="product_id")
    return contact


def _verify_order(db: Session, order_id: str, expected_items: int, expected_total: Decimal) -> None:
    """Second phase of create-then-verify: the order is ready for payment only if its items landed."""
    count, subtotal = db.query(func.count(OrderItem.id), func.coalesce(func.sum(OrderItem.subtotal), 0)).filter(OrderItem.order_id == order_id).one()
    order = db.get(Order, order_id)
    if count != expected_items or to_money(Decimal(str(subtotal)) + order.platform_fee) != expected_total:
        raise PersistenceError(f"order {order_id} was stored incompletely", vendor_id=order.vendor_id)


def _fingerprint(vendor_id: str, lines: list[CartLine], contact: dict, customer_id: str | None) -> str:
    return request_fingerprint(
        vendor_id=vendor_id,
        customer_id=customer_id,
        contact=contact,
        lines=[
            (line.product.id, line.quantity,
             line.window.start.isoformat() if line.window else "", line.window.end.isoformat() if line.window else "")
            for line in lines
        ],
    )


def _existing(db: Session, key: str, customer_id: str | None, fingerprint: str) -> PlacedOrder | None:
    order = find_by_idempotency_key(db, key, customer_id, fingerprint)
    if not order:
        return None
    reservations = db.query(Reservation).filter(Reservation.order_id == order.id).all()
    return PlacedOrder(order=order, reservations=reservations, reused=True)


def _place_vendor_order(db: Session, vendor_id: str, lines: list[CartLine], contact: dict,
                        customer_id: str | None, fee_rate: Decimal, key: str, fingerprint: str) -> PlacedOrder:
    existing = _existing(db, key, customer_id, fingerprint)
    if existing:
        logger.info("checkout key %s already placed order %s", key, existing.order.id)
        return existing

    items = []
    for line in lines:
        unit, subtotal = _line_amount(line)
        items.append({
            "product_id": line.product.id,
            "product_name": line.product.name,
            "unit_price": unit,
            "quantity": 1 if line.is_reservation else line.quantity,
            "subtotal": subtotal,
        })
    subtotal = to_money(sum((it["subtotal"] for it in items), Decimal("0")))
    fee = platform_fee(subtotal, fee_rate)

    try:
        order = stage_order(
            db,
            vendor_id=vendor_id,
            customer=contact,
            total_amount=subtotal + fee,
            platform_fee=fee,
            items=items,
            customer_id=customer_id,
            idempotency_key=key,
            idempotency_fingerprint=fingerprint,
        )
        reservations = []
        for line, item in zip(lines, items):
            if not line.is_reservation:
                continue
            reservations.append(stage_reservation(
                db,
                order_id=order.id,
                product_id=line.product.id,
                vendor_id=vendor_id,
                customer_id=customer_id,
                start_time=line.window.start,
                end_time=line.window.end,
                deposit_amount=item["subtotal"],
                total_price=item["subtotal"],
            ))
        log_audit(db, customer_id or "public", "order.created", "order", order.id, {
            "vendor_id": vendor_id, "subtotal": subtotal, "fee": fee, "reservations": len(reservations), "key": key,
        })
        db.commit()
    except IntegrityError:
        # A concurrent retry with the same key won the insert.
        db.rollback()
        existing = _existing(db, key, customer_id, fingerprint)
        if existing:
            return existing
        raise

    _verify_order(db, order.id, len(items), subtotal + fee)
    logger.info("order %s placed for vendor %s subtotal=%s fee=%s", order.id, vendor_id, subtotal, fee)
    return PlacedOrder(order=order, reservations=reservations)


def checkout(db: Session, cart: Cart, customer: dict, *, customer_id: str | None = None,
             fee_rate=None, idempotency_key: str | None = None) -> CheckoutResult:
    """Validate everything, then place one order per vendor.

    Validation failures raise before any write. Persistence failures are collected
    per vendor; already placed vendor orders are kept and reported in ``placed``.
    The cart and its stored snapshot are discarded only when every vendor order was placed.
    """
    contact = _prevalidate(db, cart, customer, customer_id)
    rate = Decimal(str(fee_rate)) if fee_rate is not None else cart.fee_rate
    result = CheckoutResult(idempotency_key=idempotency_key or uuid.uuid4().hex)

    groups = cart.group_by_vendor()
    fingerprints = {vendor_id: _fingerprint(vendor_id, lines, contact, customer_id) for vendor_id, lines in groups.items()}
    # A key reused by another customer or for another cart fails before anything is written.
    for vendor_id in groups:
        find_by_idempotency_key(db, f"{result.idempotency_key}:{vendor_id}", customer_id, fingerprints[vendor_id])

    for vendor_id, lines in groups.items():
        key = f"{result.idempotency_key}:{vendor_id}"
        try:
            result.placed.append(_place_vendor_order(db, vendor_id, lines, contact, customer_id, rate, key, fingerprints[vendor_id]))
        except PersistenceError as e:
            logger.error("checkout %s: %s", key, e)
            result.failures.append(VendorFailure(vendor_id=vendor_id, error=str(e)))
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("checkout %s: could not store order for vendor %s", key, vendor_id)
            err = PersistenceError(f"could not place order for vendor {vendor_id}", vendor_id=vendor_id)
            result.failures.append(VendorFailure(vendor_id=vendor_id, error=f"{err}: {e.__class__.__name__}"))

    if result.ok:
        cart.discard()
    else:
        logger.warning("checkout %s partially placed: %d ok, %d failed", result.idempotency_key, len(result.placed), len(result.failures))
    return result


def checkout_out(result: CheckoutResult) -> dict:
    return {
        "idempotencyKey": result.idempotency_key,
        "ok": result.ok,
        "partiallyPlaced": result.partially_placed,
        "orders": [
            {**order_out(p.order), "reused": p.reused, "reservations": [reservation_out(r) for r in p.reservations]}
            for p in result.placed
        ],
        "failures": [{"vendorId": f.vendor_id, "error": f.error, "retryable": f.retryable} for f in result.failures],
    }
