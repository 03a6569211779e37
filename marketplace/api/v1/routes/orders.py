from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from marketplace.db.session import get_db
from marketplace.api.deps import ensure_vendor_access, get_current_user, get_optional_user, http_error, require_roles
from marketplace.core.errors import MarketplaceError
from marketplace.models.order import Order
from marketplace.models.user import User
from marketplace.schemas.checkout import OrderCreate, OrderStatusUpdate, ReservationCreate
from marketplace.services.order_service import (
    create_order, create_reservation, order_out, orders_for_customer, orders_for_vendor,
    update_order_status, vendor_stats,
)
from marketplace.services.reservation_service import reservation_out

router = APIRouter(tags=["orders"])


@router.post("/orders", status_code=201)
def post_order(body: OrderCreate, db: Session = Depends(get_db), user: User | None = Depends(get_optional_user)):
    """Single-vendor order with explicit totals. Cart checkout is the usual path."""
    try:
        order = create_order(
            db,
            vendor_id=body.vendorId,
            customer={
                "name": body.customerName,
                "phone": body.customerPhone,
                "email": body.customerEmail,
                "address": body.customerAddress,
            },
            total_amount=body.totalAmount,
            platform_fee=body.platformFee,
            items=[
                {
                    "product_id": it.productId,
                    "product_name": it.productName,
                    "unit_price": it.unitPrice,
                    "quantity": it.quantity,
                    "subtotal": it.subtotal,
                }
                for it in body.items
            ],
            customer_id=user.id if user else None,
            idempotency_key=body.idempotencyKey,
        )
    except MarketplaceError as e:
        raise http_error(e)
    return order_out(order)


@router.post("/reservations", status_code=201)
def post_reservation(body: ReservationCreate, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    customer_id = body.customerId or user.id
    if customer_id != user.id and user.role != "admin":
        raise HTTPException(status_code=403, detail="Forbidden")
    order = db.get(Order, body.orderId)
    if order and order.customer_id and order.customer_id != customer_id:
        raise HTTPException(status_code=403, detail="Order belongs to another customer")
    try:
        r = create_reservation(
            db,
            order_id=body.orderId,
            product_id=body.productId,
            vendor_id=body.vendorId,
            customer_id=customer_id,
            start_time=body.startTime,
            end_time=body.endTime,
            deposit_amount=body.depositAmount,
            total_price=body.totalPrice,
        )
    except MarketplaceError as e:
        raise http_error(e)
    return reservation_out(r)


@router.get("/me/orders")
def my_orders(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return [order_out(o) for o in orders_for_customer(db, user.id)]


@router.get("/vendors/{vendor_id}/orders")
def vendor_orders(vendor_id: str, status: str = "", limit: int = 200,
                  db: Session = Depends(get_db), me: User = Depends(require_roles("vendor", "admin"))):
    ensure_vendor_access(db, vendor_id, me)
    return [order_out(o) for o in orders_for_vendor(db, vendor_id, status=status, limit=limit)]


@router.get("/vendors/{vendor_id}/stats")
def get_vendor_stats(vendor_id: str, db: Session = Depends(get_db), me: User = Depends(require_roles("vendor", "admin"))):
    vendor = ensure_vendor_access(db, vendor_id, me)
    return {**vendor_stats(db, vendor_id), "balance": str(vendor.balance or 0)}


@router.post("/orders/{order_id}/status")
def set_order_status(order_id: str, body: OrderStatusUpdate,
                     db: Session = Depends(get_db), me: User = Depends(require_roles("vendor", "admin"))):
    order = db.get(Order, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Not found")
    ensure_vendor_access(db, order.vendor_id, me)
    try:
        order = update_order_status(db, order_id, body.status, me.id)
    except MarketplaceError as e:
        raise http_error(e)
    return order_out(order)
