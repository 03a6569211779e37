import uuid
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from marketplace.db.session import get_db
from marketplace.api.deps import get_cart_storage, get_optional_user, http_error
from marketplace.core.errors import MarketplaceError
from marketplace.models.product import Product
from marketplace.models.user import User
from marketplace.schemas.cart import CartLineIn, ReservationLineIn, QuantityUpdate
from marketplace.schemas.checkout import CheckoutRequest
from marketplace.services.cart import Cart
from marketplace.services.checkout_service import checkout, checkout_out
from marketplace.services.settings_service import get_platform_fee_rate

router = APIRouter(tags=["cart"])


def _load(db: Session, cart_id: str, storage) -> Cart:
    try:
        return Cart.load(cart_id, storage, fee_rate=get_platform_fee_rate(db))
    except MarketplaceError as e:
        raise http_error(e)


def _product(db: Session, product_id: str) -> Product:
    p = db.get(Product, product_id)
    if not p:
        raise HTTPException(status_code=404, detail="Product not found")
    return p


@router.post("/carts", status_code=201)
def create_cart(db: Session = Depends(get_db), storage=Depends(get_cart_storage)):
    cart = Cart(uuid.uuid4().hex, storage=storage, fee_rate=get_platform_fee_rate(db))
    cart.clear()  # persist the empty snapshot
    return cart.as_dict()


@router.get("/carts/{cart_id}")
def get_cart(cart_id: str, db: Session = Depends(get_db), storage=Depends(get_cart_storage)):
    return _load(db, cart_id, storage).as_dict()


@router.post("/carts/{cart_id}/lines")
def add_cart_line(cart_id: str, body: CartLineIn, db: Session = Depends(get_db), storage=Depends(get_cart_storage)):
    cart = _load(db, cart_id, storage)
    try:
        cart.add_line(_product(db, body.productId), body.quantity)
    except MarketplaceError as e:
        raise http_error(e)
    return cart.as_dict()


@router.post("/carts/{cart_id}/reservations")
def add_reservation_line(cart_id: str, body: ReservationLineIn, db: Session = Depends(get_db), storage=Depends(get_cart_storage)):
    cart = _load(db, cart_id, storage)
    try:
        cart.add_reservation_line(_product(db, body.productId), body.start, body.end)
    except MarketplaceError as e:
        raise http_error(e)
    return cart.as_dict()


@router.patch("/carts/{cart_id}/lines/{product_id}")
def update_cart_line(cart_id: str, product_id: str, body: QuantityUpdate, db: Session = Depends(get_db), storage=Depends(get_cart_storage)):
    cart = _load(db, cart_id, storage)
    try:
        cart.update_quantity(product_id, body.quantity)
    except MarketplaceError as e:
        raise http_error(e)
    return cart.as_dict()


@router.delete("/carts/{cart_id}/lines/{product_id}")
def remove_cart_line(cart_id: str, product_id: str, db: Session = Depends(get_db), storage=Depends(get_cart_storage)):
    cart = _load(db, cart_id, storage)
    cart.remove_line(product_id)
    return cart.as_dict()


@router.delete("/carts/{cart_id}")
def clear_cart(cart_id: str, db: Session = Depends(get_db), storage=Depends(get_cart_storage)):
    cart = _load(db, cart_id, storage)
    cart.clear()
    return cart.as_dict()


@router.post("/carts/{cart_id}/checkout", status_code=201)
def checkout_cart(
    cart_id: str,
    body: CheckoutRequest,
    db: Session = Depends(get_db),
    storage=Depends(get_cart_storage),
    user: User | None = Depends(get_optional_user),
):
    cart = _load(db, cart_id, storage)
    try:
        result = checkout(
            db,
            cart,
            body.customer.model_dump(),
            customer_id=user.id if user else None,
            idempotency_key=body.idempotencyKey,
        )
    except MarketplaceError as e:
        raise http_error(e)
    out = checkout_out(result)
    if not result.ok:
        # Some vendor orders may exist already; retry with the same idempotencyKey.
        raise HTTPException(status_code=503, detail=out)
    return out
