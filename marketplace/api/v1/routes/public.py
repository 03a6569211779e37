from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from marketplace.db.session import get_db
from marketplace.api.deps import http_error
from marketplace.core.errors import MarketplaceError
from marketplace.models.product import Product
from marketplace.models.vendor import Vendor
from marketplace.schemas.cart import QuoteRequest, QuoteOut
from marketplace.services.categories import category_badge, parse_category
from marketplace.services.fees import platform_fee
from marketplace.services.pricing import compute_price, rate_unit_label, to_money
from marketplace.services.settings_service import get_platform_fee_rate

router = APIRouter(tags=["public"])


def product_out(p: Product) -> dict:
    return {
        "id": p.id,
        "vendorId": p.vendor_id,
        "name": p.name,
        "description": p.description,
        "category": p.category,
        "price": str(to_money(p.price)),
        "rateUnit": p.rate_unit,
        "rateUnitLabel": rate_unit_label(p.rate_unit),
        "isReservable": bool(p.is_reservable),
        "isAvailable": bool(p.is_available),
        "minDurationHours": p.min_duration_hours,
        "maxDurationHours": p.max_duration_hours,
    }


@router.get("/public/platform-fee")
def get_public_platform_fee(db: Session = Depends(get_db)):
    """Fee rate applied to each vendor order's subtotal, for price displays."""
    return {"rate": str(get_platform_fee_rate(db))}


@router.get("/public/vendors")
def list_vendors(category: str = "", db: Session = Depends(get_db)):
    q = db.query(Vendor)
    if category:
        q = q.filter(Vendor.category == parse_category(category).value)
    out = []
    for v in q.order_by(Vendor.name.asc()).all():
        badge = category_badge(v.category)
        out.append({
            "id": v.id,
            "name": v.name,
            "description": v.description,
            "category": parse_category(v.category).value,
            "badge": {"icon": badge.icon, "color": badge.color},
            "phoneNumber": v.phone_number,
            "address": v.address,
        })
    return out


@router.get("/public/vendors/{vendor_id}/products")
def list_vendor_products(vendor_id: str, include_unavailable: bool = False, db: Session = Depends(get_db)):
    if not db.get(Vendor, vendor_id):
        raise HTTPException(status_code=404, detail="Vendor not found")
    q = db.query(Product).filter(Product.vendor_id == vendor_id)
    if not include_unavailable:
        q = q.filter(Product.is_available == True)  # noqa: E712
    return [product_out(p) for p in q.order_by(Product.name.asc()).all()]


@router.get("/public/products/{product_id}")
def get_product(product_id: str, db: Session = Depends(get_db)):
    p = db.get(Product, product_id)
    if not p:
        raise HTTPException(status_code=404, detail="Not found")
    return product_out(p)


@router.post("/public/quotes", response_model=QuoteOut)
def quote_reservation(body: QuoteRequest, db: Session = Depends(get_db)):
    """Live price preview while the customer picks dates. Same calculation as checkout."""
    p = db.get(Product, body.productId)
    if not p:
        raise HTTPException(status_code=404, detail="Product not found")
    try:
        quote = compute_price(p.price, p.rate_unit, body.start, body.end)
        fee = platform_fee(quote.total_price, get_platform_fee_rate(db))
    except MarketplaceError as e:
        raise http_error(e)
    return QuoteOut(
        productId=p.id,
        rate=str(to_money(p.price)),
        rateUnit=p.rate_unit,
        rateUnitLabel=rate_unit_label(p.rate_unit),
        durationCount=quote.duration_count,
        durationUnit=quote.duration_unit,
        totalPrice=str(quote.total_price),
        platformFee=str(fee),
        total=str(quote.total_price + fee),
        depositAmount=str(quote.total_price),
    )
