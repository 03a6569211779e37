import logging
import uuid
from decimal import Decimal

from sqlalchemy.orm import Session
from sqlalchemy import text
from sqlalchemy.exc import ProgrammingError

from marketplace.db.session import SessionLocal
from marketplace.core.config import settings
from marketplace.models.user import User
from marketplace.models.vendor import Vendor
from marketplace.models.product import Product
from marketplace.models.setting import Setting
from marketplace.services.categories import BusinessCategory
from marketplace.services.settings_service import PLATFORM_FEE_KEY

logger = logging.getLogger(__name__)

# (name, category, phone, address, [(product, price, rate_unit, reservable)])
DEMO_VENDORS = [
    ("Kigali Heights Lodge", BusinessCategory.LODGING, "+250788000101", "KG 7 Ave, Kigali", [
        ("Standard room", "100.00", "per_night", True),
        ("Airport transfer", "25.00", "fixed", False),
    ]),
    ("Nyamirambo Kitchen", BusinessCategory.RESTAURANT, "+250788000202", "KN 2 St, Nyamirambo", [
        ("Brochette plate", "6.50", "fixed", False),
        ("Private dining room", "40.00", "per_hour", True),
    ]),
    ("Lake Kivu Boats", BusinessCategory.SERVICES, "+250788000303", "Gisenyi waterfront", [
        ("Kayak", "15.00", "per_hour", True),
        ("Motorboat charter", "180.00", "per_day", True),
    ]),
]


def ensure_user(db: Session, email: str, role: str, name: str) -> User:
    u = db.query(User).filter(User.email == email).first()
    if u:
        return u
    u = User(id=str(uuid.uuid4()), email=email, full_name=name, role=role, is_active=True)
    db.add(u)
    db.commit()
    return u


def ensure_vendor(db: Session, owner: User, name: str, category: BusinessCategory, phone: str, address: str, products: list) -> Vendor:
    v = db.query(Vendor).filter(Vendor.name == name).first()
    if v:
        return v
    v = Vendor(
        id=str(uuid.uuid4()),
        owner_user_id=owner.id,
        name=name,
        category=category.value,
        phone_number=phone,
        address=address,
        balance=Decimal("0.00"),
        balance_version=0,
    )
    db.add(v)
    for pname, price, rate_unit, reservable in products:
        db.add(Product(
            id=str(uuid.uuid4()),
            vendor_id=v.id,
            name=pname,
            price=Decimal(price),
            rate_unit=rate_unit,
            is_reservable=reservable,
            is_available=True,
        ))
    db.commit()
    return v


def run(db=None):
    own = db is None
    if own:
        db = SessionLocal()
    try:
        # If migrations haven't been applied yet, seeding must not crash the API.
        try:
            db.execute(text("SELECT 1 FROM users LIMIT 1"))
        except ProgrammingError:
            db.rollback()
            logger.warning("users table not found yet; skipping seed (run alembic upgrade head)")
            return

        ensure_user(db, "admin@marketplace.local", "admin", "Admin")
        ensure_user(db, "customer@marketplace.local", "customer", "Demo Customer")
        for i, (name, category, phone, address, products) in enumerate(DEMO_VENDORS, start=1):
            owner = ensure_user(db, f"vendor{i}@marketplace.local", "vendor", name)
            ensure_vendor(db, owner, name, category, phone, address, products)

        if not db.get(Setting, PLATFORM_FEE_KEY):
            db.add(Setting(key=PLATFORM_FEE_KEY, int_value=None, str_value=str(settings.PLATFORM_FEE_RATE)))
            db.commit()
        logger.info("seed complete")
    finally:
        if own:
            db.close()
