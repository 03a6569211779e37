import logging
from sqlalchemy.orm import Session
from sqlalchemy.exc import ProgrammingError
from marketplace.core.config import settings
from marketplace.db.session import SessionLocal
from marketplace.services.cart import JsonFileCartStorage
from marketplace.services.payment_service import expire_stale_payments

logger = logging.getLogger(__name__)


def expire_pending_payments(older_than_minutes: int | None = None, db: Session | None = None) -> dict:
    """Fail PayPack charges nobody approved so the customer can start a new one."""
    own = db is None
    db = db or SessionLocal()
    try:
        try:
            expired = expire_stale_payments(db, older_than_minutes=older_than_minutes)
        except ProgrammingError:
            # DB not migrated yet; don't crash the worker.
            db.rollback()
            return {"skipped": True, "reason": "missing_tables"}
        if expired:
            logger.info("expired %d pending payments", expired)
        return {"expired": expired}
    finally:
        if own:
            db.close()


def expire_stale_carts(older_than_hours: int | None = None, storage: JsonFileCartStorage | None = None) -> dict:
    """Drop abandoned cart snapshots so the cart directory does not grow forever."""
    hours = older_than_hours if older_than_hours is not None else settings.CART_TTL_HOURS
    storage = storage or JsonFileCartStorage()
    removed = storage.expire(hours)
    if removed:
        logger.info("removed %d carts idle for more than %s hours", removed, hours)
    return {"removed": removed}
