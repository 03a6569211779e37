from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from sqlalchemy.orm import Session
from marketplace.core.config import settings
from marketplace.models.setting import Setting
from marketplace.services.fees import validate_fee_rate

PLATFORM_FEE_KEY = "PLATFORM_FEE_RATE"

def get_platform_fee_rate(db: Session) -> Decimal:
    s = db.get(Setting, PLATFORM_FEE_KEY)
    if s and s.str_value:
        try:
            return validate_fee_rate(Decimal(s.str_value))
        except (InvalidOperation, ValueError):
            pass
    return validate_fee_rate(settings.PLATFORM_FEE_RATE)

def set_platform_fee_rate(db: Session, rate, updated_by: str | None = None) -> Decimal:
    """Only affects orders created afterwards; existing orders keep their stored fee."""
    rate = validate_fee_rate(rate)
    s = db.get(Setting, PLATFORM_FEE_KEY)
    if not s:
        s = Setting(key=PLATFORM_FEE_KEY, int_value=None, str_value=str(rate))
        db.add(s)
    else:
        s.str_value = str(rate)
    s.updated_by_user_id = updated_by
    s.updated_at = datetime.now(timezone.utc)
    db.commit()
    return rate
