from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from marketplace.db.session import get_db
from marketplace.api.deps import http_error, require_roles
from marketplace.core.errors import MarketplaceError, ValidationError
from marketplace.models.user import User
from marketplace.schemas.payments import PlatformFeeUpdate
from marketplace.services.audit_service import log_audit
from marketplace.services.settings_service import get_platform_fee_rate, set_platform_fee_rate
from decimal import InvalidOperation

router = APIRouter(tags=["admin"])


@router.get("/admin/settings/platform-fee")
def admin_get_platform_fee(db: Session = Depends(get_db), me: User = Depends(require_roles("admin"))):
    return {"rate": str(get_platform_fee_rate(db))}


@router.put("/admin/settings/platform-fee")
def admin_set_platform_fee(body: PlatformFeeUpdate, db: Session = Depends(get_db), me: User = Depends(require_roles("admin"))):
    previous = get_platform_fee_rate(db)
    try:
        rate = set_platform_fee_rate(db, body.rate.strip(), updated_by=me.id)
    except InvalidOperation:
        raise http_error(ValidationError("rate must be a decimal number", field="rate"))
    except MarketplaceError as e:
        raise http_error(e)
    log_audit(db, me.id, "settings.platform_fee", "setting", "PLATFORM_FEE_RATE", {"from": previous, "to": rate})
    db.commit()
    return {"rate": str(rate)}
