from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
from sqlalchemy.orm import Session
from marketplace.db.session import get_db
from marketplace.core.security import decode_token
from marketplace.core.errors import GatewayError, InvariantViolation, MarketplaceError, NotFoundError, PersistenceError, ValidationError
from marketplace.models.user import User
from marketplace.models.vendor import Vendor
from marketplace.services.cart import JsonFileCartStorage
from marketplace.services.payment_service import get_paypack_client

bearer = HTTPBearer(auto_error=False)

def _user_from_creds(creds: HTTPAuthorizationCredentials, db: Session) -> User:
    try:
        payload = decode_token(creds.credentials)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id = payload.get("sub")
    user = db.get(User, user_id) if user_id else None
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return user

def get_current_user(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    if not creds:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return _user_from_creds(creds, db)

def get_optional_user(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: Session = Depends(get_db),
) -> User | None:
    """Guest checkout is allowed; a token, if sent, must still be valid."""
    if not creds:
        return None
    return _user_from_creds(creds, db)

def require_roles(*roles: str):
    def _guard(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return user
    return _guard

def ensure_vendor_access(db: Session, vendor_id: str, user: User) -> Vendor:
    """Vendors may only act on their own business; admins on any."""
    vendor = db.get(Vendor, vendor_id)
    if not vendor:
        raise HTTPException(status_code=404, detail="Vendor not found")
    if user.role != "admin" and vendor.owner_user_id != user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return vendor

def get_cart_storage() -> JsonFileCartStorage:
    return JsonFileCartStorage()

def get_paypack():
    return get_paypack_client()

def http_error(e: MarketplaceError) -> HTTPException:
    """Map service errors onto HTTP responses."""
    if isinstance(e, ValidationError):
        detail = {"message": e.message, "field": e.field} if e.field else e.message
        return HTTPException(status_code=400, detail=detail)
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=e.message or "Not found")
    if isinstance(e, InvariantViolation):
        return HTTPException(status_code=409, detail=e.message)
    if isinstance(e, GatewayError):
        return HTTPException(status_code=502, detail={"message": e.message, "retryable": True})
    if isinstance(e, PersistenceError):
        return HTTPException(status_code=503, detail={"message": e.message, "retryable": True, "vendorId": e.vendor_id})
    return HTTPException(status_code=500, detail=e.message or "Internal error")
