from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from marketplace.db.session import get_db
from marketplace.api.deps import ensure_vendor_access, get_current_user, http_error, require_roles
from marketplace.core.errors import MarketplaceError
from marketplace.models.reservation import Reservation
from marketplace.models.user import User
from marketplace.schemas.checkout import ReservationCancel, ReservationStatusUpdate, SettledReservationOut
from marketplace.services.reservation_service import (
    TERMINAL, cancel_reservation, normalize_status, reservation_out,
    reservations_for_customer, reservations_for_vendor, update_reservation_status,
)

router = APIRouter(tags=["reservations"])


@router.get("/me/reservations")
def my_reservations(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return [reservation_out(r) for r in reservations_for_customer(db, user.id)]


@router.get("/vendors/{vendor_id}/reservations")
def vendor_reservations(vendor_id: str, status: str = "",
                        db: Session = Depends(get_db), me: User = Depends(require_roles("vendor", "admin"))):
    ensure_vendor_access(db, vendor_id, me)
    try:
        return [reservation_out(r) for r in reservations_for_vendor(db, vendor_id, status=status)]
    except MarketplaceError as e:
        raise http_error(e)


@router.post("/reservations/{reservation_id}/status", response_model=SettledReservationOut)
def set_reservation_status(reservation_id: str, body: ReservationStatusUpdate,
                           db: Session = Depends(get_db), me: User = Depends(require_roles("vendor", "admin"))):
    r = db.get(Reservation, reservation_id)
    if not r:
        raise HTTPException(status_code=404, detail="Not found")
    ensure_vendor_access(db, r.vendor_id, me)
    try:
        target = normalize_status(body.status)
        if target in TERMINAL and not body.confirm:
            raise HTTPException(status_code=400, detail=f"Setting {target} settles the deposit and cannot be undone; resend with confirm=true")
        settlement = update_reservation_status(db, reservation_id, target, body.customerAttended, actor_id=me.id)
    except MarketplaceError as e:
        raise http_error(e)
    return {"reservation": reservation_out(r), "settlement": settlement.as_dict()}


@router.post("/reservations/{reservation_id}/cancel", response_model=SettledReservationOut)
def cancel_my_reservation(reservation_id: str, body: ReservationCancel,
                          db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    r = db.get(Reservation, reservation_id)
    if not r or r.customer_id != user.id:
        raise HTTPException(status_code=404, detail="Not found")
    if not body.confirm:
        raise HTTPException(status_code=400, detail="Cancelling refunds 50% of the deposit; resend with confirm=true")
    try:
        settlement = cancel_reservation(db, reservation_id, actor_id=user.id)
    except MarketplaceError as e:
        raise http_error(e)
    return {"reservation": reservation_out(r), "settlement": settlement.as_dict()}
