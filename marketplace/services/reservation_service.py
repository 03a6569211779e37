"""Reservation lifecycle and settlement.

    pending -> confirmed -> active (checked in) -> completed (checked out)
    pending | confirmed | active -> cancelled | no_show

completed, cancelled and no_show are terminal. Reaching one settles the deposit:

    completed (customer attended)   refund 0%    payout 100%
    cancelled / no_show             refund 50%   payout 50%

A settled reservation is never settled again.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace.core.errors import InvariantViolation, NotFoundError, PersistenceError, ValidationError
from marketplace.models.reservation import Reservation
from marketplace.models.vendor import Vendor
from marketplace.services.audit_service import log_audit
from marketplace.services.pricing import CENT, to_money

logger = logging.getLogger(__name__)

PENDING = "pending"
CONFIRMED = "confirmed"
ACTIVE = "active"
COMPLETED = "completed"
NO_SHOW = "no_show"
CANCELLED = "cancelled"

STATUSES = (PENDING, CONFIRMED, ACTIVE, COMPLETED, NO_SHOW, CANCELLED)
TERMINAL = frozenset({COMPLETED, NO_SHOW, CANCELLED})
TRANSITIONS = {
    PENDING: frozenset({CONFIRMED, CANCELLED, NO_SHOW}),
    CONFIRMED: frozenset({ACTIVE, CANCELLED, NO_SHOW}),
    ACTIVE: frozenset({COMPLETED, CANCELLED, NO_SHOW}),
}
CUSTOMER_CANCELLABLE = frozenset({PENDING, CONFIRMED})

_ALIASES = {
    "checked_in": ACTIVE,
    "checked-in": ACTIVE,
    "checked_out": COMPLETED,
    "checked-out": COMPLETED,
    "no-show": NO_SHOW,
    "canceled": CANCELLED,
}

NON_COMPLETION_REFUND_SHARE = Decimal("0.5")
BALANCE_CAS_ATTEMPTS = 5


@dataclass(frozen=True)
class SettlementResult:
    refund_amount: Decimal
    business_payout: Decimal

    def as_dict(self) -> dict:
        return {"refundAmount": str(self.refund_amount), "businessPayout": str(self.business_payout)}


def normalize_status(status: str) -> str:
    s = (status or "").strip().lower()
    s = _ALIASES.get(s, s)
    if s not in STATUSES:
        raise ValidationError(f"unknown reservation status: {status}", field="status")
    return s


def compute_settlement(deposit, status: str, customer_attended: bool | None = None) -> SettlementResult:
    """Refund/payout split for reaching ``status``. Non-terminal statuses settle nothing.

    The refund share is rounded half-up to the cent and the payout is the remainder,
    so refund + payout always equals the deposit.
    """
    deposit = to_money(deposit)
    if status == COMPLETED:
        if customer_attended is False:
            raise ValidationError("a completed reservation means the customer attended; use no_show instead", field="customer_attended")
        return SettlementResult(refund_amount=Decimal("0.00"), business_payout=deposit)
    if status in (CANCELLED, NO_SHOW):
        refund = (deposit * NON_COMPLETION_REFUND_SHARE).quantize(CENT, rounding=ROUND_HALF_UP)
        return SettlementResult(refund_amount=refund, business_payout=deposit - refund)
    return SettlementResult(refund_amount=Decimal("0.00"), business_payout=Decimal("0.00"))


def credit_vendor_balance(db: Session, vendor_id: str, amount: Decimal) -> Decimal:
    """Add ``amount`` to the vendor balance with a compare-and-swap on balance_version.

    Runs inside the caller's transaction; the caller commits. Returns the new balance.
    """
    amount = to_money(amount)
    for attempt in range(1, BALANCE_CAS_ATTEMPTS + 1):
        row = db.execute(
            select(Vendor.balance, Vendor.balance_version).where(Vendor.id == vendor_id)
        ).one_or_none()
        if row is None:
            raise NotFoundError(f"vendor {vendor_id} not found")
        current = to_money(row.balance or 0)
        version = row.balance_version or 0
        res = db.execute(
            update(Vendor)
            .where(Vendor.id == vendor_id, Vendor.balance_version == version)
            .values(balance=current + amount, balance_version=version + 1, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            return current + amount
        logger.info("vendor %s balance changed underneath us (attempt %d), retrying", vendor_id, attempt)
    raise PersistenceError(f"could not credit balance for vendor {vendor_id}", vendor_id=vendor_id)


def _get(db: Session, reservation_id: str) -> Reservation:
    r = db.get(Reservation, reservation_id)
    if not r:
        raise NotFoundError("reservation not found")
    return r


def _stage_transition(db: Session, r: Reservation, new_status: str, attended: bool | None,
                      settlement: SettlementResult, actor_id: str, action: str) -> None:
    previous = r.status
    values = {"status": new_status, "customer_attended": attended, "updated_at": datetime.now(timezone.utc)}
    if new_status in TERMINAL:
        values["refund_amount"] = settlement.refund_amount
        values["business_payout"] = settlement.business_payout
    # Conditional on the status we read: a concurrent settlement makes this match nothing.
    res = db.execute(
        update(Reservation)
        .where(Reservation.id == r.id, Reservation.status == previous)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise InvariantViolation(f"reservation {r.id} changed while it was being updated")
    if new_status in TERMINAL and settlement.business_payout > 0:
        credit_vendor_balance(db, r.vendor_id, settlement.business_payout)
    log_audit(db, actor_id, action, "reservation", r.id, {
        "from": previous, "to": new_status, "attended": attended, **settlement.as_dict(),
    })


def _apply(db: Session, r: Reservation, new_status: str, attended: bool | None,
           settlement: SettlementResult, actor_id: str, action: str) -> SettlementResult:
    try:
        _stage_transition(db, r, new_status, attended, settlement, actor_id, action)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(r)
    if new_status in TERMINAL:
        logger.info("reservation %s settled as %s: refund=%s payout=%s", r.id, new_status, settlement.refund_amount, settlement.business_payout)
    return settlement


def update_reservation_status(db: Session, reservation_id: str, status: str,
                              customer_attended: bool | None = None, actor_id: str = "system") -> SettlementResult:
    """Vendor/admin transition. Terminal targets settle the deposit."""
    r = _get(db, reservation_id)
    status = normalize_status(status)
    if r.status in TERMINAL:
        logger.warning("refusing to re-settle reservation %s (already %s)", r.id, r.status)
        raise InvariantViolation(f"reservation is already {r.status} and cannot change")
    if status not in TRANSITIONS.get(r.status, frozenset()):
        raise ValidationError(f"cannot move reservation from {r.status} to {status}", field="status")

    attended = customer_attended
    if status == COMPLETED and attended is None:
        attended = True
    elif status == NO_SHOW and attended is None:
        attended = False
    settlement = compute_settlement(r.deposit_amount, status, attended)
    return _apply(db, r, status, attended, settlement, actor_id, "reservation.status")


def cancel_reservation(db: Session, reservation_id: str, actor_id: str) -> SettlementResult:
    """Customer cancellation before check-in: 50% refund, 50% to the vendor."""
    r = _get(db, reservation_id)
    if r.status not in CUSTOMER_CANCELLABLE:
        raise ValidationError("This reservation cannot be cancelled", field="status")
    settlement = compute_settlement(r.deposit_amount, CANCELLED)
    return _apply(db, r, CANCELLED, r.customer_attended, settlement, actor_id, "reservation.cancelled")


def confirm_reservations_for_order(db: Session, order_id: str) -> int:
    """Move the order's pending reservations to confirmed. Caller commits."""
    res = db.execute(
        update(Reservation)
        .where(Reservation.order_id == order_id, Reservation.status == PENDING)
        .values(status=CONFIRMED, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    return res.rowcount or 0


def cancel_reservations_for_order(db: Session, order_id: str, actor_id: str, paid: bool) -> int:
    """Cancel every open reservation of a cancelled order. Caller commits.

    A paid order settles each deposit like a customer cancellation. An unpaid one
    collected nothing, so nothing is refunded or paid out.
    """
    open_rows = db.execute(
        select(Reservation)
        .where(Reservation.order_id == order_id, Reservation.status.not_in(sorted(TERMINAL)))
        .execution_options(populate_existing=True)
    ).scalars().all()
    nothing = SettlementResult(refund_amount=Decimal("0.00"), business_payout=Decimal("0.00"))
    for r in open_rows:
        settlement = compute_settlement(r.deposit_amount, CANCELLED) if paid else nothing
        _stage_transition(db, r, CANCELLED, r.customer_attended, settlement, actor_id, "reservation.order_cancelled")
    return len(open_rows)


def reservations_for_customer(db: Session, customer_id: str) -> list[Reservation]:
    q = select(Reservation).where(Reservation.customer_id == customer_id).order_by(Reservation.created_at.desc())
    return list(db.execute(q).scalars())


def reservations_for_vendor(db: Session, vendor_id: str, status: str = "") -> list[Reservation]:
    q = select(Reservation).where(Reservation.vendor_id == vendor_id)
    if status:
        q = q.where(Reservation.status == normalize_status(status))
    q = q.order_by(Reservation.start_time.asc())
    return list(db.execute(q).scalars())


def reservation_out(r: Reservation) -> dict:
    return {
        "id": r.id,
        "orderId": r.order_id,
        "productId": r.product_id,
        "vendorId": r.vendor_id,
        "customerId": r.customer_id,
        "startTime": r.start_time.isoformat() if r.start_time else None,
        "endTime": r.end_time.isoformat() if r.end_time else None,
        "depositAmount": str(to_money(r.deposit_amount)),
        "totalPrice": str(to_money(r.total_price)),
        "status": r.status,
        "customerAttended": r.customer_attended,
        "refundAmount": str(to_money(r.refund_amount or 0)),
        "businessPayout": str(to_money(r.business_payout or 0)),
        "notes": r.notes,
    }
