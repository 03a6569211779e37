"""Shopping cart: quantity lines and reservation lines, keyed by product id.

Each mutation writes the full cart snapshot to a CartStorage. Snapshots are pydantic
models, so window instants come back as datetimes (not ISO strings) on load.
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from marketplace.core.config import settings
from marketplace.core.errors import ValidationError
from marketplace.services.fees import platform_fee as compute_platform_fee
from marketplace.services.pricing import RateUnit, compute_price, to_money, validate_window

logger = logging.getLogger(__name__)

_CART_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class ProductSnapshot(BaseModel):
    """The product fields a cart line needs, copied when the line is added."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    vendor_id: str
    name: str
    price: Decimal
    rate_unit: RateUnit = RateUnit.FIXED
    is_reservable: bool = False
    is_available: bool = True
    min_duration_hours: Optional[int] = None
    max_duration_hours: Optional[int] = None


class ReservationWindow(BaseModel):
    start: datetime
    end: datetime


class CartLine(BaseModel):
    product: ProductSnapshot
    quantity: int = 1
    window: Optional[ReservationWindow] = None
    duration_count: Optional[int] = None
    duration_unit: Optional[str] = None
    total_price: Optional[Decimal] = None

    @property
    def is_reservation(self) -> bool:
        return self.window is not None

    @property
    def line_total(self) -> Decimal:
        if self.is_reservation:
            return to_money(self.total_price or 0)
        return to_money(self.product.price * self.quantity)


class CartSnapshot(BaseModel):
    id: str
    lines: list[CartLine] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class JsonFileCartStorage:
    """One JSON document per cart under ``base_dir``."""

    def __init__(self, base_dir: str | None = None):
        self.base_dir = base_dir or settings.CART_STORAGE_DIR or "./data/carts"

    def _path(self, cart_id: str) -> str:
        if not _CART_ID_RE.match(cart_id or ""):
            raise ValidationError("invalid cart id", field="cart_id")
        return os.path.join(self.base_dir, f"{cart_id}.json")

    def load(self, cart_id: str) -> str | None:
        path = self._path(cart_id)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return f.read()

    def save(self, cart_id: str, payload: str) -> None:
        path = self._path(cart_id)
        os.makedirs(self.base_dir, exist_ok=True)
        # write-then-rename so a reader never sees a half-written snapshot
        fd, tmp = tempfile.mkstemp(dir=self.base_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise

    def delete(self, cart_id: str) -> None:
        path = self._path(cart_id)
        if os.path.exists(path):
            os.remove(path)

    def expire(self, older_than_hours: float) -> int:
        """Remove snapshots not written for ``older_than_hours``. Returns how many went."""
        if not os.path.isdir(self.base_dir):
            return 0
        cutoff = datetime.now(timezone.utc).timestamp() - older_than_hours * 3600
        removed = 0
        for name in os.listdir(self.base_dir):
            if not name.endswith(".json"):
                continue
            path = os.path.join(self.base_dir, name)
            try:
                if os.path.getmtime(path) < cutoff:
                    os.remove(path)
                    removed += 1
            except FileNotFoundError:
                # deleted by a checkout meanwhile
                continue
        return removed


def _snapshot(product) -> ProductSnapshot:
    if isinstance(product, ProductSnapshot):
        return product
    return ProductSnapshot.model_validate(product)


def _check_duration_bounds(product: ProductSnapshot, start: datetime, end: datetime) -> None:
    span = validate_window(start, end)
    hours = span / timedelta(hours=1)
    if product.min_duration_hours and hours < product.min_duration_hours:
        raise ValidationError(f"{product.name} must be booked for at least {product.min_duration_hours} hours", field="window")
    if product.max_duration_hours and hours > product.max_duration_hours:
        raise ValidationError(f"{product.name} can be booked for at most {product.max_duration_hours} hours", field="window")


class Cart:
    def __init__(self, cart_id: str, storage=None, lines: list[CartLine] | None = None, fee_rate=None):
        self.id = cart_id
        self.storage = storage
        self.lines: list[CartLine] = list(lines or [])
        self.fee_rate = Decimal(str(fee_rate)) if fee_rate is not None else settings.PLATFORM_FEE_RATE

    @classmethod
    def load(cls, cart_id: str, storage, fee_rate=None) -> "Cart":
        """Return the stored cart, or a new empty one when nothing is stored yet."""
        raw = storage.load(cart_id)
        if not raw:
            return cls(cart_id, storage=storage, fee_rate=fee_rate)
        snap = CartSnapshot.model_validate_json(raw)
        return cls(cart_id, storage=storage, lines=snap.lines, fee_rate=fee_rate)

    # -------------------------
    # lookups / aggregates
    # -------------------------
    def get_line(self, product_id: str) -> CartLine | None:
        for line in self.lines:
            if line.product.id == product_id:
                return line
        return None

    def get_item_quantity(self, product_id: str) -> int:
        line = self.get_line(product_id)
        return line.quantity if line else 0

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def total_items(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def subtotal(self) -> Decimal:
        return to_money(sum((line.line_total for line in self.lines), Decimal("0")))

    @property
    def platform_fee(self) -> Decimal:
        return compute_platform_fee(self.subtotal, self.fee_rate)

    @property
    def grand_total(self) -> Decimal:
        return self.subtotal + self.platform_fee

    def group_by_vendor(self) -> dict[str, list[CartLine]]:
        """Lines per vendor id, vendors in the order their first line was added."""
        groups: dict[str, list[CartLine]] = {}
        for line in self.lines:
            groups.setdefault(line.product.vendor_id, []).append(line)
        return groups

    # -------------------------
    # mutations
    # -------------------------
    def add_line(self, product, quantity: int = 1) -> CartLine:
        snap = _snapshot(product)
        if quantity < 1:
            raise ValidationError("quantity must be at least 1", field="quantity")
        if not snap.is_available:
            raise ValidationError(f"{snap.name} is not available", field="product_id")
        if snap.is_reservable:
            raise ValidationError(f"{snap.name} must be reserved with a start and end time", field="window")

        line = self.get_line(snap.id)
        if line is not None and not line.is_reservation:
            line.quantity += quantity
        elif line is not None:
            # product stopped being reservable; the stale reservation gives way
            i = next(i for i, existing in enumerate(self.lines) if existing.product.id == snap.id)
            line = CartLine(product=snap, quantity=quantity)
            self.lines[i] = line
        else:
            line = CartLine(product=snap, quantity=quantity)
            self.lines.append(line)
        self._persist()
        return line

    def add_reservation_line(self, product, start: datetime, end: datetime) -> CartLine:
        """Add or replace the reservation for ``product``; never additive."""
        snap = _snapshot(product)
        if not snap.is_available:
            raise ValidationError(f"{snap.name} is not available", field="product_id")
        if not snap.is_reservable:
            raise ValidationError(f"{snap.name} cannot be reserved", field="product_id")
        _check_duration_bounds(snap, start, end)
        quote = compute_price(snap.price, snap.rate_unit, start, end)

        line = CartLine(
            product=snap,
            quantity=1,
            window=ReservationWindow(start=start, end=end),
            duration_count=quote.duration_count,
            duration_unit=quote.duration_unit,
            total_price=quote.total_price,
        )
        for i, existing in enumerate(self.lines):
            if existing.product.id == snap.id:
                self.lines[i] = line
                break
        else:
            self.lines.append(line)
        self._persist()
        return line

    def update_quantity(self, product_id: str, quantity: int) -> CartLine | None:
        """Set a quantity line's count; zero or less removes the line.

        Reservation lines are pinned to one unit, so changing them here is an error.
        """
        line = self.get_line(product_id)
        if line is None:
            return None
        if line.is_reservation:
            raise ValidationError("reservation quantity is fixed at 1; change the dates instead", field="quantity")
        if quantity <= 0:
            self.remove_line(product_id)
            return None
        line.quantity = quantity
        self._persist()
        return line

    def remove_line(self, product_id: str) -> None:
        self.lines = [line for line in self.lines if line.product.id != product_id]
        self._persist()

    def clear(self) -> None:
        self.lines = []
        self._persist()

    def discard(self) -> None:
        """Empty the cart and drop its stored snapshot."""
        self.lines = []
        if self.storage is not None:
            self.storage.delete(self.id)

    # -------------------------
    # persistence
    # -------------------------
    def snapshot(self) -> CartSnapshot:
        return CartSnapshot(id=self.id, lines=self.lines)

    def _persist(self) -> None:
        if self.storage is None:
            return
        self.storage.save(self.id, self.snapshot().model_dump_json())
        logger.debug("cart %s saved (%d lines)", self.id, len(self.lines))

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "lines": [
                {
                    "productId": line.product.id,
                    "vendorId": line.product.vendor_id,
                    "name": line.product.name,
                    "unitPrice": str(to_money(line.product.price)),
                    "rateUnit": line.product.rate_unit.value,
                    "quantity": line.quantity,
                    "start": line.window.start.isoformat() if line.window else None,
                    "end": line.window.end.isoformat() if line.window else None,
                    "durationCount": line.duration_count,
                    "durationUnit": line.duration_unit,
                    "lineTotal": str(line.line_total),
                }
                for line in self.lines
            ],
            "totalItems": self.total_items,
            "subtotal": str(self.subtotal),
            "platformFee": str(self.platform_fee),
            "total": str(self.grand_total),
        }
