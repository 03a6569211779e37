from decimal import Decimal
from sqlalchemy import String, Integer, DateTime, Numeric, Text, Boolean
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from marketplace.db.session import Base

class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    vendor_id: Mapped[str] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(60), default="general")

    price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    rate_unit: Mapped[str] = mapped_column(String(20), default="fixed")  # fixed, per_hour, per_day, per_night

    is_reservable: Mapped[bool] = mapped_column(Boolean, default=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)
    min_duration_hours: Mapped[int] = mapped_column(Integer, nullable=True)
    max_duration_hours: Mapped[int] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
