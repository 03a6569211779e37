from sqlalchemy import String, Integer, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from marketplace.db.session import Base

class Setting(Base):
    """Admin-tunable business settings (e.g. PLATFORM_FEE_RATE as a decimal string)."""
    __tablename__ = "settings"
    key: Mapped[str] = mapped_column(String(80), primary_key=True)
    int_value: Mapped[int] = mapped_column(Integer, nullable=True)
    str_value: Mapped[str] = mapped_column(String(255), nullable=True)
    updated_by_user_id: Mapped[str] = mapped_column(String(36), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
