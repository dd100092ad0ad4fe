"""Merchant memory model."""

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from spend_classifier.models.base import Base, TimestampMixin


class MerchantMapping(Base, TimestampMixin):
    """Learned merchant (or description) string -> category.

    ``merchant_key`` is the lower-cased, stripped merchant and carries the
    uniqueness constraint used by the upsert.
    """

    __tablename__ = "merchant_mappings"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    merchant_key: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)
    merchant_name: Mapped[str] = mapped_column(String(500), nullable=False)
    category_id: Mapped[int] = mapped_column(ForeignKey("categories.id"), nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, default=1)
    correct_count: Mapped[int] = mapped_column(Integer, default=0)
    incorrect_count: Mapped[int] = mapped_column(Integer, default=0)
    accuracy_rate: Mapped[float] = mapped_column(Float, default=1.0)
    last_used: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    category = relationship("Category")
