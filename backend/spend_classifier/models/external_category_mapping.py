"""External taxonomy mapping model."""

from enum import Enum

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from spend_classifier.models.base import Base, TimestampMixin


class MappingStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    UNMAPPED = "unmapped"


class ExternalCategoryMapping(Base, TimestampMixin):
    """Translation of a foreign category string into a registry category.

    ``user_category_id`` holds the approved target, or for ``pending`` rows the
    heuristic suggestion awaiting review.
    """

    __tablename__ = "external_category_mappings"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    external_category: Mapped[str] = mapped_column(String(255), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    user_category_id: Mapped[int | None] = mapped_column(
        ForeignKey("categories.id"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(20), default=MappingStatus.PENDING.value)
    confidence: Mapped[int] = mapped_column(Integer, default=50)

    user_category = relationship("Category")

    __table_args__ = (
        UniqueConstraint("external_category", "source", name="uq_external_mappings_category_source"),
    )
