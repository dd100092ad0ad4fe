"""Classified record models: bank transactions and purchased items."""

from decimal import Decimal

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from spend_classifier.models.base import Base, TimestampMixin


class ClassifiedMixin:
    """Columns written back by the classifier."""

    category_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id"), nullable=True, index=True)
    confidence: Mapped[int] = mapped_column(Integer, default=0)
    classification_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    classification_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    rule_id: Mapped[int | None] = mapped_column(ForeignKey("classification_rules.id"), nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, default=False)


class Transaction(Base, TimestampMixin, ClassifiedMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    merchant_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    # Flat provider taxonomy, most general first
    legacy_category: Mapped[list | None] = mapped_column(JSON, nullable=True)
    taxonomy_primary: Mapped[str | None] = mapped_column(String(100), nullable=True)
    taxonomy_detailed: Mapped[str | None] = mapped_column(String(100), nullable=True)
    taxonomy_confidence_level: Mapped[str | None] = mapped_column(String(20), nullable=True)

    category = relationship("Category")


class PurchasedItem(Base, TimestampMixin, ClassifiedMixin):
    __tablename__ = "purchased_items"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    external_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    title: Mapped[str] = mapped_column(String(1000), nullable=False)
    foreign_category: Mapped[str | None] = mapped_column(String(255), nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    category = relationship("Category")
