"""Classification rule model."""

from enum import Enum

from sqlalchemy import Boolean, Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from spend_classifier.models.base import Base, TimestampMixin


class MatchType(str, Enum):
    EXACT = "exact"
    PARTIAL = "partial"
    REGEX = "regex"


class RuleSource(str, Enum):
    USER = "user"
    AI_LEARNING = "ai_learning"
    SEED = "seed"


class RuleScope(str, Enum):
    TRANSACTION = "transaction"
    ITEM = "item"


class ClassificationRule(Base, TimestampMixin):
    """A rule that assigns a category when its pattern matches a record.

    Transaction rules are tested against merchant and description. Item rules
    either pin an external identifier (``external_id``) or match the title.
    """

    __tablename__ = "classification_rules"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pattern: Mapped[str] = mapped_column(String(500), nullable=False)
    match_type: Mapped[str] = mapped_column(String(20), default=MatchType.PARTIAL.value)
    scope: Mapped[str] = mapped_column(String(20), default=RuleScope.TRANSACTION.value)
    external_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    category_id: Mapped[int] = mapped_column(ForeignKey("categories.id"), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    source: Mapped[str] = mapped_column(String(20), default=RuleSource.USER.value)

    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    correct_count: Mapped[int] = mapped_column(Integer, default=0)
    incorrect_count: Mapped[int] = mapped_column(Integer, default=0)
    accuracy_rate: Mapped[float] = mapped_column(Float, default=1.0)

    category = relationship("Category")

    __table_args__ = (
        Index("idx_classification_rules_scope_enabled", "scope", "enabled"),
    )
