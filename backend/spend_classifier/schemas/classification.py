"""Classification input and result schemas."""

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class ClassificationMethod(str, Enum):
    # Bank-transaction cascade
    MERCHANT_EXACT = "merchant_exact"
    DESCRIPTION_EXACT = "description_exact"
    RULE = "rule"
    MERCHANT_FUZZY = "merchant_fuzzy"
    TAXONOMY_MAPPING = "taxonomy_mapping"
    TAXONOMY_HEURISTIC = "taxonomy_heuristic"
    LEGACY_MAPPING = "legacy_mapping"
    LEGACY_HEURISTIC = "legacy_heuristic"
    # Purchased-item cascade
    IDENTIFIER_RULE = "identifier_rule"
    TITLE_RULE = "title_rule"
    AI = "ai"
    CATEGORY_MAPPING = "category_mapping"
    FALLBACK_SHOPPING = "fallback_shopping"
    FALLBACK = "fallback"
    # Terminal state
    NONE = "none"
    # Set by a user correction
    USER = "user"


class ItemType(str, Enum):
    TRANSACTION = "transaction"
    ITEM = "item"


class ForeignTaxonomy(BaseModel):
    """Hierarchical provider category (primary > detailed)."""

    primary: str | None = None
    detailed: str | None = None
    confidence_level: str | None = None


class BankTransactionInput(BaseModel):
    merchant_name: str | None = None
    description: str = ""
    legacy_category: list[str] | None = None
    foreign_taxonomy: ForeignTaxonomy | None = None


class PurchasedItemInput(BaseModel):
    external_id: str | None = None
    title: str = ""
    foreign_category: str | None = None
    price: Decimal = Decimal("0")


class ClassificationResult(BaseModel):
    """Outcome of one classification call."""

    category: str
    confidence: int = Field(ge=0, le=100)
    method: ClassificationMethod
    reasoning: str
    category_id: int | None = None
    rule_id: int | None = None

    @classmethod
    def unclassified(cls, reasoning: str = "No category match found") -> "ClassificationResult":
        return cls(category="", confidence=0, method=ClassificationMethod.NONE, reasoning=reasoning)

    @property
    def is_classified(self) -> bool:
        return bool(self.category)


class LearningOutcome(BaseModel):
    """What the feedback learner did with a correction."""

    learned: bool
    action: str  # created, updated, none
    rule_id: int | None = None
    pattern: str | None = None
    reason: str | None = None


class RetrainingStatus(BaseModel):
    is_retraining: bool
    pending_feedback: int
    threshold: int
    next_retraining_in: int
    last_training_at: str | None = None
