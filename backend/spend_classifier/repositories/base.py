"""Persistence contract consumed by the classifier components."""

from abc import ABC, abstractmethod
from collections.abc import Sequence

from spend_classifier.models import (
    Category,
    ClassificationFeedback,
    ClassificationRule,
    ExternalCategoryMapping,
    MerchantMapping,
    PurchasedItem,
    TrainingRun,
    Transaction,
)
from spend_classifier.schemas.classification import ClassificationResult


def normalize_key(value: str) -> str:
    """Merchant memory key: stripped and lower-cased."""
    return (value or "").strip().lower()


class ClassifierRepository(ABC):
    """Abstract store behind the registry, rules, memory, mapper and learner.

    Implementations must make every upsert an increment-on-conflict so that
    concurrent writers never lose counter updates.
    """

    # ── Categories ─────────────────────────────────────

    @abstractmethod
    async def get_categories(self) -> list[Category]:
        """All categories ordered by name."""

    @abstractmethod
    async def get_category(self, category_id: int) -> Category | None: ...

    @abstractmethod
    async def find_category_by_name(self, name: str) -> Category | None:
        """Case-insensitive lookup by name."""

    @abstractmethod
    async def get_or_create_category_id(self, name: str) -> int: ...

    @abstractmethod
    async def create_category(
        self, name: str, parent_id: int | None = None, attributes: dict | None = None
    ) -> Category: ...

    @abstractmethod
    async def rename_category(self, category_id: int, new_name: str) -> Category:
        """Rename in one transaction. Raises AlreadyExistsError / NotFoundError."""

    @abstractmethod
    async def delete_category(self, category_id: int) -> dict:
        """Delete and clear every reference to the category in one transaction."""

    # ── Rules ──────────────────────────────────────────

    @abstractmethod
    async def get_rules(self, enabled_only: bool = True, scope: str | None = None) -> list[ClassificationRule]:
        """Rules ordered by accuracy rate, then usage count, both descending."""

    @abstractmethod
    async def get_rule(self, rule_id: int) -> ClassificationRule | None: ...

    @abstractmethod
    async def find_rule(self, pattern: str, category_id: int, scope: str) -> ClassificationRule | None: ...

    @abstractmethod
    async def upsert_rule(
        self,
        pattern: str,
        match_type: str,
        category_id: int,
        scope: str,
        source: str,
        name: str | None = None,
        external_id: str | None = None,
        enabled: bool = True,
    ) -> tuple[ClassificationRule, bool]:
        """Insert a rule, or bump usage of the identical one. Returns (rule, created)."""

    @abstractmethod
    async def update_rule(self, rule_id: int, **fields) -> ClassificationRule: ...

    @abstractmethod
    async def delete_rule(self, rule_id: int) -> None: ...

    @abstractmethod
    async def increment_rule_usage(self, rule_id: int) -> None: ...

    @abstractmethod
    async def record_rule_outcome(self, rule_id: int, correct: bool) -> None:
        """Count a confirmation or rejection and recompute accuracy_rate."""

    # ── Merchant memory ────────────────────────────────

    @abstractmethod
    async def get_merchant_mapping(self, key: str) -> MerchantMapping | None: ...

    @abstractmethod
    async def list_merchant_mappings(self) -> list[MerchantMapping]:
        """All mappings in store (insertion) order."""

    @abstractmethod
    async def upsert_merchant_mapping(self, key: str, category_id: int) -> None: ...

    @abstractmethod
    async def record_merchant_outcome(self, key: str, correct: bool) -> None: ...

    # ── External taxonomy ──────────────────────────────

    @abstractmethod
    async def get_external_mapping(self, external_category: str, source: str) -> ExternalCategoryMapping | None: ...

    @abstractmethod
    async def list_external_mappings(self, status: str | None = None) -> list[ExternalCategoryMapping]: ...

    @abstractmethod
    async def upsert_external_mapping(
        self,
        external_category: str,
        source: str,
        user_category_id: int | None,
        status: str,
        confidence: int,
    ) -> ExternalCategoryMapping: ...

    @abstractmethod
    async def insert_external_mapping_if_absent(
        self,
        external_category: str,
        source: str,
        user_category_id: int | None,
        status: str,
        confidence: int,
    ) -> bool:
        """Insert unless a row exists. Returns True when a row was created."""

    # ── Feedback ───────────────────────────────────────

    @abstractmethod
    async def record_feedback(
        self,
        item_id: str,
        item_type: str,
        description: str,
        merchant: str | None,
        suggested_category_id: int | None,
        actual_category_id: int | None,
        method: str | None,
        confidence: int,
    ) -> ClassificationFeedback: ...

    @abstractmethod
    async def get_unprocessed_feedback(self, limit: int) -> list[ClassificationFeedback]: ...

    @abstractmethod
    async def count_unprocessed_feedback(self) -> int: ...

    @abstractmethod
    async def mark_feedback_processed(self, feedback_ids: Sequence[int]) -> None: ...

    @abstractmethod
    async def record_training_run(
        self, trigger: str, feedback_count: int, rules_generated: int, duration_ms: int, notes: str | None
    ) -> TrainingRun: ...

    @abstractmethod
    async def get_last_training_run(self) -> TrainingRun | None: ...

    # ── Classified records ─────────────────────────────

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Transaction | None: ...

    @abstractmethod
    async def get_item(self, item_id: int) -> PurchasedItem | None: ...

    @abstractmethod
    async def list_transactions(self, only_uncategorized: bool = True) -> list[Transaction]: ...

    @abstractmethod
    async def count_classified_records(self) -> int: ...

    @abstractmethod
    async def apply_classification(
        self, record: Transaction | PurchasedItem, result: ClassificationResult
    ) -> None: ...

    @abstractmethod
    async def mark_verified(self, record: Transaction | PurchasedItem, category_id: int) -> None:
        """Store a user-chosen category at confidence 100."""
