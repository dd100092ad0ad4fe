"""Classification of stored records.

Loads transactions and purchased items, runs the matching cascade and
writes the outcome back. User corrections go through the feedback learner
and may trigger a retraining pass.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

from spend_classifier.core import database
from spend_classifier.core.exceptions import NotFoundError
from spend_classifier.models import PurchasedItem, Transaction
from spend_classifier.repositories import ClassifierRepository, SQLAlchemyRepository
from spend_classifier.schemas.classification import (
    BankTransactionInput,
    ClassificationResult,
    ForeignTaxonomy,
    ItemType,
    LearningOutcome,
    PurchasedItemInput,
)
from spend_classifier.services.cascade import BankTransactionCascade, PurchasedItemCascade
from spend_classifier.services.feedback_service import FeedbackLearner, RetrainingService
from spend_classifier.services.llm_service import AIClassifier
from spend_classifier.services.rule_service import RuleStore

logger = structlog.get_logger()


def transaction_input(txn: Transaction) -> BankTransactionInput:
    taxonomy = None
    if txn.taxonomy_primary or txn.taxonomy_detailed:
        taxonomy = ForeignTaxonomy(
            primary=txn.taxonomy_primary,
            detailed=txn.taxonomy_detailed,
            confidence_level=txn.taxonomy_confidence_level,
        )
    return BankTransactionInput(
        merchant_name=txn.merchant_name,
        description=txn.description or "",
        legacy_category=txn.legacy_category or None,
        foreign_taxonomy=taxonomy,
    )


def item_input(item: PurchasedItem) -> PurchasedItemInput:
    return PurchasedItemInput(
        external_id=item.external_id,
        title=item.title or "",
        foreign_category=item.foreign_category,
        price=item.price,
    )


class ClassificationService:
    def __init__(self, repository: ClassifierRepository, ai: AIClassifier | None = None):
        self.repository = repository
        self.rules = RuleStore(repository)
        self.transactions = BankTransactionCascade(repository, rules=self.rules)
        self.items = PurchasedItemCascade(repository, ai=ai, rules=self.rules)
        self.learner = FeedbackLearner(repository, rules=self.rules)
        self.retraining = RetrainingService(repository, rules=self.rules)

    # ── Transactions ───────────────────────────────────

    async def classify_transaction(self, transaction_id: str, learn: bool = True) -> ClassificationResult:
        txn = await self.repository.get_transaction(transaction_id)
        if not txn:
            raise NotFoundError("Transaction")
        result = await self.transactions.classify(transaction_input(txn), learn=learn)
        if not txn.verified:
            await self.repository.apply_classification(txn, result)
        return result

    async def recategorize_transactions(self, only_uncategorized: bool = True) -> dict:
        """Re-run the cascade as a dry run over stored transactions.

        Verified transactions are never touched. A transaction is updated only
        when the cascade finds a category for it.
        """
        transactions = await self.repository.list_transactions(only_uncategorized=only_uncategorized)
        results = await self.transactions.classify_batch(
            [transaction_input(txn) for txn in transactions], learn=False
        )

        updated = 0
        for txn, result in zip(transactions, results):
            if not result.is_classified:
                continue
            if txn.category_id == result.category_id and txn.confidence == result.confidence:
                continue
            await self.repository.apply_classification(txn, result)
            updated += 1

        logger.info("transactions_recategorized", total=len(transactions), updated=updated)
        return {"total": len(transactions), "updated": updated}

    # ── Purchased items ────────────────────────────────

    async def classify_item(self, item_id: int, learn: bool = True) -> ClassificationResult:
        item = await self.repository.get_item(item_id)
        if not item:
            raise NotFoundError("PurchasedItem")
        result = await self.items.classify(item_input(item), learn=learn)
        if not item.verified:
            await self.repository.apply_classification(item, result)
        return result

    async def classify_items(self, item_ids: list[int], learn: bool = True) -> dict[int, ClassificationResult]:
        """Classify several items with bounded concurrency."""
        items = []
        for item_id in item_ids:
            item = await self.repository.get_item(item_id)
            if item:
                items.append(item)
            else:
                logger.warning("item_not_found", item_id=item_id)

        results = await self.items.classify_batch([item_input(item) for item in items], learn=learn)
        for item, result in zip(items, results):
            if not item.verified:
                await self.repository.apply_classification(item, result)

        logger.info("items_classified", requested=len(item_ids), classified=len(items))
        return {item.id: result for item, result in zip(items, results)}

    # ── Corrections ────────────────────────────────────

    async def correct(self, item_type: ItemType, record_id: str | int, category_id: int) -> LearningOutcome:
        """Store a user-chosen category and learn from it."""
        if item_type == ItemType.ITEM:
            record = await self.repository.get_item(int(record_id))
        else:
            record = await self.repository.get_transaction(str(record_id))
        if not record:
            raise NotFoundError("PurchasedItem" if item_type == ItemType.ITEM else "Transaction")

        outcome = await self.learner.record_correction(record, category_id)
        await self.retraining.check_and_retrain(trigger="feedback_threshold")
        return outcome


@asynccontextmanager
async def classification_session(ai: AIClassifier | None = None) -> AsyncIterator[ClassificationService]:
    """Service bound to a fresh database session, committed on exit."""
    async with database.session_scope() as session:
        yield ClassificationService(SQLAlchemyRepository(session), ai=ai)
