"""SQLAlchemy implementation of the classifier repository."""

import asyncio
import functools
from collections.abc import Sequence

import structlog
from sqlalchemy import Float, cast, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from spend_classifier.core.exceptions import AlreadyExistsError, NotFoundError
from spend_classifier.models import (
    Category,
    ClassificationFeedback,
    ClassificationRule,
    ExternalCategoryMapping,
    MappingStatus,
    MerchantMapping,
    PurchasedItem,
    TrainingRun,
    Transaction,
)
from spend_classifier.repositories.base import ClassifierRepository, normalize_key
from spend_classifier.schemas.classification import ClassificationMethod, ClassificationResult

logger = structlog.get_logger()


def serialized(method):
    """Run the coroutine while holding the repository lock.

    An AsyncSession does not support concurrent operations, so batch
    classification funnels every database call through this lock.
    """

    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        async with self._lock:
            return await method(self, *args, **kwargs)

    return wrapper


class SQLAlchemyRepository(ClassifierRepository):
    def __init__(self, db: AsyncSession):
        self.db = db
        self._lock = asyncio.Lock()

    def _insert(self, model):
        if self.db.get_bind().dialect.name == "postgresql":
            return pg_insert(model)
        return sqlite_insert(model)

    # ── Categories ─────────────────────────────────────

    @serialized
    async def get_categories(self) -> list[Category]:
        result = await self.db.execute(select(Category).order_by(Category.name))
        return list(result.scalars().all())

    @serialized
    async def get_category(self, category_id: int) -> Category | None:
        return await self.db.get(Category, category_id, populate_existing=True)

    @serialized
    async def find_category_by_name(self, name: str) -> Category | None:
        return await self._find_category_by_name(name)

    async def _find_category_by_name(self, name: str) -> Category | None:
        result = await self.db.execute(
            select(Category).where(func.lower(Category.name) == normalize_key(name))
        )
        return result.scalars().first()

    @serialized
    async def get_or_create_category_id(self, name: str) -> int:
        existing = await self._find_category_by_name(name)
        if existing:
            return existing.id
        category = await self._create_category(name.strip(), None, None)
        return category.id

    @serialized
    async def create_category(
        self, name: str, parent_id: int | None = None, attributes: dict | None = None
    ) -> Category:
        if await self._find_category_by_name(name):
            raise AlreadyExistsError("Category")
        return await self._create_category(name.strip(), parent_id, attributes)

    async def _create_category(self, name: str, parent_id: int | None, attributes: dict | None) -> Category:
        category = Category(name=name, parent_id=parent_id, attributes=attributes or {})
        self.db.add(category)
        await self.db.flush()
        await self.db.refresh(category)
        return category

    @serialized
    async def rename_category(self, category_id: int, new_name: str) -> Category:
        category = await self.db.get(Category, category_id)
        if not category:
            raise NotFoundError("Category")
        duplicate = await self._find_category_by_name(new_name)
        if duplicate and duplicate.id != category_id:
            raise AlreadyExistsError("Category")

        old_name = category.name
        # References hold the id, so the category row is the only write.
        category.name = new_name.strip()
        await self.db.flush()
        logger.info("category_renamed", category_id=category_id, old_name=old_name, new_name=category.name)
        return category

    @serialized
    async def delete_category(self, category_id: int) -> dict:
        category = await self.db.get(Category, category_id)
        if not category:
            raise NotFoundError("Category")

        rule_ids = select(ClassificationRule.id).where(ClassificationRule.category_id == category_id)
        affected = 0
        for model in (Transaction, PurchasedItem):
            await self.db.execute(
                update(model)
                .where(model.rule_id.in_(rule_ids))
                .values(rule_id=None)
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(
                update(model)
                .where(model.category_id == category_id)
                .values(category_id=None, confidence=0, verified=False, classification_method=None)
                .execution_options(synchronize_session=False)
            )
            affected += result.rowcount or 0

        rules = await self.db.execute(
            delete(ClassificationRule)
            .where(ClassificationRule.category_id == category_id)
            .execution_options(synchronize_session=False)
        )
        mappings = await self.db.execute(
            delete(MerchantMapping)
            .where(MerchantMapping.category_id == category_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(ExternalCategoryMapping)
            .where(ExternalCategoryMapping.user_category_id == category_id)
            .values(user_category_id=None, status=MappingStatus.PENDING.value)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(ClassificationFeedback)
            .where(ClassificationFeedback.suggested_category_id == category_id)
            .values(suggested_category_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(ClassificationFeedback)
            .where(ClassificationFeedback.actual_category_id == category_id)
            .values(actual_category_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(Category)
            .where(Category.parent_id == category_id)
            .values(parent_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.delete(category)
        await self.db.flush()

        summary = {
            "records_affected": affected,
            "rules_deleted": rules.rowcount or 0,
            "mappings_deleted": mappings.rowcount or 0,
        }
        logger.info("category_deleted", category_id=category_id, **summary)
        return summary

    # ── Rules ──────────────────────────────────────────

    @serialized
    async def get_rules(self, enabled_only: bool = True, scope: str | None = None) -> list[ClassificationRule]:
        query = select(ClassificationRule).execution_options(populate_existing=True)
        if enabled_only:
            query = query.where(ClassificationRule.enabled.is_(True))
        if scope:
            query = query.where(ClassificationRule.scope == scope)
        query = query.order_by(
            ClassificationRule.accuracy_rate.desc(),
            ClassificationRule.usage_count.desc(),
            ClassificationRule.id,
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    @serialized
    async def get_rule(self, rule_id: int) -> ClassificationRule | None:
        return await self._get_rule(rule_id)

    async def _get_rule(self, rule_id: int) -> ClassificationRule | None:
        result = await self.db.execute(
            select(ClassificationRule)
            .where(ClassificationRule.id == rule_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @serialized
    async def find_rule(self, pattern: str, category_id: int, scope: str) -> ClassificationRule | None:
        return await self._find_rule(pattern, category_id, scope)

    async def _find_rule(self, pattern: str, category_id: int, scope: str) -> ClassificationRule | None:
        result = await self.db.execute(
            select(ClassificationRule)
            .where(
                func.lower(ClassificationRule.pattern) == pattern.strip().lower(),
                ClassificationRule.category_id == category_id,
                ClassificationRule.scope == scope,
            )
            .order_by(ClassificationRule.id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @serialized
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
        existing = await self._find_rule(pattern, category_id, scope)
        if existing and existing.external_id == external_id:
            await self._bump(ClassificationRule, existing.id, usage_count=1)
            await self.db.refresh(existing)
            return existing, False

        rule = ClassificationRule(
            name=name,
            pattern=pattern.strip(),
            match_type=match_type,
            scope=scope,
            external_id=external_id,
            category_id=category_id,
            enabled=enabled,
            source=source,
            usage_count=0,
            correct_count=0,
            incorrect_count=0,
            accuracy_rate=1.0,
        )
        self.db.add(rule)
        await self.db.flush()
        await self.db.refresh(rule)
        return rule, True

    @serialized
    async def update_rule(self, rule_id: int, **fields) -> ClassificationRule:
        rule = await self._get_rule(rule_id)
        if not rule:
            raise NotFoundError("ClassificationRule")
        for key, value in fields.items():
            setattr(rule, key, value)
        await self.db.flush()
        await self.db.refresh(rule)
        return rule

    @serialized
    async def delete_rule(self, rule_id: int) -> None:
        rule = await self._get_rule(rule_id)
        if not rule:
            raise NotFoundError("ClassificationRule")
        for model in (Transaction, PurchasedItem):
            await self.db.execute(
                update(model)
                .where(model.rule_id == rule_id)
                .values(rule_id=None)
                .execution_options(synchronize_session=False)
            )
        await self.db.delete(rule)
        await self.db.flush()

    @serialized
    async def increment_rule_usage(self, rule_id: int) -> None:
        await self._bump(ClassificationRule, rule_id, usage_count=1)

    @serialized
    async def record_rule_outcome(self, rule_id: int, correct: bool) -> None:
        await self._record_outcome(ClassificationRule, ClassificationRule.id == rule_id, correct)

    async def _bump(self, model, row_id: int, **increments: int) -> None:
        values = {column: getattr(model, column) + amount for column, amount in increments.items()}
        await self.db.execute(
            update(model).where(model.id == row_id).values(**values).execution_options(synchronize_session=False)
        )

    async def _record_outcome(self, model, criterion, correct: bool) -> None:
        correct_count = model.correct_count + (1 if correct else 0)
        incorrect_count = model.incorrect_count + (0 if correct else 1)
        await self.db.execute(
            update(model)
            .where(criterion)
            .values(
                correct_count=correct_count,
                incorrect_count=incorrect_count,
                accuracy_rate=cast(correct_count, Float) / (correct_count + incorrect_count),
            )
            .execution_options(synchronize_session=False)
        )

    # ── Merchant memory ────────────────────────────────

    @serialized
    async def get_merchant_mapping(self, key: str) -> MerchantMapping | None:
        result = await self.db.execute(
            select(MerchantMapping)
            .where(MerchantMapping.merchant_key == normalize_key(key))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @serialized
    async def list_merchant_mappings(self) -> list[MerchantMapping]:
        result = await self.db.execute(
            select(MerchantMapping).order_by(MerchantMapping.id).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    @serialized
    async def upsert_merchant_mapping(self, key: str, category_id: int) -> None:
        stmt = self._insert(MerchantMapping).values(
            merchant_key=normalize_key(key),
            merchant_name=key.strip(),
            category_id=category_id,
            usage_count=1,
            correct_count=0,
            incorrect_count=0,
            accuracy_rate=1.0,
            last_used=func.now(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[MerchantMapping.merchant_key],
            set_={
                "category_id": stmt.excluded.category_id,
                "usage_count": MerchantMapping.usage_count + 1,
                "last_used": func.now(),
                "updated_at": func.now(),
            },
        )
        await self.db.execute(stmt)

    @serialized
    async def record_merchant_outcome(self, key: str, correct: bool) -> None:
        await self._record_outcome(MerchantMapping, MerchantMapping.merchant_key == normalize_key(key), correct)

    # ── External taxonomy ──────────────────────────────

    @serialized
    async def get_external_mapping(self, external_category: str, source: str) -> ExternalCategoryMapping | None:
        return await self._get_external_mapping(external_category, source)

    async def _get_external_mapping(self, external_category: str, source: str) -> ExternalCategoryMapping | None:
        result = await self.db.execute(
            select(ExternalCategoryMapping)
            .where(
                ExternalCategoryMapping.external_category == external_category,
                ExternalCategoryMapping.source == source,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @serialized
    async def list_external_mappings(self, status: str | None = None) -> list[ExternalCategoryMapping]:
        query = select(ExternalCategoryMapping).execution_options(populate_existing=True)
        if status:
            query = query.where(ExternalCategoryMapping.status == status)
        result = await self.db.execute(query.order_by(ExternalCategoryMapping.id))
        return list(result.scalars().all())

    @serialized
    async def upsert_external_mapping(
        self,
        external_category: str,
        source: str,
        user_category_id: int | None,
        status: str,
        confidence: int,
    ) -> ExternalCategoryMapping:
        stmt = self._insert(ExternalCategoryMapping).values(
            external_category=external_category,
            source=source,
            user_category_id=user_category_id,
            status=status,
            confidence=confidence,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[ExternalCategoryMapping.external_category, ExternalCategoryMapping.source],
            set_={
                "user_category_id": stmt.excluded.user_category_id,
                "status": stmt.excluded.status,
                "confidence": stmt.excluded.confidence,
                "updated_at": func.now(),
            },
        )
        await self.db.execute(stmt)
        return await self._get_external_mapping(external_category, source)

    @serialized
    async def insert_external_mapping_if_absent(
        self,
        external_category: str,
        source: str,
        user_category_id: int | None,
        status: str,
        confidence: int,
    ) -> bool:
        stmt = (
            self._insert(ExternalCategoryMapping)
            .values(
                external_category=external_category,
                source=source,
                user_category_id=user_category_id,
                status=status,
                confidence=confidence,
            )
            .on_conflict_do_nothing(
                index_elements=[ExternalCategoryMapping.external_category, ExternalCategoryMapping.source]
            )
        )
        result = await self.db.execute(stmt)
        return bool(result.rowcount)

    # ── Feedback ───────────────────────────────────────

    @serialized
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
    ) -> ClassificationFeedback:
        feedback = ClassificationFeedback(
            item_id=str(item_id),
            item_type=item_type,
            description=description or "",
            merchant=merchant,
            suggested_category_id=suggested_category_id,
            actual_category_id=actual_category_id,
            method=method,
            confidence=confidence,
            processed=False,
        )
        self.db.add(feedback)
        await self.db.flush()
        await self.db.refresh(feedback)
        return feedback

    @serialized
    async def get_unprocessed_feedback(self, limit: int) -> list[ClassificationFeedback]:
        result = await self.db.execute(
            select(ClassificationFeedback)
            .where(ClassificationFeedback.processed.is_(False))
            .order_by(ClassificationFeedback.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    @serialized
    async def count_unprocessed_feedback(self) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(ClassificationFeedback).where(
                ClassificationFeedback.processed.is_(False)
            )
        )
        return result.scalar_one()

    @serialized
    async def mark_feedback_processed(self, feedback_ids: Sequence[int]) -> None:
        if not feedback_ids:
            return
        await self.db.execute(
            update(ClassificationFeedback)
            .where(ClassificationFeedback.id.in_(list(feedback_ids)))
            .values(processed=True)
            .execution_options(synchronize_session=False)
        )

    @serialized
    async def record_training_run(
        self, trigger: str, feedback_count: int, rules_generated: int, duration_ms: int, notes: str | None
    ) -> TrainingRun:
        run = TrainingRun(
            trigger=trigger,
            feedback_count=feedback_count,
            rules_generated=rules_generated,
            duration_ms=duration_ms,
            notes=notes,
        )
        self.db.add(run)
        await self.db.flush()
        await self.db.refresh(run)
        return run

    @serialized
    async def get_last_training_run(self) -> TrainingRun | None:
        result = await self.db.execute(select(TrainingRun).order_by(TrainingRun.id.desc()).limit(1))
        return result.scalar_one_or_none()

    # ── Classified records ─────────────────────────────

    @serialized
    async def get_transaction(self, transaction_id: str) -> Transaction | None:
        return await self.db.get(Transaction, transaction_id, populate_existing=True)

    @serialized
    async def get_item(self, item_id: int) -> PurchasedItem | None:
        return await self.db.get(PurchasedItem, item_id, populate_existing=True)

    @serialized
    async def list_transactions(self, only_uncategorized: bool = True) -> list[Transaction]:
        query = select(Transaction).order_by(Transaction.created_at, Transaction.id)
        if only_uncategorized:
            query = query.where(or_(Transaction.category_id.is_(None), Transaction.confidence == 0))
        else:
            query = query.where(Transaction.verified.is_(False))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    @serialized
    async def count_classified_records(self) -> int:
        total = 0
        for model in (Transaction, PurchasedItem):
            result = await self.db.execute(
                select(func.count()).select_from(model).where(model.category_id.is_not(None))
            )
            total += result.scalar_one()
        return total

    @serialized
    async def apply_classification(
        self, record: Transaction | PurchasedItem, result: ClassificationResult
    ) -> None:
        record.category_id = result.category_id
        record.confidence = result.confidence
        record.classification_method = result.method.value
        record.classification_reasoning = result.reasoning
        record.rule_id = result.rule_id
        record.verified = False
        await self.db.flush()

    @serialized
    async def mark_verified(self, record: Transaction | PurchasedItem, category_id: int) -> None:
        record.category_id = category_id
        record.confidence = 100
        record.classification_method = ClassificationMethod.USER.value
        record.classification_reasoning = "Confirmed by user"
        record.rule_id = None
        record.verified = True
        await self.db.flush()
