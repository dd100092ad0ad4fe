"""Online learning from user corrections, and batch retraining."""

import re
import time
from collections import defaultdict

import structlog

from spend_classifier.config import settings
from spend_classifier.core.exceptions import NotFoundError
from spend_classifier.models import MatchType, PurchasedItem, RuleScope, RuleSource, Transaction
from spend_classifier.repositories import ClassifierRepository, normalize_key
from spend_classifier.schemas.classification import (
    ClassificationMethod,
    ItemType,
    LearningOutcome,
    RetrainingStatus,
)
from spend_classifier.services.merchant_memory import MerchantMemory
from spend_classifier.services.rule_service import RuleStore

logger = structlog.get_logger()

STOP_WORDS = {"the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by"}
MAX_KEYWORDS = 3
MIN_CORRECTIONS = 2

_MEMORY_METHODS = {
    ClassificationMethod.MERCHANT_EXACT.value,
    ClassificationMethod.DESCRIPTION_EXACT.value,
    ClassificationMethod.MERCHANT_FUZZY.value,
}


def extract_keywords(text: str | None) -> list[str]:
    """First significant words: longer than 3 characters, not stop words."""
    words = [w for w in re.split(r"\s+", (text or "").lower()) if len(w) > 3 and w not in STOP_WORDS]
    return words[:MAX_KEYWORDS]


class FeedbackLearner:
    def __init__(self, repository: ClassifierRepository, rules: RuleStore | None = None):
        self.repository = repository
        self.rules = rules or RuleStore(repository)
        self.memory = MerchantMemory(repository)

    async def learn(
        self,
        description: str | None,
        merchant: str | None,
        category_id: int,
        scope: RuleScope = RuleScope.TRANSACTION,
        source: RuleSource = RuleSource.USER,
    ) -> LearningOutcome:
        """Derive or reinforce a partial rule, and remember the merchant.

        Memory is keyed by the merchant, or by the description when there is
        none (item titles included).
        """
        await self.memory.upsert(merchant if merchant and merchant.strip() else description, category_id)

        keywords = extract_keywords(description)
        if not keywords:
            logger.info("learning_skipped", reason="no significant words", description=description)
            return LearningOutcome(learned=False, action="none", reason="No pattern to learn")

        pattern = keywords[0]
        existing = await self.repository.find_rule(pattern, category_id, scope.value)
        if existing:
            rule, _ = await self.repository.upsert_rule(
                pattern=pattern,
                match_type=existing.match_type,
                category_id=category_id,
                scope=scope.value,
                source=existing.source,
                external_id=existing.external_id,
            )
            await self.repository.record_rule_outcome(rule.id, True)
            action = "updated"
        else:
            category = await self.repository.get_category(category_id)
            rule, _ = await self.repository.upsert_rule(
                pattern=pattern,
                match_type=MatchType.PARTIAL.value,
                category_id=category_id,
                scope=scope.value,
                source=source.value,
                name=f"{pattern} -> {category.name if category else category_id}",
            )
            action = "created"

        self.rules.invalidate()
        logger.info("rule_learned", rule_id=rule.id, pattern=pattern, category_id=category_id, action=action)
        return LearningOutcome(learned=True, action=action, rule_id=rule.id, pattern=pattern)

    async def record_correction(
        self, record: Transaction | PurchasedItem, category_id: int, learn: bool = True
    ) -> LearningOutcome:
        """Apply a user-chosen category to a stored record.

        A differing choice is logged as feedback and counts against the rule
        or merchant mapping that made the suggestion; the same choice counts
        for it. The record is then verified at confidence 100.
        """
        if not await self.repository.get_category(category_id):
            raise NotFoundError("Category")

        is_item = isinstance(record, PurchasedItem)
        description = record.title if is_item else (record.description or "")
        merchant = None if is_item else record.merchant_name
        suggested = record.category_id
        correct = suggested == category_id

        if not correct:
            await self.repository.record_feedback(
                item_id=str(record.id),
                item_type=(ItemType.ITEM if is_item else ItemType.TRANSACTION).value,
                description=description,
                merchant=merchant,
                suggested_category_id=suggested,
                actual_category_id=category_id,
                method=record.classification_method,
                confidence=record.confidence or 0,
            )

        if suggested is not None and not record.verified:
            await self._record_outcome(record, merchant, description, correct)

        await self.repository.mark_verified(record, category_id)

        if not learn:
            return LearningOutcome(learned=False, action="none", reason="Learning disabled")
        return await self.learn(
            description,
            merchant,
            category_id,
            scope=RuleScope.ITEM if is_item else RuleScope.TRANSACTION,
        )

    async def _record_outcome(
        self, record: Transaction | PurchasedItem, merchant: str | None, description: str, correct: bool
    ) -> None:
        if record.rule_id is not None:
            await self.rules.record_outcome(record.rule_id, correct)
        elif record.classification_method in _MEMORY_METHODS:
            key = merchant if merchant and merchant.strip() else description
            await self.memory.record_outcome(key, correct)


class RetrainingService:
    """Promotes repeated corrections into rules once enough feedback piles up."""

    def __init__(self, repository: ClassifierRepository, rules: RuleStore | None = None):
        self.repository = repository
        self.rules = rules or RuleStore(repository)
        self.is_retraining = False

    async def threshold(self) -> int:
        """Feedback needed before retraining; grows as the system matures."""
        classified = await self.repository.count_classified_records()
        if classified < settings.retrain_initial_phase_limit:
            return settings.retrain_initial_threshold
        if classified < settings.retrain_learning_phase_limit:
            return settings.retrain_learning_threshold
        return settings.retrain_mature_threshold

    async def check_and_retrain(self, trigger: str = "threshold") -> dict | None:
        """Retrain if the pending feedback reached the threshold."""
        if self.is_retraining:
            logger.info("retraining_skipped", reason="already running", trigger=trigger)
            return None
        pending = await self.repository.count_unprocessed_feedback()
        threshold = await self.threshold()
        if pending < threshold:
            logger.debug("retraining_not_needed", pending=pending, threshold=threshold)
            return None
        return await self.retrain(trigger)

    async def retrain(self, trigger: str = "manual") -> dict | None:
        if self.is_retraining:
            logger.info("retraining_skipped", reason="already running", trigger=trigger)
            return None

        self.is_retraining = True
        started = time.monotonic()
        try:
            feedback = await self.repository.get_unprocessed_feedback(settings.retrain_feedback_limit)

            groups: dict[tuple[str, str, int], list] = defaultdict(list)
            for entry in feedback:
                key = normalize_key(entry.description)
                if key and entry.actual_category_id is not None:
                    groups[(entry.item_type, key, entry.actual_category_id)].append(entry)

            generated = 0
            for (item_type, _, category_id), entries in groups.items():
                if len(entries) < MIN_CORRECTIONS:
                    continue
                scope = RuleScope.ITEM if item_type == ItemType.ITEM.value else RuleScope.TRANSACTION
                _, created = await self.repository.upsert_rule(
                    pattern=entries[0].description.strip(),
                    match_type=MatchType.EXACT.value,
                    category_id=category_id,
                    scope=scope.value,
                    source=RuleSource.AI_LEARNING.value,
                    name=f"Learned: {entries[0].description.strip()[:80]}",
                )
                if created:
                    generated += 1

            await self.repository.mark_feedback_processed([entry.id for entry in feedback])
            duration_ms = int((time.monotonic() - started) * 1000)
            await self.repository.record_training_run(
                trigger=trigger,
                feedback_count=len(feedback),
                rules_generated=generated,
                duration_ms=duration_ms,
                notes=f"{len(groups)} distinct corrections",
            )
            self.rules.invalidate()
            logger.info(
                "retraining_completed",
                trigger=trigger,
                feedback_count=len(feedback),
                rules_generated=generated,
                duration_ms=duration_ms,
            )
            return {"feedback_count": len(feedback), "rules_generated": generated, "duration_ms": duration_ms}
        finally:
            self.is_retraining = False

    async def status(self) -> RetrainingStatus:
        pending = await self.repository.count_unprocessed_feedback()
        threshold = await self.threshold()
        last = await self.repository.get_last_training_run()
        return RetrainingStatus(
            is_retraining=self.is_retraining,
            pending_feedback=pending,
            threshold=threshold,
            next_retraining_in=max(0, threshold - pending),
            last_training_at=last.created_at.isoformat() if last and last.created_at else None,
        )
