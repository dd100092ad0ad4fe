"""Cascade classifier.

A cascade is an ordered list of stages. Each stage either accepts with a
result, skips (its input is missing) or abstains (it was consulted and had
no opinion, or failed in a way the cascade absorbs). The first acceptance
wins; the confidence is fixed by the stage that matched, so a later stage
can never override an earlier one.

Two configurations exist, one for bank transactions and one for purchased
items. They intentionally keep different stage orders and confidence tiers.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar

import httpx
import structlog

from spend_classifier.config import settings
from spend_classifier.core.exceptions import ClassifierError, ReferenceMiss
from spend_classifier.repositories import ClassifierRepository
from spend_classifier.schemas.classification import (
    BankTransactionInput,
    ClassificationMethod,
    ClassificationResult,
    PurchasedItemInput,
)
from spend_classifier.services.category_service import CategoryOption, CategoryRegistry, CategorySnapshot
from spend_classifier.services.external_mapping_service import ExternalTaxonomyMapper, TaxonomySource
from spend_classifier.services.llm_service import AIClassifier
from spend_classifier.services.merchant_memory import MerchantMemory
from spend_classifier.services.rule_service import RuleStore

logger = structlog.get_logger()

RecordT = TypeVar("RecordT")


class StageOutcome(str, Enum):
    ACCEPT = "accept"
    SKIP = "skip"
    ABSTAIN = "abstain"


@dataclass
class StageResult:
    outcome: StageOutcome
    result: ClassificationResult | None = None
    # Merchant memory key to upsert when the result is accepted
    write_back_key: str | None = None
    reason: str = ""

    @classmethod
    def accept(
        cls,
        category: CategoryOption,
        confidence: int,
        method: ClassificationMethod,
        reasoning: str,
        rule_id: int | None = None,
        write_back_key: str | None = None,
    ) -> "StageResult":
        return cls(
            outcome=StageOutcome.ACCEPT,
            result=ClassificationResult(
                category=category.name,
                category_id=category.id,
                confidence=confidence,
                method=method,
                reasoning=reasoning,
                rule_id=rule_id,
            ),
            write_back_key=write_back_key,
        )

    @classmethod
    def skip(cls, reason: str = "") -> "StageResult":
        return cls(outcome=StageOutcome.SKIP, reason=reason)

    @classmethod
    def abstain(cls, reason: str = "") -> "StageResult":
        return cls(outcome=StageOutcome.ABSTAIN, reason=reason)


@dataclass
class CascadeContext:
    """Per-call state shared by the stages."""

    registry: CategorySnapshot
    # Categories a stage may choose from (a subset of the registry for items)
    allowed: CategorySnapshot
    learn: bool = True
    trace: list[tuple[str, StageOutcome]] = field(default_factory=list)

    def category(self, category_id: int | None) -> CategoryOption:
        """Registry entry for an id taken from a stored rule or mapping."""
        option = self.registry.by_id(category_id)
        if not option:
            raise ReferenceMiss(category_id)
        return option


class Stage(ABC, Generic[RecordT]):
    name: str = "stage"

    @abstractmethod
    async def evaluate(self, record: RecordT, ctx: CascadeContext) -> StageResult: ...


class CascadeClassifier(ABC, Generic[RecordT]):
    """Runs stages in order and returns the first accepted result."""

    def __init__(self, repository: ClassifierRepository, stages: list[Stage[RecordT]]):
        self.repository = repository
        self.stages = stages
        self.registry = CategoryRegistry(repository)
        self.memory = MerchantMemory(repository)

    @abstractmethod
    async def context(self, learn: bool) -> CascadeContext: ...

    def terminal(self, record: RecordT, ctx: CascadeContext) -> ClassificationResult:
        return ClassificationResult.unclassified()

    async def classify(self, record: RecordT, learn: bool = True) -> ClassificationResult:
        """Classify one record. With ``learn=False`` nothing is written."""
        ctx = await self.context(learn)
        for stage in self.stages:
            try:
                outcome = await stage.evaluate(record, ctx)
            except (ClassifierError, httpx.HTTPError) as e:
                logger.warning("classification_stage_failed", stage=stage.name, error=str(e))
                ctx.trace.append((stage.name, StageOutcome.ABSTAIN))
                continue

            ctx.trace.append((stage.name, outcome.outcome))
            if outcome.outcome == StageOutcome.ACCEPT:
                await self._write_back(outcome, ctx)
                logger.debug(
                    "classification_accepted",
                    stage=stage.name,
                    method=outcome.result.method.value,
                    category=outcome.result.category,
                    confidence=outcome.result.confidence,
                )
                return outcome.result

        result = self.terminal(record, ctx)
        logger.debug("classification_unmatched", stages=[name for name, _ in ctx.trace])
        return result

    async def classify_batch(self, records: list[RecordT], learn: bool = True) -> list[ClassificationResult]:
        """Classify in small concurrent chunks; results keep input order."""
        results: list[ClassificationResult] = []
        size = max(1, settings.classification_batch_size)
        for start in range(0, len(records), size):
            chunk = records[start:start + size]
            results.extend(await asyncio.gather(*(self.classify(record, learn) for record in chunk)))
        return results

    async def _write_back(self, outcome: StageResult, ctx: CascadeContext) -> None:
        if not ctx.learn:
            return
        result = outcome.result
        if outcome.write_back_key and result.category_id is not None:
            await self.memory.upsert(outcome.write_back_key, result.category_id)
        if result.rule_id is not None:
            await self.repository.increment_rule_usage(result.rule_id)


def _present(value: str | None) -> str | None:
    return value.strip() if value and value.strip() else None


# ── Bank-transaction stages ────────────────────────────


class MerchantExactStage(Stage[BankTransactionInput]):
    name = "merchant_exact"
    confidence = 95

    def __init__(self, memory: MerchantMemory):
        self.memory = memory

    async def evaluate(self, record: BankTransactionInput, ctx: CascadeContext) -> StageResult:
        merchant = _present(record.merchant_name)
        if merchant:
            hit = await self.memory.lookup(merchant)
            if not hit:
                return StageResult.abstain()
            return StageResult.accept(
                ctx.category(hit.category_id),
                self.confidence,
                ClassificationMethod.MERCHANT_EXACT,
                f"Merchant '{merchant}' is in merchant memory",
                write_back_key=merchant,
            )

        description = _present(record.description)
        if not description:
            return StageResult.skip("no merchant or description")
        hit = await self.memory.lookup(description)
        if not hit:
            return StageResult.abstain()
        return StageResult.accept(
            ctx.category(hit.category_id),
            self.confidence,
            ClassificationMethod.DESCRIPTION_EXACT,
            f"Description '{description}' is in merchant memory",
        )


class RuleStage(Stage[BankTransactionInput]):
    name = "rule"
    confidence = 85

    def __init__(self, rules: RuleStore):
        self.rules = rules

    async def evaluate(self, record: BankTransactionInput, ctx: CascadeContext) -> StageResult:
        merchant = _present(record.merchant_name)
        description = _present(record.description)
        if not merchant and not description:
            return StageResult.skip("no merchant or description")
        rule = await self.rules.match(merchant, description)
        if not rule:
            return StageResult.abstain()
        return StageResult.accept(
            ctx.category(rule.category_id),
            self.confidence,
            ClassificationMethod.RULE,
            f"Matched {rule.match_type.value} rule '{rule.name or rule.pattern}'",
            rule_id=rule.id,
            write_back_key=merchant,
        )


class MerchantFuzzyStage(Stage[BankTransactionInput]):
    name = "merchant_fuzzy"
    confidence = 75

    def __init__(self, memory: MerchantMemory):
        self.memory = memory

    async def evaluate(self, record: BankTransactionInput, ctx: CascadeContext) -> StageResult:
        merchant = _present(record.merchant_name)
        text = merchant or _present(record.description)
        if not text:
            return StageResult.skip("no merchant or description")
        hit = await self.memory.fuzzy_lookup(text)
        if not hit:
            return StageResult.abstain()
        return StageResult.accept(
            ctx.category(hit.category_id),
            self.confidence,
            ClassificationMethod.MERCHANT_FUZZY,
            f"'{text}' is similar to '{hit.key}' ({hit.similarity:.0%})",
            write_back_key=merchant,
        )


class TaxonomyStage(Stage[BankTransactionInput]):
    """Hierarchical provider taxonomy, detailed value first."""

    name = "taxonomy"

    def __init__(self, mapper: ExternalTaxonomyMapper):
        self.mapper = mapper

    async def evaluate(self, record: BankTransactionInput, ctx: CascadeContext) -> StageResult:
        taxonomy = record.foreign_taxonomy
        if not taxonomy or not (taxonomy.detailed or taxonomy.primary):
            return StageResult.skip("no foreign taxonomy")
        hit = await self.mapper.resolve(
            [taxonomy.detailed, taxonomy.primary],
            TaxonomySource.PERSONAL_FINANCE_CATEGORY,
            ctx.registry,
            learn=ctx.learn,
        )
        if not hit:
            return StageResult.abstain()
        if hit.approved:
            method, reasoning = ClassificationMethod.TAXONOMY_MAPPING, f"Mapped from '{hit.external_category}'"
        else:
            method, reasoning = (
                ClassificationMethod.TAXONOMY_HEURISTIC,
                f"Suggested from '{hit.external_category}' (pending review)",
            )
        return StageResult.accept(ctx.category(hit.category_id), hit.confidence, method, reasoning)


class LegacyTaxonomyStage(Stage[BankTransactionInput]):
    """Flat provider category array, most specific (last) value first."""

    name = "legacy_taxonomy"

    def __init__(self, mapper: ExternalTaxonomyMapper):
        self.mapper = mapper

    async def evaluate(self, record: BankTransactionInput, ctx: CascadeContext) -> StageResult:
        if not record.legacy_category:
            return StageResult.skip("no legacy category")
        hit = await self.mapper.resolve(
            list(reversed(record.legacy_category)),
            TaxonomySource.LEGACY_CATEGORY,
            ctx.registry,
            learn=ctx.learn,
        )
        if not hit:
            return StageResult.abstain()
        if hit.approved:
            method, reasoning = ClassificationMethod.LEGACY_MAPPING, f"Mapped from '{hit.external_category}'"
        else:
            method, reasoning = (
                ClassificationMethod.LEGACY_HEURISTIC,
                f"Suggested from '{hit.external_category}' (pending review)",
            )
        return StageResult.accept(ctx.category(hit.category_id), hit.confidence, method, reasoning)


class BankTransactionCascade(CascadeClassifier[BankTransactionInput]):
    def __init__(self, repository: ClassifierRepository, rules: RuleStore | None = None):
        memory = MerchantMemory(repository)
        mapper = ExternalTaxonomyMapper(repository)
        self.rules = rules or RuleStore(repository)
        super().__init__(
            repository,
            [
                MerchantExactStage(memory),
                RuleStage(self.rules),
                MerchantFuzzyStage(memory),
                TaxonomyStage(mapper),
                LegacyTaxonomyStage(mapper),
            ],
        )

    async def context(self, learn: bool) -> CascadeContext:
        snapshot = await self.registry.snapshot()
        return CascadeContext(registry=snapshot, allowed=snapshot, learn=learn)


# ── Purchased-item stages ──────────────────────────────


class IdentifierRuleStage(Stage[PurchasedItemInput]):
    name = "identifier_rule"
    confidence = 95

    def __init__(self, rules: RuleStore):
        self.rules = rules

    async def evaluate(self, record: PurchasedItemInput, ctx: CascadeContext) -> StageResult:
        if not _present(record.external_id):
            return StageResult.skip("no external id")
        rule = await self.rules.match_identifier(record.external_id)
        if not rule:
            return StageResult.abstain()
        return StageResult.accept(
            ctx.category(rule.category_id),
            self.confidence,
            ClassificationMethod.IDENTIFIER_RULE,
            f"Identifier {record.external_id.strip()} has a rule",
            rule_id=rule.id,
        )


class TitleRuleStage(Stage[PurchasedItemInput]):
    name = "title_rule"
    confidence = 90

    def __init__(self, rules: RuleStore):
        self.rules = rules

    async def evaluate(self, record: PurchasedItemInput, ctx: CascadeContext) -> StageResult:
        if not _present(record.title):
            return StageResult.skip("no title")
        rule = await self.rules.match_title(record.title)
        if not rule:
            return StageResult.abstain()
        return StageResult.accept(
            ctx.category(rule.category_id),
            self.confidence,
            ClassificationMethod.TITLE_RULE,
            f"Title matched {rule.match_type.value} rule '{rule.name or rule.pattern}'",
            rule_id=rule.id,
        )


class AIStage(Stage[PurchasedItemInput]):
    name = "ai"
    min_confidence = 50

    def __init__(self, ai: AIClassifier):
        self.ai = ai

    async def evaluate(self, record: PurchasedItemInput, ctx: CascadeContext) -> StageResult:
        if not settings.llm_enabled:
            return StageResult.skip("LLM disabled")
        if not _present(record.title) or not ctx.allowed:
            return StageResult.skip("nothing to ask")
        suggestion = await self.ai.classify(record.title, ctx.allowed, record.foreign_category)
        if not suggestion or suggestion.confidence < self.min_confidence:
            return StageResult.abstain()
        return StageResult.accept(
            ctx.allowed.by_id(suggestion.category_id),
            suggestion.confidence,
            ClassificationMethod.AI,
            suggestion.reasoning,
        )


class ItemCategoryStage(Stage[PurchasedItemInput]):
    name = "item_category"

    def __init__(self, mapper: ExternalTaxonomyMapper):
        self.mapper = mapper

    async def evaluate(self, record: PurchasedItemInput, ctx: CascadeContext) -> StageResult:
        if not _present(record.foreign_category):
            return StageResult.skip("no foreign category")
        hit = await self.mapper.map_item_category(record.foreign_category, ctx.allowed)
        if not hit:
            return StageResult.abstain()
        return StageResult.accept(
            ctx.allowed.by_id(hit.category_id),
            hit.confidence,
            ClassificationMethod.CATEGORY_MAPPING,
            f"Mapped from seller category '{record.foreign_category.strip()}'",
        )


class FallbackStage(Stage[PurchasedItemInput]):
    name = "fallback_shopping"
    confidence = 40

    async def evaluate(self, record: PurchasedItemInput, ctx: CascadeContext) -> StageResult:
        option = ctx.allowed.first_of(settings.item_fallback_categories_list)
        if not option:
            return StageResult.abstain()
        return StageResult.accept(
            option,
            self.confidence,
            ClassificationMethod.FALLBACK_SHOPPING,
            "Default category for purchased items",
        )


class PurchasedItemCascade(CascadeClassifier[PurchasedItemInput]):
    uncategorized_confidence = 10

    def __init__(
        self,
        repository: ClassifierRepository,
        ai: AIClassifier | None = None,
        rules: RuleStore | None = None,
    ):
        self.rules = rules or RuleStore(repository)
        self.ai = ai or AIClassifier()
        super().__init__(
            repository,
            [
                IdentifierRuleStage(self.rules),
                TitleRuleStage(self.rules),
                AIStage(self.ai),
                ItemCategoryStage(ExternalTaxonomyMapper(repository)),
                FallbackStage(),
            ],
        )

    async def context(self, learn: bool) -> CascadeContext:
        return CascadeContext(
            registry=await self.registry.snapshot(),
            allowed=await self.registry.snapshot(items_only=True),
            learn=learn,
        )

    def terminal(self, record: PurchasedItemInput, ctx: CascadeContext) -> ClassificationResult:
        option = ctx.registry.by_name(settings.uncategorized_category)
        return ClassificationResult(
            category=option.name if option else settings.uncategorized_category,
            category_id=option.id if option else None,
            confidence=self.uncategorized_confidence,
            method=ClassificationMethod.FALLBACK,
            reasoning="No matching rule, AI answer or category mapping",
        )
