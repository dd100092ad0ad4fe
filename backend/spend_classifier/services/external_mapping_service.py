"""Foreign taxonomy -> registry category mapping with a review queue.

Bank-aggregation providers and merchants ship their own category
vocabularies. Only ``approved`` and ``unmapped`` rows are applied
automatically. An unseen value is recorded as ``pending`` together with the
keyword heuristic's suggestion so a human can approve or reject it.
"""

from dataclasses import dataclass
from enum import Enum

import structlog

from spend_classifier.core.exceptions import NotFoundError, ReferenceMiss
from spend_classifier.models import ExternalCategoryMapping, MappingStatus
from spend_classifier.repositories import ClassifierRepository
from spend_classifier.services.category_service import CategorySnapshot

logger = structlog.get_logger()

MAPPED_CONFIDENCE = 70
HEURISTIC_CONFIDENCE = 50


class TaxonomySource(str, Enum):
    PERSONAL_FINANCE_CATEGORY = "personal_finance_category"
    LEGACY_CATEGORY = "legacy_category"
    ITEM_CATEGORY = "item_category"


# Checked in order; the first group with a keyword contained in the
# lower-cased foreign value wins.
HEURISTIC_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("Restaurants", ("restaurant", "food_and_drink", "dining", "coffee", "fast food", "bar")),
    ("Groceries", ("groceries", "supermarket", "food_store")),
    ("Gas", ("gas", "fuel", "service_station")),
    ("Transportation", ("transport", "taxi", "uber", "lyft", "parking", "public_transit", "automotive")),
    ("Shopping", ("shop", "retail", "general_merchandise", "clothing", "electronics", "home_improvement")),
    (
        "Entertainment",
        ("entertainment", "recreation", "gym", "fitness", "sports", "movie", "music", "streaming"),
    ),
    ("Travel", ("travel", "hotel", "airfare", "lodging", "airline", "vacation")),
    ("Healthcare", ("healthcare", "medical", "doctor", "pharmacy", "hospital", "dental")),
    (
        "Bills & Utilities",
        ("utility", "utilities", "electric", "water", "internet", "phone", "cable", "rent", "mortgage"),
    ),
    ("Income", ("income", "paycheck", "salary", "deposit", "refund", "reimbursement")),
    ("Transfer", ("transfer", "payment", "credit_card_payment")),
    ("Personal Care", ("personal_care", "salon", "spa", "barber")),
    ("Education", ("education", "school", "tuition", "student")),
    ("Subscriptions", ("subscription", "membership")),
]
HEURISTIC_DEFAULT = "Other"

# Merchant item categories, matched exactly.
ITEM_CATEGORY_MAP: dict[str, str] = {
    "Grocery": "Groceries",
    "Grocery & Gourmet Food": "Groceries",
    "Health & Personal Care": "Healthcare",
    "Health & Household": "Healthcare",
    "Beauty & Personal Care": "Healthcare",
    "Home & Kitchen": "Shopping",
    "Kitchen & Dining": "Shopping",
    "Electronics": "Shopping",
    "Computers": "Shopping",
    "Books": "Entertainment",
    "Movies & TV": "Entertainment",
    "Video Games": "Entertainment",
    "Toys & Games": "Shopping",
    "Sports & Outdoors": "Shopping",
    "Clothing, Shoes & Jewelry": "Shopping",
    "Automotive": "Auto & Transport",
    "Pet Supplies": "Shopping",
    "Office Products": "Shopping",
}


def suggest_category_name(external_category: str | None) -> str | None:
    """Keyword heuristic for a foreign taxonomy value."""
    if not external_category:
        return None
    value = external_category.lower()
    for name, keywords in HEURISTIC_KEYWORDS:
        if any(keyword in value for keyword in keywords):
            return name
    return HEURISTIC_DEFAULT


@dataclass
class MappingHit:
    external_category: str
    category_id: int
    category: str
    confidence: int
    approved: bool


class ExternalTaxonomyMapper:
    def __init__(self, repository: ClassifierRepository):
        self.repository = repository

    # ── Resolution ─────────────────────────────────────

    async def lookup(
        self, external_category: str, source: TaxonomySource, categories: CategorySnapshot
    ) -> MappingHit | None:
        """Approved (or unmapped) mapping for the value, never a pending one.

        Raises ReferenceMiss when the mapped category no longer exists.
        """
        mapping = await self.repository.get_external_mapping(external_category, source.value)
        if not mapping or mapping.status not in (MappingStatus.APPROVED.value, MappingStatus.UNMAPPED.value):
            return None
        if mapping.user_category_id is None:
            return None
        option = categories.by_id(mapping.user_category_id)
        if not option:
            raise ReferenceMiss(mapping.user_category_id)
        return MappingHit(
            external_category=external_category,
            category_id=option.id,
            category=option.name,
            confidence=MAPPED_CONFIDENCE,
            approved=True,
        )

    async def resolve(
        self,
        candidates: list[str],
        source: TaxonomySource,
        categories: CategorySnapshot,
        learn: bool = True,
    ) -> MappingHit | None:
        """Map the first resolvable value; ``candidates`` are most-specific-first.

        Approved mappings are looked up for every candidate. When none hits,
        the most specific value gets the heuristic suggestion and, if it was
        never seen, a pending row.
        """
        candidates = [c for c in candidates if c and c.strip()]
        if not candidates:
            return None

        for candidate in candidates:
            try:
                hit = await self.lookup(candidate, source, categories)
            except ReferenceMiss as e:
                logger.warning(
                    "external_mapping_reference_miss",
                    external_category=candidate,
                    source=source.value,
                    category_id=e.category_id,
                )
                continue
            if hit:
                return hit

        most_specific = candidates[0]
        existing = await self.repository.get_external_mapping(most_specific, source.value)
        if existing and existing.status == MappingStatus.REJECTED.value:
            return None

        option = categories.by_name(suggest_category_name(most_specific))
        if learn and not existing:
            created = await self.repository.insert_external_mapping_if_absent(
                external_category=most_specific,
                source=source.value,
                user_category_id=option.id if option else None,
                status=MappingStatus.PENDING.value,
                confidence=HEURISTIC_CONFIDENCE,
            )
            if created:
                logger.info(
                    "external_mapping_pending",
                    external_category=most_specific,
                    source=source.value,
                    suggested=option.name if option else None,
                )
        if not option:
            return None
        return MappingHit(
            external_category=most_specific,
            category_id=option.id,
            category=option.name,
            confidence=HEURISTIC_CONFIDENCE,
            approved=False,
        )

    async def map_item_category(
        self, foreign_category: str | None, categories: CategorySnapshot
    ) -> MappingHit | None:
        """Item category via a reviewed mapping or the fixed item table."""
        if not foreign_category or not foreign_category.strip():
            return None
        try:
            hit = await self.lookup(foreign_category, TaxonomySource.ITEM_CATEGORY, categories)
        except ReferenceMiss as e:
            logger.warning("external_mapping_reference_miss", external_category=foreign_category, category_id=e.category_id)
            hit = None
        if hit:
            return hit

        option = categories.by_name(ITEM_CATEGORY_MAP.get(foreign_category.strip()))
        if not option:
            return None
        return MappingHit(
            external_category=foreign_category,
            category_id=option.id,
            category=option.name,
            confidence=MAPPED_CONFIDENCE,
            approved=True,
        )

    # ── Review queue ───────────────────────────────────

    async def list_pending(self) -> list[ExternalCategoryMapping]:
        return await self.repository.list_external_mappings(MappingStatus.PENDING.value)

    async def list_mappings(self, status: MappingStatus | None = None) -> list[ExternalCategoryMapping]:
        return await self.repository.list_external_mappings(status.value if status else None)

    async def approve(
        self, external_category: str, source: TaxonomySource, category_id: int
    ) -> ExternalCategoryMapping:
        await self._require_category(category_id)
        mapping = await self.repository.upsert_external_mapping(
            external_category, source.value, category_id, MappingStatus.APPROVED.value, MAPPED_CONFIDENCE
        )
        logger.info("external_mapping_approved", external_category=external_category, category_id=category_id)
        return mapping

    async def reject(self, external_category: str, source: TaxonomySource) -> ExternalCategoryMapping:
        existing = await self.repository.get_external_mapping(external_category, source.value)
        if not existing:
            raise NotFoundError("ExternalCategoryMapping")
        mapping = await self.repository.upsert_external_mapping(
            external_category, source.value, None, MappingStatus.REJECTED.value, 0
        )
        logger.info("external_mapping_rejected", external_category=external_category)
        return mapping

    async def mark_unmapped(
        self, external_category: str, source: TaxonomySource, category_id: int
    ) -> ExternalCategoryMapping:
        """Record a mapping entered directly, outside the review queue."""
        await self._require_category(category_id)
        return await self.repository.upsert_external_mapping(
            external_category, source.value, category_id, MappingStatus.UNMAPPED.value, MAPPED_CONFIDENCE
        )

    async def _require_category(self, category_id: int) -> None:
        if not await self.repository.get_category(category_id):
            raise NotFoundError("Category")
