"""Learned merchant -> category memory."""

from dataclasses import dataclass

import structlog

from spend_classifier.config import settings
from spend_classifier.repositories import ClassifierRepository, normalize_key
from spend_classifier.services import fuzzy

logger = structlog.get_logger()

EXACT_CONFIDENCE = 95
FUZZY_CONFIDENCE = 75


@dataclass
class MemoryHit:
    key: str
    category_id: int
    confidence: int
    similarity: float = 1.0


class MerchantMemory:
    def __init__(self, repository: ClassifierRepository):
        self.repository = repository

    async def lookup(self, key: str | None) -> MemoryHit | None:
        """Exact case-insensitive hit."""
        if not normalize_key(key):
            return None
        mapping = await self.repository.get_merchant_mapping(key)
        if not mapping:
            return None
        return MemoryHit(key=mapping.merchant_key, category_id=mapping.category_id, confidence=EXACT_CONFIDENCE)

    async def fuzzy_lookup(self, key: str | None, threshold: float | None = None) -> MemoryHit | None:
        """First stored entry, in store order, whose similarity clears the threshold."""
        threshold = settings.fuzzy_threshold if threshold is None else threshold
        normalized = normalize_key(key)
        if len(normalized) < settings.fuzzy_min_length:
            return None

        for mapping in await self.repository.list_merchant_mappings():
            score = fuzzy.similarity(normalized, mapping.merchant_key)
            if score >= threshold:
                return MemoryHit(
                    key=mapping.merchant_key,
                    category_id=mapping.category_id,
                    confidence=FUZZY_CONFIDENCE,
                    similarity=score,
                )
        return None

    async def upsert(self, key: str | None, category_id: int) -> None:
        """Insert or bump usage; the latest category wins."""
        if not normalize_key(key):
            return
        await self.repository.upsert_merchant_mapping(key, category_id)
        logger.debug("merchant_mapping_saved", merchant=normalize_key(key), category_id=category_id)

    async def record_outcome(self, key: str, correct: bool) -> None:
        await self.repository.record_merchant_outcome(key, correct)

    async def list_mappings(self):
        return await self.repository.list_merchant_mappings()
