"""Category registry: the canonical taxonomy every component resolves through."""

from dataclasses import dataclass, field

import structlog

from spend_classifier.core.exceptions import NotFoundError, ValidationError
from spend_classifier.models import Category, MatchType, RuleScope, RuleSource
from spend_classifier.repositories import ClassifierRepository
from spend_classifier.schemas.category import CategoryCreate
from spend_classifier.services.category_descriptions import (
    DEFAULT_CATEGORIES,
    DEFAULT_RULES,
    default_attributes,
    get_category_description,
)

logger = structlog.get_logger()


@dataclass
class CategoryOption:
    """A category as offered to a classifier stage."""

    id: int
    name: str
    description: str = ""
    keywords: str = ""


@dataclass
class CategorySnapshot:
    """Point-in-time view of the registry used during one classification."""

    options: list[CategoryOption] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._by_id = {option.id: option for option in self.options}
        self._by_name = {option.name.lower(): option for option in self.options}

    def by_id(self, category_id: int | None) -> CategoryOption | None:
        return self._by_id.get(category_id) if category_id is not None else None

    def by_name(self, name: str | None) -> CategoryOption | None:
        return self._by_name.get((name or "").strip().lower())

    def first_of(self, names: list[str]) -> CategoryOption | None:
        for name in names:
            option = self.by_name(name)
            if option:
                return option
        return None

    @property
    def names(self) -> list[str]:
        return [option.name for option in self.options]

    def __len__(self) -> int:
        return len(self.options)


class CategoryRegistry:
    def __init__(self, repository: ClassifierRepository):
        self.repository = repository

    # ── Reads ──────────────────────────────────────────

    async def list_categories(self) -> list[Category]:
        return await self.repository.get_categories()

    async def snapshot(self, items_only: bool = False) -> CategorySnapshot:
        """Categories as classifier options, optionally limited to ``use_for_items``."""
        categories = await self.repository.get_categories()
        options = [
            CategoryOption(
                id=category.id,
                name=category.name,
                description=category.description or get_category_description(category.name),
                keywords=category.keywords,
            )
            for category in categories
            if not items_only or category.use_for_items
        ]
        return CategorySnapshot(options)

    async def get_tree(self) -> list[dict]:
        """Categories as a nested tree."""
        categories = await self.repository.get_categories()
        nodes = {
            c.id: {"id": c.id, "name": c.name, "parent_id": c.parent_id, "children": []}
            for c in categories
        }
        tree = []
        for node in nodes.values():
            if node["parent_id"] and node["parent_id"] in nodes:
                nodes[node["parent_id"]]["children"].append(node)
            else:
                tree.append(node)
        return tree

    async def resolve_name(self, category_id: int | None) -> str:
        """Display name of a category, resolved at read time."""
        if category_id is None:
            return ""
        category = await self.repository.get_category(category_id)
        return category.name if category else ""

    # ── Writes ─────────────────────────────────────────

    async def create(self, data: CategoryCreate) -> Category:
        if not data.name.strip():
            raise ValidationError("Category name must not be empty")
        if data.parent_id is not None and not await self.repository.get_category(data.parent_id):
            raise NotFoundError("Parent category")
        category = await self.repository.create_category(data.name, data.parent_id, data.attributes())
        logger.info("category_created", category_id=category.id, name=category.name)
        return category

    async def rename(self, category_id: int, new_name: str) -> Category:
        if not new_name.strip():
            raise ValidationError("Category name must not be empty")
        return await self.repository.rename_category(category_id, new_name)

    async def delete(self, category_id: int) -> dict:
        return await self.repository.delete_category(category_id)

    async def seed_defaults(self) -> dict:
        """Insert the default categories and regex rules into empty tables."""
        created_categories = 0
        created_rules = 0

        if not await self.repository.get_categories():
            for name in DEFAULT_CATEGORIES:
                await self.repository.create_category(name, None, default_attributes(name))
                created_categories += 1

        if not await self.repository.get_rules(enabled_only=False):
            for rule_name, pattern, category_name in DEFAULT_RULES:
                category_id = await self.repository.get_or_create_category_id(category_name)
                await self.repository.upsert_rule(
                    pattern=pattern,
                    match_type=MatchType.REGEX.value,
                    category_id=category_id,
                    scope=RuleScope.TRANSACTION.value,
                    source=RuleSource.SEED.value,
                    name=rule_name,
                )
                created_rules += 1

        logger.info("defaults_seeded", categories=created_categories, rules=created_rules)
        return {"categories": created_categories, "rules": created_rules}
