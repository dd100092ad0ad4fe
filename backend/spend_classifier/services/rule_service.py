"""Classification rule store.

Loads enabled rules once, compiles regex patterns at load/insert time and
matches records against them. Rule CRUD goes through the store so the
compiled cache stays in step with the table.
"""

import re
from dataclasses import dataclass

import structlog

from spend_classifier.core.exceptions import NotFoundError, PatternError, ValidationError
from spend_classifier.models import ClassificationRule, MatchType, RuleScope
from spend_classifier.repositories import ClassifierRepository
from spend_classifier.schemas.classification_rule import RuleCreate, RuleUpdate

logger = structlog.get_logger()


@dataclass
class CompiledRule:
    """A rule with its matcher prepared."""

    id: int
    pattern: str
    match_type: MatchType
    category_id: int
    scope: RuleScope
    external_id: str | None = None
    name: str | None = None
    regex: re.Pattern | None = None

    def matches(self, *candidates: str | None) -> bool:
        """True when the pattern matches any non-empty candidate."""
        pattern = self.pattern.lower()
        for candidate in candidates:
            if not candidate:
                continue
            if self.match_type == MatchType.EXACT:
                if candidate.lower() == pattern:
                    return True
            elif self.match_type == MatchType.PARTIAL:
                if pattern in candidate.lower():
                    return True
            elif self.match_type == MatchType.REGEX:
                if self.regex.search(candidate):
                    return True
            else:
                raise ValueError(f"Unhandled match type {self.match_type!r}")
        return False


def compile_pattern(pattern: str, match_type: MatchType | str, rule_id: int | None = None) -> re.Pattern | None:
    """Validate a pattern; return the compiled regex for regex rules.

    Raises PatternError for an empty pattern or a malformed regex.
    """
    if not pattern or not pattern.strip():
        raise PatternError(pattern or "", "pattern is empty", rule_id)
    if MatchType(match_type) != MatchType.REGEX:
        return None
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise PatternError(pattern, str(e), rule_id) from e


def compile_rule(rule: ClassificationRule) -> CompiledRule:
    return CompiledRule(
        id=rule.id,
        pattern=rule.pattern,
        match_type=MatchType(rule.match_type),
        category_id=rule.category_id,
        scope=RuleScope(rule.scope),
        external_id=rule.external_id,
        name=rule.name,
        regex=compile_pattern(rule.pattern, rule.match_type, rule.id),
    )


class RuleStore:
    def __init__(self, repository: ClassifierRepository):
        self.repository = repository
        self._rules: list[CompiledRule] | None = None

    # ── Cache ──────────────────────────────────────────

    async def load(self) -> list[CompiledRule]:
        """(Re)load enabled rules, skipping those whose pattern is invalid."""
        compiled = []
        for rule in await self.repository.get_rules(enabled_only=True):
            try:
                compiled.append(compile_rule(rule))
            except PatternError as e:
                logger.warning("rule_pattern_invalid", rule_id=rule.id, pattern=rule.pattern, error=e.reason)
        self._rules = compiled
        logger.debug("rules_loaded", count=len(compiled))
        return compiled

    def invalidate(self) -> None:
        self._rules = None

    async def rules(self, scope: RuleScope | None = None) -> list[CompiledRule]:
        if self._rules is None:
            await self.load()
        if scope is None:
            return list(self._rules)
        return [rule for rule in self._rules if rule.scope == scope]

    # ── Matching ───────────────────────────────────────

    async def match(self, merchant: str | None, description: str | None) -> CompiledRule | None:
        """First transaction rule matching the merchant or the description."""
        for rule in await self.rules(RuleScope.TRANSACTION):
            if rule.matches(merchant, description):
                return rule
        return None

    async def match_identifier(self, external_id: str | None) -> CompiledRule | None:
        """Item rule pinned to this exact external identifier."""
        if not external_id or not external_id.strip():
            return None
        key = external_id.strip().lower()
        for rule in await self.rules(RuleScope.ITEM):
            if rule.external_id and rule.external_id.strip().lower() == key:
                return rule
        return None

    async def match_title(self, title: str | None) -> CompiledRule | None:
        """First item title rule matching the title."""
        for rule in await self.rules(RuleScope.ITEM):
            if not rule.external_id and rule.matches(title):
                return rule
        return None

    def preview(
        self,
        pattern: str,
        match_type: MatchType,
        candidates: list[tuple[str | None, str | None]],
    ) -> list[tuple[str | None, str | None]]:
        """Which (merchant, description) pairs a prospective rule would match."""
        try:
            regex = compile_pattern(pattern, match_type)
        except PatternError as e:
            raise ValidationError(str(e)) from e
        probe = CompiledRule(
            id=0,
            pattern=pattern,
            match_type=MatchType(match_type),
            category_id=0,
            scope=RuleScope.TRANSACTION,
            regex=regex,
        )
        return [pair for pair in candidates if probe.matches(*pair)]

    # ── CRUD ───────────────────────────────────────────

    async def list_rules(self, scope: RuleScope | None = None, enabled_only: bool = False) -> list[ClassificationRule]:
        return await self.repository.get_rules(
            enabled_only=enabled_only, scope=scope.value if scope else None
        )

    async def create_rule(self, data: RuleCreate) -> ClassificationRule:
        """Validate, then insert (or reinforce an identical) rule."""
        try:
            compile_pattern(data.pattern, data.match_type)
        except PatternError as e:
            raise ValidationError(str(e)) from e
        if not await self.repository.get_category(data.category_id):
            raise NotFoundError("Category")

        rule, created = await self.repository.upsert_rule(
            pattern=data.pattern,
            match_type=data.match_type.value,
            category_id=data.category_id,
            scope=data.scope.value,
            source=data.source.value,
            name=data.name,
            external_id=data.external_id,
            enabled=data.enabled,
        )
        self.invalidate()
        logger.info("rule_saved", rule_id=rule.id, pattern=rule.pattern, created=created)
        return rule

    async def update_rule(self, rule_id: int, data: RuleUpdate) -> ClassificationRule:
        current = await self.repository.get_rule(rule_id)
        if not current:
            raise NotFoundError("ClassificationRule")

        fields = data.model_dump(exclude_unset=True)
        if "match_type" in fields and fields["match_type"] is not None:
            fields["match_type"] = MatchType(fields["match_type"]).value
        pattern = fields.get("pattern") or current.pattern
        match_type = fields.get("match_type") or current.match_type
        try:
            compile_pattern(pattern, match_type, rule_id)
        except PatternError as e:
            raise ValidationError(str(e)) from e
        if fields.get("category_id") is not None and not await self.repository.get_category(fields["category_id"]):
            raise NotFoundError("Category")

        rule = await self.repository.update_rule(rule_id, **{k: v for k, v in fields.items() if v is not None})
        self.invalidate()
        return rule

    async def delete_rule(self, rule_id: int) -> None:
        await self.repository.delete_rule(rule_id)
        self.invalidate()
        logger.info("rule_deleted", rule_id=rule_id)

    async def record_outcome(self, rule_id: int, correct: bool) -> None:
        await self.repository.record_rule_outcome(rule_id, correct)
