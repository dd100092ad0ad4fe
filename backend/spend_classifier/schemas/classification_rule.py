"""Classification rule schemas."""

from pydantic import BaseModel

from spend_classifier.models.classification_rule import MatchType, RuleScope, RuleSource


class RuleCreate(BaseModel):
    pattern: str
    match_type: MatchType = MatchType.PARTIAL
    category_id: int
    scope: RuleScope = RuleScope.TRANSACTION
    name: str | None = None
    external_id: str | None = None
    source: RuleSource = RuleSource.USER
    enabled: bool = True


class RuleUpdate(BaseModel):
    pattern: str | None = None
    match_type: MatchType | None = None
    category_id: int | None = None
    name: str | None = None
    enabled: bool | None = None
