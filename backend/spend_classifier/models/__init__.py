"""SQLAlchemy models."""

from spend_classifier.models.base import Base
from spend_classifier.models.category import Category
from spend_classifier.models.classification_feedback import ClassificationFeedback, TrainingRun
from spend_classifier.models.classification_rule import (
    ClassificationRule,
    MatchType,
    RuleScope,
    RuleSource,
)
from spend_classifier.models.external_category_mapping import ExternalCategoryMapping, MappingStatus
from spend_classifier.models.merchant_mapping import MerchantMapping
from spend_classifier.models.transaction import PurchasedItem, Transaction

__all__ = [
    "Base",
    "Category",
    "ClassificationRule",
    "MatchType",
    "RuleScope",
    "RuleSource",
    "MerchantMapping",
    "ExternalCategoryMapping",
    "MappingStatus",
    "ClassificationFeedback",
    "TrainingRun",
    "Transaction",
    "PurchasedItem",
]
