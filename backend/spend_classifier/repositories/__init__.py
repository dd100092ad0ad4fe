"""Persistence layer consumed by the classifier."""

from spend_classifier.repositories.base import ClassifierRepository, normalize_key
from spend_classifier.repositories.sqlalchemy_repository import SQLAlchemyRepository

__all__ = ["ClassifierRepository", "SQLAlchemyRepository", "normalize_key"]
