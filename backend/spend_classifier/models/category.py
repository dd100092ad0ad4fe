"""Category model."""

from sqlalchemy import JSON, ForeignKey, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from spend_classifier.models.base import Base, TimestampMixin


class Category(Base, TimestampMixin):
    """A node of the canonical category taxonomy.

    Identity is the id. The name is unique case-insensitively and may change;
    every other table references categories by id only.
    """

    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    parent_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id"), nullable=True)
    # description, keywords, examples, icon, color, use_for_items
    attributes: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    parent = relationship("Category", remote_side="Category.id", backref="children")

    @property
    def description(self) -> str:
        return (self.attributes or {}).get("description") or ""

    @property
    def keywords(self) -> str:
        return (self.attributes or {}).get("keywords") or ""

    @property
    def use_for_items(self) -> bool:
        return bool((self.attributes or {}).get("use_for_items", True))


Index("uq_categories_name_lower", func.lower(Category.name), unique=True)
