"""Category schemas."""

from pydantic import BaseModel


class CategoryCreate(BaseModel):
    name: str
    parent_id: int | None = None
    description: str | None = None
    keywords: str | None = None
    icon: str | None = None
    color: str | None = None
    use_for_items: bool = True

    def attributes(self) -> dict:
        return self.model_dump(exclude={"name", "parent_id"}, exclude_none=True)
