from collections.abc import Iterable

from cascade_categorizer.models import Category


def parse_category_list(raw: str | None) -> list[Category]:
    """Parse ``"1:Food, 2:Transport"`` into categories.

    Entries without an explicit id use their position (starting at 1).
    Duplicate ids keep the first occurrence.
    """
    if not raw:
        return []
    categories: list[Category] = []
    seen: set[str] = set()
    for index, part in enumerate(raw.split(","), start=1):
        part = part.strip()
        if not part:
            continue
        if ":" in part:
            cat_id, name = (piece.strip() for piece in part.split(":", 1))
        else:
            cat_id, name = str(index), part
        if cat_id and name and cat_id not in seen:
            categories.append(Category(id=cat_id, name=name))
            seen.add(cat_id)
    return categories


class CategoryCatalog:
    def __init__(self, categories: Iterable[Category]) -> None:
        self._categories = list(categories)
        self._by_id = {category.id: category for category in self._categories}
        self._by_name = {category.name.casefold(): category for category in self._categories}

    def __len__(self) -> int:
        return len(self._categories)

    def __iter__(self):
        return iter(self._categories)

    def __contains__(self, category_id: object) -> bool:
        return category_id in self._by_id

    def get(self, category_id: str | None) -> Category | None:
        if category_id is None:
            return None
        return self._by_id.get(category_id)

    def name_of(self, category_id: str | None) -> str | None:
        category = self.get(category_id)
        return category.name if category else None

    def resolve(self, value: str) -> Category | None:
        """Look a category up by id, then by case-insensitive name."""
        value = value.strip()
        return self._by_id.get(value) or self._by_name.get(value.casefold())
