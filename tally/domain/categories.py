"""Category graph: the hierarchy used to tag transactions and roll up budgets.

Categories live in an arena keyed by id; parents are id references. The
arena is replaced wholesale on every mutation so readers holding a previous
mapping keep a consistent view.

Two reserved categories always exist, one per kind. Soft-deleted categories
hand their transactions to the reserved category of the same kind.
"""

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, replace

from tally.domain.errors import (
    CycleError,
    InvariantViolationError,
    KindMismatchError,
    UnknownCategoryError,
    ValidationError,
)
from tally.domain.models import CategoryId, Kind

UNCATEGORIZED_EXPENSE = CategoryId(1)
UNCATEGORIZED_INCOME = CategoryId(2)


@dataclass(frozen=True)
class Category:
    """Immutable category node."""

    id: CategoryId
    name: str
    kind: Kind
    parent_id: CategoryId | None = None
    deleted: bool = False
    reserved: bool = False


def reserved_categories() -> list[Category]:
    """Build the two reserved uncategorized categories."""
    return [
        Category(id=UNCATEGORIZED_EXPENSE, name="Uncategorized", kind=Kind.EXPENSE, reserved=True),
        Category(id=UNCATEGORIZED_INCOME, name="Uncategorized Income", kind=Kind.INCOME, reserved=True),
    ]


class Descendants(Iterable[Category]):
    """Lazy, restartable depth-first walk below a category.

    Each iteration walks the graph as it is at that moment.
    """

    def __init__(self, graph: "CategoryGraph", root_id: CategoryId) -> None:
        self._graph = graph
        self._root_id = root_id

    def __iter__(self) -> Iterator[Category]:
        nodes = self._graph.nodes
        seen: set[CategoryId] = {self._root_id}
        stack = list(reversed(_children_of(nodes, self._root_id)))
        while stack:
            node = stack.pop()
            if node.id in seen:
                raise InvariantViolationError(f"Category {node.id} reached twice below {self._root_id}")
            seen.add(node.id)
            yield node
            stack.extend(reversed(_children_of(nodes, node.id)))


def _children_of(nodes: Mapping[CategoryId, Category], parent_id: CategoryId) -> list[Category]:
    return sorted(
        (c for c in nodes.values() if c.parent_id == parent_id and not c.deleted),
        key=lambda c: c.id,
    )


class CategoryGraph:
    """Arena of categories with acyclicity and kind invariants."""

    def __init__(self, categories: Iterable[Category] | None = None, next_id: int | None = None) -> None:
        nodes = {c.id: c for c in (reserved_categories() if categories is None else categories)}
        for reserved in reserved_categories():
            nodes.setdefault(reserved.id, reserved)
        self._nodes: dict[CategoryId, Category] = nodes
        self._next_id = next_id if next_id is not None else max(nodes) + 1
        self._version = 0

    @property
    def nodes(self) -> Mapping[CategoryId, Category]:
        """Current arena (never mutated in place)."""
        return self._nodes

    @property
    def next_id(self) -> int:
        return self._next_id

    @property
    def version(self) -> int:
        """Bumped on every mutation of the tree."""
        return self._version

    def _commit(self, nodes: dict[CategoryId, Category]) -> None:
        self._nodes = nodes
        self._version += 1

    def get(self, category_id: CategoryId, include_deleted: bool = False) -> Category:
        """Look up a category.

        Raises:
            UnknownCategoryError: If the id is unknown, or deleted and not requested.
        """
        category = self._nodes.get(category_id)
        if category is None or (category.deleted and not include_deleted):
            raise UnknownCategoryError(f"Unknown category: {category_id}")
        return category

    def list_categories(self, include_deleted: bool = False) -> list[Category]:
        return sorted(
            (c for c in self._nodes.values() if include_deleted or not c.deleted),
            key=lambda c: c.id,
        )

    def children(self, category_id: CategoryId) -> list[Category]:
        return _children_of(self._nodes, category_id)

    def is_leaf(self, category_id: CategoryId) -> bool:
        return not self.children(category_id)

    def uncategorized(self, kind: Kind) -> Category:
        """Reserved fallback category for a kind."""
        return self._nodes[UNCATEGORIZED_EXPENSE if kind is Kind.EXPENSE else UNCATEGORIZED_INCOME]

    def ancestors(self, category_id: CategoryId) -> Iterator[Category]:
        """Walk parent links upwards, nearest first.

        Raises:
            InvariantViolationError: If the walk loops or exceeds the arena size.
        """
        visited: set[CategoryId] = {category_id}
        current = self._nodes[category_id].parent_id
        while current is not None:
            if current in visited or len(visited) > len(self._nodes):
                raise InvariantViolationError(f"Cycle detected above category {category_id}")
            visited.add(current)
            node = self._nodes[current]
            yield node
            current = node.parent_id

    def descendants(self, category_id: CategoryId) -> Descendants:
        self.get(category_id)
        return Descendants(self, category_id)

    def subtree_ids(self, category_id: CategoryId) -> frozenset[CategoryId]:
        """The category itself plus all live descendants."""
        return frozenset([category_id, *(c.id for c in self.descendants(category_id))])

    def resolve(self, hint: str, kind: Kind | None = None) -> Category | None:
        """Resolve a user-supplied category hint by id or case-insensitive name.

        Returns None when nothing (or more than one category) matches.
        """
        hint = hint.strip()
        if not hint:
            return None
        if hint.isdigit():
            category = self._nodes.get(CategoryId(int(hint)))
            if category is not None and not category.deleted and (kind is None or category.kind is kind):
                return category
            return None

        wanted = hint.casefold()
        matches = [
            c
            for c in self._nodes.values()
            if not c.deleted and c.name.casefold() == wanted and (kind is None or c.kind is kind)
        ]
        return matches[0] if len(matches) == 1 else None

    def _check_parent(self, kind: Kind, parent_id: CategoryId | None) -> None:
        if parent_id is None:
            return
        parent = self.get(parent_id)
        if parent.reserved:
            raise ValidationError(f"'{parent.name}' cannot have subcategories")
        if parent.kind is not kind:
            raise KindMismatchError(f"Category kind {kind} does not match parent '{parent.name}' ({parent.kind})")

    def _check_name(self, name: str, parent_id: CategoryId | None, exclude: CategoryId | None = None) -> None:
        if not name.strip():
            raise ValidationError("Category name must not be empty")
        for sibling in self._nodes.values():
            if (
                sibling.id != exclude
                and not sibling.deleted
                and sibling.parent_id == parent_id
                and sibling.name.casefold() == name.strip().casefold()
            ):
                raise ValidationError(f"Category '{name}' already exists here")

    def add_category(self, name: str, kind: Kind, parent_id: CategoryId | None = None) -> Category:
        """Create a new category.

        Raises:
            UnknownCategoryError: Parent is unknown or deleted.
            KindMismatchError: Kind differs from the parent's kind.
            ValidationError: Empty or duplicate name, or reserved parent.
        """
        self._check_parent(kind, parent_id)
        self._check_name(name, parent_id)

        category = Category(id=CategoryId(self._next_id), name=name.strip(), kind=kind, parent_id=parent_id)
        self._commit({**self._nodes, category.id: category})
        self._next_id += 1
        return category

    def reparent(self, category_id: CategoryId, new_parent_id: CategoryId | None) -> Category:
        """Move a category (and its subtree) under a new parent.

        Raises:
            CycleError: New parent is the category itself or one of its descendants.
            KindMismatchError: New parent has a different kind.
        """
        category = self.get(category_id)
        if category.reserved:
            raise ValidationError(f"'{category.name}' cannot be moved")
        if new_parent_id is not None:
            self.get(new_parent_id)
            if new_parent_id == category_id or any(a.id == category_id for a in self.ancestors(new_parent_id)):
                raise CycleError(f"Cannot move category {category_id} below its own descendant {new_parent_id}")
        self._check_parent(category.kind, new_parent_id)
        self._check_name(category.name, new_parent_id, exclude=category_id)

        moved = replace(category, parent_id=new_parent_id)
        self._commit({**self._nodes, category_id: moved})
        return moved

    def rename(self, category_id: CategoryId, name: str) -> Category:
        category = self.get(category_id)
        self._check_name(name, category.parent_id, exclude=category_id)
        renamed = replace(category, name=name.strip())
        self._commit({**self._nodes, category_id: renamed})
        return renamed

    def soft_delete(self, category_id: CategoryId) -> Category:
        """Mark a category deleted and re-attach its children to its parent.

        Returns:
            The reserved category that inherits the deleted category's transactions.
        """
        category = self.get(category_id)
        if category.reserved:
            raise ValidationError(f"'{category.name}' cannot be deleted")

        nodes = dict(self._nodes)
        for child in self.children(category_id):
            nodes[child.id] = replace(child, parent_id=category.parent_id)
        nodes[category_id] = replace(category, deleted=True)
        self._commit(nodes)
        return self.uncategorized(category.kind)
