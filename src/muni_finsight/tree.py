# Municipal FinSight - Public finance statement browser
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Account tree model for Municipal FinSight.

This module defines the in-memory structures that hold the harmonized
chart of accounts (HRM2) and the values reported by each entity:

- AccountNode:   one account code with its four-language labels, its
                 per-entity values and its ordered children.
- Entity:        one reporting government unit for one year and model.
- FinancialData: the two account trees (balance sheet, income statement)
                 plus the registered entities and load diagnostics.

Invariants
----------
- Codes are unique within one tree.
- A node's ``values`` only ever hold values reported for that exact code.
  Totals of sub-trees are computed on read by :func:`aggregate_value` and
  never stored.
- Synthetic nodes (``root``) exist for hierarchy only and never receive
  values during integration.

The skeleton of both trees is created by
:func:`muni_finsight.accounts.create_empty_structure`.
"""

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Optional

LANGUAGES: tuple[str, ...] = ("de", "fr", "it", "en")
DEFAULT_LANGUAGE = "de"

ROOT_CODE = "root"

# Children whose totals are subtracted when aggregating a parent
# (liabilities under the balance sheet, expenses under the income statement).
NEGATED_CODES: frozenset[str] = frozenset({"2", "3"})


def make_labels(
    de: str, fr: str = "", it: str = "", en: str = ""
) -> dict[str, str]:
    """Build a four-language label map, German being the fallback."""
    return {"de": de, "fr": fr or de, "it": it or de, "en": en or de}


def pick_label(labels: dict[str, str], language: str) -> str:
    """Return the label for ``language``, falling back to German."""
    lang = (language or DEFAULT_LANGUAGE).split("-")[0].split("_")[0].lower()
    return labels.get(lang) or labels.get(DEFAULT_LANGUAGE, "")


@dataclass
class AccountValue:
    """A reported amount for one entity on one account node."""

    value: float
    unit: str = "CHF"


@dataclass
class AccountNode:
    """
    One node of a chart-of-accounts tree.

    Attributes:
        code: Account code ("3", "36", "3600") or "root" for the synthetic top.
        labels: Mapping language -> label (de, fr, it, en).
        values: Mapping entity key -> AccountValue, one entry per entity
            that reported this exact code.
        children: Sub-accounts in chart-of-accounts order.
    """

    code: str
    labels: dict[str, str] = field(default_factory=dict)
    values: dict[str, AccountValue] = field(default_factory=dict)
    children: list["AccountNode"] = field(default_factory=list, repr=False)

    @property
    def is_synthetic(self) -> bool:
        return self.code == ROOT_CODE

    @property
    def is_leaf(self) -> bool:
        return not self.children

    def label(self, language: str = DEFAULT_LANGUAGE) -> str:
        return pick_label(self.labels, language)


@dataclass
class DatasetMetadata:
    """Provenance of a loaded dataset (or of the whole structure)."""

    source: str
    loaded_at: str
    record_count: int = 0


@dataclass
class Entity:
    """
    A reporting government unit for one year and one accounting model.

    ``code`` is the composite entity key ``{source}/{model}/{entityId}:{year}``
    used to index ``AccountNode.values``.
    """

    code: str
    name: dict[str, str]
    year: str
    model: str = ""
    source: str = ""
    description: dict[str, str] = field(default_factory=dict)
    metadata: Optional[DatasetMetadata] = None
    scaling_factor: Optional[float] = None
    scaling_info: Optional[dict[str, str]] = None
    scaling_mode: Optional[str] = None

    def clear_scaling(self) -> None:
        self.scaling_factor = None
        self.scaling_info = None
        self.scaling_mode = None


@dataclass
class FinancialData:
    """Both account trees with the entities integrated into them."""

    balance_sheet: AccountNode
    income_statement: AccountNode
    entities: dict[str, Entity] = field(default_factory=dict)
    used_codes: list[str] = field(default_factory=list)
    unused_codes: list[str] = field(default_factory=list)
    metadata: DatasetMetadata = field(
        default_factory=lambda: DatasetMetadata(source="", loaded_at="")
    )

    def trees(self) -> tuple[AccountNode, AccountNode]:
        """Return (income statement, balance sheet), in lookup order."""
        return self.income_statement, self.balance_sheet


def entity_key(source: str, model: str, entity_id: str, year: object) -> str:
    """Compose the entity key ``{source}/{model}/{entityId}:{year}``."""
    return f"{source}/{model}/{entity_id}:{year}"


# ---------------------------------------------------------------------------
# Tree traversal
# ---------------------------------------------------------------------------


def iter_nodes(tree: AccountNode) -> Iterator[AccountNode]:
    """Yield every node of ``tree`` depth-first, parents before children."""
    stack = [tree]
    while stack:
        node = stack.pop()
        yield node
        # Reverse so that children come out in chart-of-accounts order.
        stack.extend(reversed(node.children))


def iter_with_depth(
    tree: AccountNode, depth: int = 0
) -> Iterator[tuple[AccountNode, int]]:
    """Yield (node, depth) pairs depth-first, the root having depth 0."""
    yield tree, depth
    for child in tree.children:
        yield from iter_with_depth(child, depth + 1)


def find_node_by_code(tree: AccountNode, code: str) -> Optional[AccountNode]:
    """Return the first node whose code equals ``code`` (depth-first), or None."""
    for node in iter_nodes(tree):
        if node.code == code:
            return node
    return None


def collect_codes(tree: AccountNode) -> list[str]:
    """Return all non-synthetic codes of ``tree`` in display order."""
    return [n.code for n in iter_nodes(tree) if not n.is_synthetic]


def count_nodes(tree: AccountNode) -> int:
    return sum(1 for _ in iter_nodes(tree))


def max_depth(tree: AccountNode) -> int:
    return max(depth for _, depth in iter_with_depth(tree))


# ---------------------------------------------------------------------------
# Read-side aggregation
# ---------------------------------------------------------------------------


def aggregate_value(node: AccountNode, key: str) -> Optional[float]:
    """Compute the displayed value of ``node`` for entity ``key``.

    The value is the node's own reported value plus the sum of its
    children's aggregates, subtracting children coded "2" (liabilities)
    or "3" (expenses). Returns None when nothing at or below the node was
    reported for this entity.

    The tree is not modified.
    """
    own = node.values.get(key)
    found = own is not None
    total = own.value if own is not None else 0.0

    for child in node.children:
        child_value = aggregate_value(child, key)
        if child_value is None:
            continue
        found = True
        total += -child_value if child.code in NEGATED_CODES else child_value
    return total if found else None


def scaled_value(value: Optional[float], entity: Optional[Entity]) -> Optional[float]:
    """Apply an entity's scaling (per-capita, per-unit) to a value."""
    if value is None or entity is None:
        return value
    if entity.scaling_mode == "divide" and entity.scaling_factor:
        return value / entity.scaling_factor
    return value


def clear_values(tree: AccountNode, key: Optional[str] = None) -> None:
    """Remove the values of one entity (or of all entities) from a tree."""
    for node in iter_nodes(tree):
        if key is None:
            node.values.clear()
        else:
            node.values.pop(key, None)
