# Municipal FinSight - Public finance statement browser
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
View utilities for Municipal FinSight.

This module flattens an account tree into a pandas DataFrame for display
or CSV export, with one value column per entity, and provides the views
of detail used by the CLI:

- simplified: levels 0-1 (statement total and main groups),
- regular:    levels 0-2,
- complete:   every account of the chart.

Level 0 is the statement root (e.g. "Erfolgsrechnung"), level 1 the
top-level accounts ("3", "4"), level 2 their children ("30", "31", ...).

Values are computed on read with :func:`muni_finsight.tree.aggregate_value`
and divided by the entity's scaling factor when one is set.
"""

from typing import Optional

import pandas as pd

from .formatting import UnitScalingFormatter
from .tree import (
    AccountNode,
    FinancialData,
    aggregate_value,
    iter_with_depth,
    pick_label,
    scaled_value,
)

BASE_COLUMNS = ["display_order", "level", "code", "name"]


def entity_columns(df: pd.DataFrame) -> list[str]:
    """Return the value columns of a view (everything but the base columns)."""
    return [c for c in df.columns if c not in BASE_COLUMNS]


def entity_labels(data: FinancialData, language: str = "de") -> dict[str, str]:
    """Map entity keys to display headers such as ``Zürich 2022``."""
    labels: dict[str, str] = {}
    for key, entity in data.entities.items():
        name = pick_label(entity.name, language) or key
        labels[key] = f"{name} {entity.year}"
    return labels


def tree_to_frame(
    tree: AccountNode,
    data: FinancialData,
    language: str = "de",
    scaled: bool = True,
    hide_empty: bool = True,
) -> pd.DataFrame:
    """Flatten ``tree`` into one row per node, depth-first.

    Columns: display_order, level, code, name, then one column per entity
    key holding the aggregated value (NaN when the entity reported nothing
    under that node).

    Args:
        tree: Root of the balance sheet or income statement.
        data: Structure holding the entities.
        language: Label language (de, fr, it, en), German as fallback.
        scaled: Divide by each entity's scaling factor when set.
        hide_empty: Drop rows without a value for any entity.
    """
    keys = list(data.entities)
    rows: list[dict[str, object]] = []

    for node, depth in iter_with_depth(tree):
        row: dict[str, object] = {
            "level": depth,
            "code": "" if node.is_synthetic else node.code,
            "name": node.label(language),
        }
        has_value = False
        for key in keys:
            value = aggregate_value(node, key)
            if scaled:
                value = scaled_value(value, data.entities[key])
            has_value = has_value or value is not None
            row[key] = float("nan") if value is None else value
        if hide_empty and keys and not has_value:
            continue
        rows.append(row)

    df = pd.DataFrame(rows, columns=["level", "code", "name", *keys])
    return _finalize_view(df)


def apply_view_level_filter(df: pd.DataFrame, view: str) -> pd.DataFrame:
    """Keep the rows of ``view`` and renumber display_order.

    - "simplified": level <= 1,
    - "regular":    level <= 2,
    - any other value: all rows.
    """
    if view == "simplified":
        out = df[df["level"] <= 1]
    elif view == "regular":
        out = df[df["level"] <= 2]
    else:
        out = df
    return _finalize_view(out)


def format_frame(
    df: pd.DataFrame,
    formatter: UnitScalingFormatter,
    locale: str = "en",
    currency: Optional[str] = None,
) -> pd.DataFrame:
    """Render value columns as strings with unit scaling.

    Missing values become empty strings.
    """
    out = df.copy()
    for col in entity_columns(out):
        out[col] = [
            ""
            if pd.isna(v)
            else (
                formatter.format_currency(v, locale, currency).formatted
                if currency
                else formatter.format(v, locale).formatted
            )
            for v in out[col]
        ]
    return out


def _finalize_view(df: pd.DataFrame) -> pd.DataFrame:
    """Renumber display_order to 10, 20, 30, ... and order columns.

    Rows are assumed to be in display order already.
    """
    df = df.drop(columns=["display_order"], errors="ignore").reset_index(drop=True)
    df.insert(0, "display_order", [10 + i * 10 for i in range(len(df))])
    return df[BASE_COLUMNS + entity_columns(df)]
