# Municipal FinSight - Public finance statement browser
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Chart of accounts for Municipal FinSight.

The harmonized chart of accounts (HRM2) is shipped as three CSV files in
``muni_finsight/data/codes``:

- bilanz.csv   balance sheet accounts (1 assets, 2 liabilities and equity)
- aufwand.csv  expense accounts (3)
- ertrag.csv   revenue accounts (4)

Each file has the columns ``arten`` (account code) and ``d``, ``f``, ``i``,
``e`` (German, French, Italian and English labels).

Responsibilities:
- Load a chart-of-accounts CSV into a normalized DataFrame.
- Resolve the parent of every code as its longest known prefix
  (``3600`` -> ``360`` -> ``36`` -> ``3``); codes without a known prefix
  hang directly under the synthetic root.
- Build the two empty account trees wrapped in a fresh FinancialData
  (:func:`create_empty_structure`).
"""

from collections.abc import Collection
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

import pandas as pd

from .tree import (
    ROOT_CODE,
    AccountNode,
    DatasetMetadata,
    FinancialData,
    make_labels,
)

DEFAULT_CODES_DIR = Path(__file__).resolve().parent / "data" / "codes"

BALANCE_FILES = ("bilanz.csv",)
INCOME_FILES = ("aufwand.csv", "ertrag.csv")

# Column of the CSV -> language key of AccountNode.labels
LABEL_COLUMNS = {"d": "de", "f": "fr", "i": "it", "e": "en"}

INCOME_ROOT_LABELS = make_labels(
    "Erfolgsrechnung", "Compte de résultats", "Conto economico", "Income Statement"
)
BALANCE_ROOT_LABELS = make_labels("Bilanz", "Bilan", "Bilancio", "Balance Sheet")


def load_chart_of_accounts(path: Union[str, Path]) -> pd.DataFrame:
    """Load one chart-of-accounts CSV.

    Expected structure
    ------------------
    Column ``arten`` (or ``code``) with the account code, plus any of the
    label columns ``d``, ``f``, ``i``, ``e``. Column names are matched
    case-insensitively and trimmed. Missing labels fall back to German.

    Returns:
        A DataFrame with columns ``code``, ``de``, ``fr``, ``it``, ``en``,
        sorted by code length then lexically, duplicates removed.

    Raises:
        ValueError: if no account code column can be found.
    """
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    col_map = {str(c).strip().lower(): c for c in df.columns}

    code_col = None
    for cand in ("arten", "code", "konto"):
        if cand in col_map:
            code_col = col_map[cand]
            break
    if code_col is None:
        raise ValueError(
            f"Could not find an account code column in {path}. "
            "Expected one of: 'arten', 'code', 'konto'."
        )

    out = pd.DataFrame({"code": df[code_col].astype(str).str.strip()})
    for col, lang in LABEL_COLUMNS.items():
        if col in col_map:
            out[lang] = df[col_map[col]].astype(str).str.strip()
        else:
            out[lang] = ""

    # German is the authoritative label.
    for lang in ("fr", "it", "en"):
        out[lang] = out[lang].where(out[lang] != "", out["de"])

    out = out[out["code"] != ""].drop_duplicates(subset="code", keep="first")
    out = out.assign(_len=out["code"].str.len())
    out = out.sort_values(["_len", "code"], kind="stable").drop(columns="_len")
    return out.reset_index(drop=True)


def _resolve_parent(code: str, known_codes: Collection[str]) -> Optional[str]:
    """Return the longest known strict prefix of ``code``, or None.

    - '3600' -> '360' if that code exists
    - '3601' -> '36'  if '360' is missing but '36' exists
    - '9'    -> None  (attached to the root)
    """
    for i in range(len(code) - 1, 0, -1):
        prefix = code[:i]
        if prefix in known_codes:
            return prefix
    return None


def build_tree(chart: pd.DataFrame, root_labels: dict[str, str]) -> AccountNode:
    """Build an AccountNode tree from a chart DataFrame.

    Rows must be ordered so that every parent precedes its children, which
    :func:`load_chart_of_accounts` guarantees by sorting on code length.
    """
    root = AccountNode(code=ROOT_CODE, labels=dict(root_labels))
    nodes: dict[str, AccountNode] = {}

    for row in chart.itertuples(index=False):
        code = str(row.code)
        node = AccountNode(
            code=code,
            labels={"de": row.de, "fr": row.fr, "it": row.it, "en": row.en},
        )
        parent_code = _resolve_parent(code, nodes.keys())
        parent = nodes[parent_code] if parent_code is not None else root
        parent.children.append(node)
        nodes[code] = node

    return root


def _load_charts(codes_dir: Path, filenames: tuple[str, ...]) -> pd.DataFrame:
    frames = [load_chart_of_accounts(codes_dir / name) for name in filenames]
    chart = pd.concat(frames, ignore_index=True)
    chart = chart.drop_duplicates(subset="code", keep="first")
    chart = chart.assign(_len=chart["code"].str.len())
    chart = chart.sort_values(["_len", "code"], kind="stable").drop(columns="_len")
    return chart.reset_index(drop=True)


def create_empty_structure(
    codes_dir: Optional[Union[str, Path]] = None,
) -> FinancialData:
    """Return a fresh FinancialData with both trees and no values.

    Every call reads the chart again and returns independent trees, so a
    load cycle can mutate its structure without affecting any other.

    Args:
        codes_dir: Directory holding bilanz.csv, aufwand.csv and ertrag.csv.
            Defaults to the chart shipped with the package.
    """
    base = Path(codes_dir) if codes_dir is not None else DEFAULT_CODES_DIR

    balance = build_tree(_load_charts(base, BALANCE_FILES), BALANCE_ROOT_LABELS)
    income = build_tree(_load_charts(base, INCOME_FILES), INCOME_ROOT_LABELS)

    return FinancialData(
        balance_sheet=balance,
        income_statement=income,
        metadata=DatasetMetadata(
            source="",
            loaded_at=datetime.now().isoformat(),
            record_count=0,
        ),
    )
