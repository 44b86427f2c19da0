# Municipal FinSight - Public finance statement browser
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
I/O module for Municipal FinSight.

This module reads raw financial records published for one entity, one
accounting model and one year, and normalizes them into a single shape
consumed by the integrator.

Expected input formats
----------------------

Two historical formats are supported (column names are case-insensitive):

1) Current export format
   ---------------------
       arten, funk, jahr, value, dim, unit

   - ``arten``: account code by nature (e.g. 3600)
   - ``funk``:  functional classification code
   - ``jahr``:  fiscal year
   - ``value``: reported amount
   - ``dim``:   bilanz | aufwand | ertrag
   - ``unit``:  currency (CHF when absent)

2) Legacy format
   -------------
       konto, funktion, jahr, betrag

   ``konto``, ``funktion`` and ``betrag`` are renamed to ``arten``, ``funk``
   and ``value``.

Output schema
-------------
Regardless of the input format, records are returned as a DataFrame with
the columns ``arten``, ``funk``, ``jahr``, ``value``, ``dim``, ``unit``,
all as strings. Missing required fields are kept as None so that the
integrator can decide what to drop; missing dimensions are inferred from
the first digit of the account code.

Files on disk are laid out as::

    <root>/<source>/<model>/<entityId>/<year>.csv
"""

import os
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Optional, Union

import pandas as pd

RAW_COLUMNS = ["arten", "funk", "jahr", "value", "dim", "unit"]
REQUIRED_FIELDS = ("arten", "jahr", "value")

COLUMN_ALIASES = {
    "konto": "arten",
    "funktion": "funk",
    "betrag": "value",
    "year": "jahr",
    "einheit": "unit",
}

DIMENSIONS = ("bilanz", "aufwand", "ertrag")
DEFAULT_UNIT = "CHF"

# First digit of an account code -> dimension
_DIMENSION_BY_DIGIT = {
    "1": "bilanz",
    "2": "bilanz",
    "3": "aufwand",
    "4": "ertrag",
}


def infer_dimension(code: Optional[str]) -> Optional[str]:
    """Return the dimension of an account code from its first digit.

    Returns None for codes that belong to no statement (e.g. investment
    accounts 5/6 or closing accounts 9).
    """
    if not code:
        return None
    return _DIMENSION_BY_DIGIT.get(str(code).strip()[:1])


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    text = str(value).strip()
    return text or None


def normalize_records(
    records: Union[pd.DataFrame, Iterable[Mapping[str, Any]]],
) -> pd.DataFrame:
    """Normalize raw records to the ``RAW_COLUMNS`` schema.

    Args:
        records: DataFrame or iterable of mappings using either supported
            column set.

    Returns:
        A new DataFrame with exactly the columns of ``RAW_COLUMNS``.
    """
    if isinstance(records, pd.DataFrame):
        df = records.copy()
    else:
        df = pd.DataFrame(list(records))

    df.columns = [str(c).lower().strip() for c in df.columns]
    renames = {
        alias: target
        for alias, target in COLUMN_ALIASES.items()
        if alias in df.columns and target not in df.columns
    }
    df = df.rename(columns=renames)

    columns: dict[str, list[Optional[str]]] = {}
    for col in RAW_COLUMNS:
        if col in df.columns:
            columns[col] = [_clean(v) for v in df[col]]
        else:
            columns[col] = [None] * len(df)

    columns["dim"] = [
        d.lower()
        if isinstance(d, str) and d.lower() in DIMENSIONS
        else infer_dimension(code)
        for d, code in zip(columns["dim"], columns["arten"])
    ]
    columns["unit"] = [u if isinstance(u, str) else DEFAULT_UNIT for u in columns["unit"]]

    # object dtype keeps missing cells as None on every pandas version
    return pd.DataFrame(
        {col: pd.Series(columns[col], dtype=object) for col in RAW_COLUMNS}
    )


def read_raw_records(path: Union[str, "os.PathLike[str]"]) -> pd.DataFrame:
    """Read one dataset CSV and normalize it.

    Raises:
        FileNotFoundError: if the file does not exist.
        ValueError: if the file cannot be parsed as CSV.
    """
    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(f"Data file not found: {p}")

    try:
        df = pd.read_csv(p, dtype=str, keep_default_na=False)
    except Exception as exc:  # noqa: BLE001
        raise ValueError(f"Failed to parse CSV data file: {p}") from exc

    return normalize_records(df)


class CsvRecordSource:
    """Raw-record source reading CSV files from a local directory tree."""

    def __init__(self, root: Union[str, "os.PathLike[str]"]):
        self.root = Path(root)

    def path_for(self, entity_id: str, model: str, year: str, source: str) -> Path:
        return self.root / source / model / entity_id / f"{year}.csv"

    def fetch(
        self, entity_id: str, model: str, year: str, source: str
    ) -> pd.DataFrame:
        return read_raw_records(self.path_for(entity_id, model, year, source))
