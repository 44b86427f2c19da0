from typing import Optional

import pandas as pd
import pytest

from muni_finsight.accounts import create_empty_structure
from muni_finsight.tree import FinancialData


def rec(arten: str, value, jahr: str = "2022", funk: str = "0", dim: Optional[str] = None) -> dict:
    """Build one raw record in the current export format."""
    record = {"arten": arten, "funk": funk, "jahr": jahr, "value": value}
    if dim is not None:
        record["dim"] = dim
    return record


class FakeRecordSource:
    """In-memory record source keyed by (source, model, entity_id, year)."""

    def __init__(self, datasets: Optional[dict] = None, errors: Optional[dict] = None):
        self.datasets = dict(datasets or {})
        self.errors = dict(errors or {})
        self.calls: list[tuple[str, str, str, str]] = []

    def fetch(self, entity_id: str, model: str, year: str, source: str):
        key = (source, model, entity_id, str(year))
        self.calls.append(key)
        if key in self.errors:
            raise self.errors[key]
        records = self.datasets.get(key, [])
        if isinstance(records, pd.DataFrame):
            return records.copy()
        return list(records)


@pytest.fixture
def structure() -> FinancialData:
    return create_empty_structure()


@pytest.fixture
def sample_records() -> list[dict]:
    return [
        rec("300", 100),
        rec("300", 50, funk="1"),
        rec("4000", 500),
        rec("100", 1000),
        rec("3999", 7),
    ]
