# Municipal FinSight - Public finance statement browser
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Data integrator for Municipal FinSight.

This module merges one (source, model, entity, year) dataset into an
existing FinancialData structure created by
:func:`muni_finsight.accounts.create_empty_structure`.

Pipeline for one dataset
------------------------
1. Validate the request (non-empty entity and model, known source,
   year >= 2015) and, when a catalog is available, check that the dataset
   is published.
2. Fetch raw records from the record source and normalize them.
3. Drop records without ``arten``/``jahr``/``value``, records older than
   2015 and records whose account code maps to no statement.
4. Apply the optional account code filter.
5. Sum records sharing an account code (different functional codes) and
   write one value per code on the matching node of the balance sheet
   (dimension ``bilanz``) or of the income statement (anything else).
6. Register the Entity and update the structure's metadata.

Codes that do not exist in the tree are listed in ``unused_codes``; they
are never added to the tree. Integrating the same dataset twice replaces
its values instead of duplicating them.

Entity keys have the form ``{source}/{model}/{entityId}:{year}``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

import pandas as pd

from .catalog import EntityCatalog
from .errors import IntegrationError, ValidationError
from .filters import AccountCodeFilter, FilterConfig, FilterResult, FilterStats
from .io import REQUIRED_FIELDS, normalize_records
from .tree import (
    AccountNode,
    AccountValue,
    DatasetMetadata,
    Entity,
    FinancialData,
    clear_values,
    entity_key,
    iter_nodes,
    make_labels,
)

logger = logging.getLogger(__name__)

MIN_YEAR = 2015
SOURCES = ("gdn", "std")


class RecordSource(Protocol):
    """Anything able to fetch the raw records of one dataset."""

    def fetch(
        self, entity_id: str, model: str, year: str, source: str
    ) -> Any:  # DataFrame or iterable of mappings
        ...


@dataclass(frozen=True)
class IntegrationReport:
    """Diagnostics for one integrated dataset."""

    dataset: str
    records_read: int
    records_kept: int
    dropped_records: int
    matched_codes: tuple[str, ...]
    unmatched_codes: tuple[str, ...]
    filter_result: Optional[FilterResult] = None


def parse_year(year: Any) -> int:
    """Parse and check a dataset year.

    Raises:
        ValidationError: if the year is not an integer or is before 2015.
    """
    try:
        value = int(str(year).strip())
    except ValueError as exc:
        raise ValidationError(f"Invalid year '{year}', expected an integer.") from exc
    if value < MIN_YEAR:
        raise ValidationError(
            f"Year {value} is not supported, data is available from {MIN_YEAR}."
        )
    return value


def _index_tree(tree: AccountNode) -> dict[str, AccountNode]:
    return {node.code: node for node in iter_nodes(tree) if not node.is_synthetic}


def _append_unique(target: list[str], codes: list[str]) -> None:
    seen = set(target)
    for code in codes:
        if code not in seen:
            target.append(code)
            seen.add(code)


class DataIntegrator:
    """Integrates datasets into a FinancialData structure, one at a time."""

    def __init__(
        self,
        record_source: RecordSource,
        catalog: Optional[EntityCatalog] = None,
        filter_config: Optional[FilterConfig] = None,
    ):
        self.record_source = record_source
        self.catalog = catalog
        self.account_filter = AccountCodeFilter(filter_config)
        self.last_report: Optional[IntegrationReport] = None

    def update_filter_config(self, config: FilterConfig) -> None:
        self.account_filter.set_config(config)

    def get_filter_stats(self) -> FilterStats:
        return self.account_filter.get_filter_stats()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load_and_integrate_financial_data(
        self,
        entity_id: str,
        model: str,
        year: Any,
        target: FinancialData,
        source: str,
    ) -> IntegrationReport:
        """Load one dataset and merge it into ``target`` in place.

        Args:
            entity_id: Municipality number (gdn) or unit code (std).
            model: Accounting model, e.g. "fs".
            year: Fiscal year, integer >= 2015 (str or int).
            target: Structure to update.
            source: "gdn" or "std".

        Returns:
            An IntegrationReport describing what was kept and matched.

        Raises:
            ValidationError: on malformed arguments, before any I/O.
            IntegrationError: when the dataset is unavailable, cannot be
                fetched, or has no usable record.
        """
        entity_id = str(entity_id or "").strip()
        model = str(model or "").strip()
        if not entity_id:
            raise ValidationError("Entity id must not be empty.")
        if not model:
            raise ValidationError("Model must not be empty.")
        if source not in SOURCES:
            raise ValidationError(
                f"Invalid source '{source}'. Expected one of: {', '.join(SOURCES)}."
            )
        year_str = str(parse_year(year))
        key = entity_key(source, model, entity_id, year_str)

        if self.catalog is not None:
            message = self.catalog.validate(source, entity_id, model, year_str)
            if message:
                raise IntegrationError(key, message)

        try:
            raw = self.record_source.fetch(entity_id, model, year_str, source)
            records = normalize_records(raw)
        except Exception as exc:  # noqa: BLE001
            raise IntegrationError(key, str(exc)) from exc

        complete = records[list(REQUIRED_FIELDS)].notna().all(axis=1)
        if records.empty or not complete.any():
            raise IntegrationError(
                key,
                "No record with the required fields "
                f"({', '.join(REQUIRED_FIELDS)})",
            )

        kept, dropped = self._drop_unusable(records[complete])
        dropped += int((~complete).sum())

        filtered, filter_result = self.account_filter.filter_records(kept)

        matched, unmatched = self._write_values(target, filtered, key)

        self._register_entity(target, entity_id, model, year_str, source, len(records))
        _append_unique(target.used_codes, matched)
        _append_unique(target.unused_codes, unmatched)

        report = IntegrationReport(
            dataset=key,
            records_read=len(records),
            records_kept=len(filtered),
            dropped_records=dropped,
            matched_codes=tuple(matched),
            unmatched_codes=tuple(unmatched),
            filter_result=filter_result,
        )
        self.last_report = report

        logger.info(
            "Integrated %s: %d records read, %d kept, %d codes matched, %d unmatched",
            key,
            report.records_read,
            report.records_kept,
            len(matched),
            len(unmatched),
        )
        if unmatched:
            logger.debug("Codes not in chart of accounts for %s: %s", key, unmatched)

        return report

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    @staticmethod
    def _drop_unusable(records: pd.DataFrame) -> tuple[pd.DataFrame, int]:
        """Drop records before 2015 and records that map to no statement."""
        years = pd.to_numeric(records["jahr"], errors="coerce")
        usable = (years >= MIN_YEAR) & records["dim"].notna()
        return records[usable].copy(), int((~usable).sum())

    @staticmethod
    def _write_values(
        target: FinancialData, records: pd.DataFrame, key: str
    ) -> tuple[list[str], list[str]]:
        balance_index = _index_tree(target.balance_sheet)
        income_index = _index_tree(target.income_statement)

        # Re-integration replaces the previous values of this entity.
        clear_values(target.balance_sheet, key)
        clear_values(target.income_statement, key)

        if records.empty:
            return [], []

        d = records.copy()
        d["amount"] = pd.to_numeric(d["value"], errors="coerce").fillna(0.0)
        d["statement"] = d["dim"].map(
            lambda dim: "balance" if dim == "bilanz" else "income"
        )

        matched: list[str] = []
        unmatched: list[str] = []
        grouped = d.groupby(["statement", "arten"], sort=False)
        for (statement, code), group in grouped:
            index = balance_index if statement == "balance" else income_index
            node = index.get(code)
            if node is None:
                unmatched.append(code)
                continue
            node.values[key] = AccountValue(
                value=float(group["amount"].sum()),
                unit=str(group["unit"].iloc[0]),
            )
            matched.append(code)

        return matched, unmatched

    def _register_entity(
        self,
        target: FinancialData,
        entity_id: str,
        model: str,
        year: str,
        source: str,
        record_count: int,
    ) -> None:
        key = entity_key(source, model, entity_id, year)
        metadata = DatasetMetadata(
            source=f"{source.upper()}/{model}/{entity_id}/{year}",
            loaded_at=datetime.now().isoformat(),
            record_count=record_count,
        )

        entity = target.entities.get(key)
        if entity is None:
            if self.catalog is not None:
                name = self.catalog.display_name(source, entity_id)
                description = self.catalog.description(source, entity_id)
            else:
                name = make_labels(entity_id)
                description = {}
            target.entities[key] = Entity(
                code=key,
                name=name,
                year=year,
                model=model,
                source=source,
                description=description,
                metadata=metadata,
            )
        else:
            entity.metadata = metadata

        previous = target.metadata
        target.metadata = DatasetMetadata(
            source=f"{metadata.source} + {previous.source}"
            if previous.source
            else metadata.source,
            loaded_at=metadata.loaded_at,
            record_count=previous.record_count + record_count,
        )
