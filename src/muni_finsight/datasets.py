# Municipal FinSight - Public finance statement browser
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Multi-dataset loading for Municipal FinSight.

Datasets are addressed by identifiers of the form::

    {source}/{model}/{entityId}:{year}      e.g. gdn/fs/010002:2022

:class:`FinancialDataStore` owns the combined FinancialData shown to the
user and applies the loading policy:

- every identifier is parsed before any I/O; one malformed identifier
  fails the whole load;
- datasets are integrated one after the other into a fresh structure;
- the first failing dataset aborts the load: the error becomes
  ``"Dataset <id>: <reason>"``, the combined data is discarded and the
  loaded dataset count is reset to 0;
- each load gets a generation number; a load that was superseded by a
  newer :meth:`FinancialDataStore.load_datasets` call never publishes its
  result;
- the selected scaling (a scaling id, or ``custom:<formula>``) is applied
  to every entity after each successful load.
"""

import logging
import math
from collections.abc import Collection, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .accounts import create_empty_structure
from .errors import IntegrationError, ValidationError
from .integrator import DataIntegrator, IntegrationReport
from .scaling import (
    CUSTOM_SCALING_PREFIX,
    ScalingProvider,
    evaluate_formula,
    formula_from_scaling_id,
    is_custom_scaling,
    validate_formula,
)
from .tree import Entity, FinancialData, make_labels

logger = logging.getLogger(__name__)

SCALING_MODE_DIVIDE = "divide"


@dataclass(frozen=True)
class DatasetId:
    source: str
    model: str
    entity_id: str
    year: str

    @property
    def identifier(self) -> str:
        return f"{self.source}/{self.model}/{self.entity_id}:{self.year}"


def parse_dataset_identifier(dataset: str) -> DatasetId:
    """Split ``source/model/entity:year`` into its parts.

    Raises:
        ValidationError: on a wrong number of segments, or an empty entity
            or year.
    """
    parts = str(dataset).split("/")
    if len(parts) != 3:
        raise ValidationError(f"Invalid dataset identifier format: {dataset}")

    source, model, entity_and_year = parts
    entity_id, _, year = entity_and_year.partition(":")
    if not entity_id or not year:
        raise ValidationError(f"Invalid entity:year format in dataset: {dataset}")

    return DatasetId(source=source, model=model, entity_id=entity_id, year=year)


class FinancialDataStore:
    """Holds the combined financial data of the selected datasets."""

    def __init__(
        self,
        integrator: DataIntegrator,
        scaling_provider: Optional[ScalingProvider] = None,
        scaling_labels: Optional[Mapping[str, dict[str, str]]] = None,
        scaling_variables: Optional[Collection[str]] = None,
        codes_dir: Optional[Union[str, Path]] = None,
    ):
        self.integrator = integrator
        self.scaling_provider = scaling_provider
        self.scaling_labels = dict(scaling_labels or {})
        self.scaling_variables = scaling_variables
        self.codes_dir = codes_dir

        self.combined_financial_data: Optional[FinancialData] = None
        self.datasets: list[str] = []
        self.loading = False
        self.error: Optional[str] = None
        self.loaded_dataset_count = 0
        self.current_scaling_id: Optional[str] = None
        self.reports: list[IntegrationReport] = []

        self._generation = 0
        self._scaling_cache: dict[str, Optional[float]] = {}

    @property
    def has_valid_data(self) -> bool:
        return self.combined_financial_data is not None and self.loaded_dataset_count > 0

    def set_datasets(self, datasets: Iterable[str]) -> None:
        self.datasets = list(datasets)

    def clear_data(self) -> None:
        self.combined_financial_data = None
        self.loaded_dataset_count = 0
        self.error = None
        self.current_scaling_id = None
        self.reports = []
        self._scaling_cache.clear()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_datasets(self) -> bool:
        """Load every selected dataset; return True when data was published."""
        if not self.datasets:
            self.clear_data()
            return False

        self._generation += 1
        generation = self._generation
        self.loading = True
        self.error = None
        self.loaded_dataset_count = 0

        try:
            return self._load(generation)
        finally:
            if generation == self._generation:
                self.loading = False

    def _load(self, generation: int) -> bool:
        try:
            parsed = [parse_dataset_identifier(ds) for ds in self.datasets]
        except ValidationError as exc:
            return self._fail(generation, str(exc))

        structure = create_empty_structure(self.codes_dir)
        reports: list[IntegrationReport] = []

        for ds in parsed:
            try:
                reports.append(
                    self.integrator.load_and_integrate_financial_data(
                        ds.entity_id, ds.model, ds.year, structure, ds.source
                    )
                )
            except IntegrationError as exc:
                return self._fail(generation, f"Dataset {ds.identifier}: {exc.reason}")
            except ValidationError as exc:
                return self._fail(generation, f"Dataset {ds.identifier}: {exc}")

        if generation != self._generation:
            logger.warning(
                "Discarding result of superseded load #%d (current load is #%d)",
                generation,
                self._generation,
            )
            return False

        self.combined_financial_data = structure
        self.loaded_dataset_count = len(parsed)
        self.reports = reports
        logger.info("Loaded %d dataset(s)", len(parsed))

        if self.current_scaling_id:
            self._apply_scaling(self.current_scaling_id)

        return True

    def _fail(self, generation: int, message: str) -> bool:
        if generation != self._generation:
            logger.warning("Ignoring failure of superseded load #%d: %s", generation, message)
            return False

        logger.error(message)
        self.error = message
        self.combined_financial_data = None
        self.loaded_dataset_count = 0
        self.reports = []
        return False

    # ------------------------------------------------------------------
    # Scaling
    # ------------------------------------------------------------------

    def set_scaling(self, scaling_id: Optional[str]) -> None:
        """Select a scaling (None to remove it) and apply it to all entities."""
        if scaling_id == self.current_scaling_id:
            return

        self.current_scaling_id = scaling_id
        if self.combined_financial_data is None:
            return

        if not scaling_id:
            for entity in self.combined_financial_data.entities.values():
                entity.clear_scaling()
            return

        self._apply_scaling(scaling_id)

    def apply_custom_scaling(self, formula: str) -> bool:
        """Scale every entity by ``formula`` evaluated with its own variables.

        Entities for which the formula cannot be evaluated, or evaluates to a
        non-positive number, lose their scaling.
        """
        validation = validate_formula(formula, self.scaling_variables)
        if not validation.is_valid:
            self.error = f"Invalid custom formula: {validation.error}"
            return False

        self.current_scaling_id = CUSTOM_SCALING_PREFIX + formula
        if self.combined_financial_data is None:
            return True

        info = make_labels(
            f"Benutzerdefinierte Formel: {formula}",
            f"Formule personnalisée: {formula}",
            f"Formula personalizzata: {formula}",
            f"Custom formula: {formula}",
        )
        for entity in self.combined_financial_data.entities.values():
            variables = {}
            for name in validation.variables:
                factor = self._scaling_factor(name, entity)
                if factor is not None:
                    variables[name] = factor
            try:
                result: Optional[float] = evaluate_formula(formula, variables)
            except ValueError as exc:
                logger.info("Custom scaling not applicable to %s: %s", entity.code, exc)
                result = None
            self._set_entity_scaling(entity, result, info)

        return True

    def entity_scaling_variables(
        self, factor_ids: Optional[Iterable[str]] = None
    ) -> dict[str, dict[str, float]]:
        """Return entity key -> {factor id -> value} for the loaded entities.

        ``factor_ids`` defaults to the known scaling variables. Entities
        without any factor value are left out.
        """
        if self.combined_financial_data is None:
            return {}
        ids = list(factor_ids if factor_ids is not None else self.scaling_variables or [])

        out: dict[str, dict[str, float]] = {}
        for key, entity in self.combined_financial_data.entities.items():
            factors = {}
            for factor_id in ids:
                value = self._scaling_factor(factor_id, entity)
                if value is not None and math.isfinite(value):
                    factors[factor_id] = value
            if factors:
                out[key] = factors
        return out

    def _apply_scaling(self, scaling_id: str) -> None:
        if is_custom_scaling(scaling_id):
            self.apply_custom_scaling(formula_from_scaling_id(scaling_id))
            return

        if self.scaling_provider is None:
            self.error = "Invalid scaling selection"
            return

        info = self.scaling_labels.get(scaling_id) or make_labels(scaling_id)
        for entity in self.combined_financial_data.entities.values():
            self._set_entity_scaling(entity, self._scaling_factor(scaling_id, entity), info)

    @staticmethod
    def _set_entity_scaling(
        entity: Entity, factor: Optional[float], info: dict[str, str]
    ) -> None:
        if factor is not None and factor > 0:
            entity.scaling_factor = factor
            entity.scaling_info = dict(info)
            entity.scaling_mode = SCALING_MODE_DIVIDE
        else:
            entity.clear_scaling()

    def _scaling_factor(self, scaling_id: str, entity: Entity) -> Optional[float]:
        if self.scaling_provider is None:
            return None

        ds = parse_dataset_identifier(entity.code)
        cache_key = f"{scaling_id}:{ds.entity_id}:{ds.year}:{ds.source}"
        if cache_key in self._scaling_cache:
            return self._scaling_cache[cache_key]

        try:
            factor = self.scaling_provider(scaling_id, ds.source, ds.entity_id, ds.year)
        except Exception:  # noqa: BLE001
            # One entity without a factor must not prevent scaling the others.
            logger.exception("Error loading scaling factor %s for %s", scaling_id, entity.code)
            factor = None

        self._scaling_cache[cache_key] = factor
        return factor
