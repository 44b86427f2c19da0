# Municipal FinSight - Public finance statement browser
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Account value extraction and dispersion analysis for Municipal FinSight.

Read-only queries over an integrated FinancialData:

- :func:`extract_account_values` collects, for a list of account codes, the
  value of every registered entity (income statement searched first, then
  the balance sheet). Entities without a value for a code are absent from
  the result, never zero-filled.
- :func:`calculate_variance` / :func:`calculate_coefficient_of_variation`
  measure the spread of one code across entities (population variance,
  CV = sigma / mu, 0 when the mean is 0 or fewer than two values exist).
- :func:`prepare_account_optimization_targets` turns the extracted series
  into variance-minimization targets, skipping codes with fewer than two
  entities or only zero values.
- :func:`validate_account_codes` is a pre-flight check telling which codes
  have data in at least one entity.

Values are the displayed values of the nodes, i.e. reported values or the
aggregate of reported sub-accounts (see :func:`muni_finsight.tree.aggregate_value`).
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

import pandas as pd

from .tree import FinancialData, aggregate_value, find_node_by_code

logger = logging.getLogger(__name__)

DEFAULT_TARGET_CV = 0.05


@dataclass(frozen=True)
class AccountCodeValue:
    entity_code: str
    account_code: str
    value: float
    year: str


@dataclass
class AccountVarianceTarget:
    """Desired spread for one account code across entities."""

    account_code: str
    entity_values: dict[str, float]
    target_variance: float


@dataclass(frozen=True)
class TargetSummary:
    account_code: str
    entity_count: int
    current_variance: float
    current_cv: float
    mean_value: float


@dataclass
class CodeValidation:
    valid: list[str] = field(default_factory=list)
    invalid: list[str] = field(default_factory=list)
    found: dict[str, int] = field(default_factory=dict)


def extract_account_values(
    data: FinancialData, account_codes: Iterable[str]
) -> dict[str, list[AccountCodeValue]]:
    """Collect the value of each requested code for every entity.

    Returns:
        Mapping code -> list of AccountCodeValue, one per entity having a
        value. Every requested code is present as a key.
    """
    result: dict[str, list[AccountCodeValue]] = {}

    for code in account_codes:
        values = result.setdefault(code, [])
        nodes = [find_node_by_code(tree, code) for tree in data.trees()]

        for key, entity in data.entities.items():
            for node in nodes:
                if node is None:
                    continue
                value = aggregate_value(node, key)
                if value is not None:
                    values.append(
                        AccountCodeValue(
                            entity_code=key,
                            account_code=code,
                            value=value,
                            year=entity.year,
                        )
                    )
                    break

    return result


def calculate_variance(entity_values: Mapping[str, float]) -> float:
    """Population variance of the values (0 with fewer than two values)."""
    values = pd.Series(list(entity_values.values()), dtype=float)
    if len(values) < 2:
        return 0.0
    return float(values.var(ddof=0))


def calculate_coefficient_of_variation(entity_values: Mapping[str, float]) -> float:
    """Standard deviation divided by the mean; 0 if the mean is 0."""
    values = pd.Series(list(entity_values.values()), dtype=float)
    if len(values) < 2:
        return 0.0
    mean = values.mean()
    if mean == 0:
        return 0.0
    return float(values.std(ddof=0) / mean)


def create_variance_targets(
    account_values: Mapping[str, list[AccountCodeValue]],
    target_variance: float = 0.1,
) -> list[AccountVarianceTarget]:
    """Build one target per code having at least two non all-zero values.

    Absolute values are used so that signed balances compare by magnitude.
    """
    targets: list[AccountVarianceTarget] = []

    for code, values in account_values.items():
        if len(values) < 2:
            logger.debug("Skipping account %s: %d value(s)", code, len(values))
            continue

        entity_values = {v.entity_code: abs(v.value) for v in values}
        if not any(v > 0 for v in entity_values.values()):
            logger.debug("Skipping account %s: all values are zero", code)
            continue

        targets.append(
            AccountVarianceTarget(
                account_code=code,
                entity_values=entity_values,
                target_variance=target_variance,
            )
        )

    return targets


def prepare_account_optimization_targets(
    data: FinancialData,
    account_codes: Iterable[str],
    target_cv: float = DEFAULT_TARGET_CV,
) -> tuple[list[AccountVarianceTarget], list[TargetSummary]]:
    """Extract values for ``account_codes`` and build targets with a summary."""
    codes = list(account_codes)
    targets = create_variance_targets(extract_account_values(data, codes), target_cv)

    summary = []
    for target in targets:
        values = list(target.entity_values.values())
        summary.append(
            TargetSummary(
                account_code=target.account_code,
                entity_count=len(values),
                current_variance=calculate_variance(target.entity_values),
                current_cv=calculate_coefficient_of_variation(target.entity_values),
                mean_value=float(pd.Series(values, dtype=float).mean()),
            )
        )

    logger.info(
        "Prepared %d optimization target(s) for %d account code(s)",
        len(targets),
        len(codes),
    )
    return targets, summary


def validate_account_codes(
    data: FinancialData, account_codes: Iterable[str]
) -> CodeValidation:
    """Split codes into those with data in at least one entity and the rest."""
    codes = list(account_codes)
    extracted = extract_account_values(data, codes)

    out = CodeValidation()
    for code in codes:
        count = len(extracted.get(code, []))
        if count > 0:
            out.valid.append(code)
            out.found[code] = count
        else:
            out.invalid.append(code)
    return out
