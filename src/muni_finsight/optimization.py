# Municipal FinSight - Public finance statement browser
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Scaling formula optimization for Municipal FinSight.

Given a set of account codes and the per-entity scaling factors available
in the scaling table (population, area, workplaces, ...), this module finds
the linear combination of factors

    scaling = intercept + a*pop + b*area + ...

that makes the scaled values of those accounts as similar as possible
across entities. The coefficients are fitted by least squares:

    minimize ||Y - X.beta||^2

where each row of X holds the factors of one entity (and a leading 1 for
the intercept) and Y the scaling each entity would need. With several
entities, the first account code (sorted) is used as the reference: every
entity is scaled to 100,000 on that account.

The fitted formula is returned as a ``custom:`` scaling id, ready for
:meth:`muni_finsight.datasets.FinancialDataStore.set_scaling`.

Account codes may be grouped with ``+`` ("400+401"): the values of a group
are the per-entity sums of the absolute values of its codes.
"""

import logging
import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .extractor import (
    DEFAULT_TARGET_CV,
    AccountVarianceTarget,
    TargetSummary,
    calculate_coefficient_of_variation,
    calculate_variance,
    extract_account_values,
    prepare_account_optimization_targets,
    validate_account_codes,
)
from .scaling import CUSTOM_SCALING_PREFIX
from .tree import FinancialData

logger = logging.getLogger(__name__)

DEFAULT_R_SQUARED_THRESHOLD = 0.7
ACCOUNT_CODE_R_SQUARED_THRESHOLD = 0.1
SINGLE_ENTITY_R_SQUARED_THRESHOLD = 0.01
SCALING_TARGET_VALUE = 100_000
FACTOR_AVAILABILITY_RATIO = 0.8
MIN_FACTOR_CV = 0.01
MIN_TARGET_CV = 0.001
COEFFICIENT_THRESHOLD = 1e-6


@dataclass(frozen=True)
class OptimizationTarget:
    """One equation of the fit: the scaling wanted for one entity."""

    entity_code: str
    account_code: str
    target_value: float
    scaling_factors: Mapping[str, float]


@dataclass(frozen=True)
class AccountImprovement:
    account_code: str
    entity_count: int
    mean_value: float
    before_variance: float
    after_variance: float
    before_cv: float
    after_cv: float
    improvement: float


@dataclass
class OptimizationResult:
    is_valid: bool
    formula: Optional[str] = None
    coefficients: dict[str, float] = field(default_factory=dict)
    intercept: float = 0.0
    r_squared: Optional[float] = None
    error: Optional[str] = None
    target_line_count: int = 0
    entity_count: int = 0
    account_summary: list[AccountImprovement] = field(default_factory=list)

    @property
    def scaling_id(self) -> Optional[str]:
        if not self.formula:
            return None
        return CUSTOM_SCALING_PREFIX + self.formula


def parse_code_groups(account_codes: Iterable[str]) -> list[list[str]]:
    """Split "400+401" style entries into lists of codes."""
    groups = []
    for entry in account_codes:
        codes = [c.strip() for c in str(entry).split("+") if c.strip()]
        if codes:
            groups.append(codes)
    return groups


def prepare_code_group_targets(
    data: FinancialData,
    groups: Sequence[Sequence[str]],
    target_cv: float = DEFAULT_TARGET_CV,
) -> tuple[list[AccountVarianceTarget], list[TargetSummary]]:
    """Build variance targets for single codes and summed code groups.

    Codes without data in any entity are ignored. A group needs values for
    at least two entities.
    """
    valid = set(validate_account_codes(data, [c for g in groups for c in g]).valid)

    targets: list[AccountVarianceTarget] = []
    summary: list[TargetSummary] = []

    for group in groups:
        codes = [c for c in group if c in valid]
        if not codes:
            continue

        if len(codes) == 1:
            t, s = prepare_account_optimization_targets(data, codes, target_cv)
            targets.extend(t)
            summary.extend(s)
            continue

        sums: dict[str, float] = {}
        for code, values in extract_account_values(data, codes).items():
            for v in values:
                sums[v.entity_code] = sums.get(v.entity_code, 0.0) + abs(v.value)

        if len(sums) < 2:
            logger.debug("Skipping group %s: %d entity value(s)", "+".join(codes), len(sums))
            continue

        name = "+".join(codes)
        targets.append(
            AccountVarianceTarget(account_code=name, entity_values=sums, target_variance=target_cv)
        )
        summary.append(
            TargetSummary(
                account_code=name,
                entity_count=len(sums),
                current_variance=calculate_variance(sums),
                current_cv=calculate_coefficient_of_variation(sums),
                mean_value=float(np.mean(list(sums.values()))),
            )
        )

    return targets, summary


# ---------------------------------------------------------------------------
# Least-squares fit
# ---------------------------------------------------------------------------


def _finite(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value)


def _cv(values: Sequence[float]) -> float:
    mean = float(np.mean(values))
    if mean <= 0:
        return 0.0
    return float(np.std(values)) / abs(mean)


def _prepare_matrices(
    targets: Sequence[OptimizationTarget],
    factor_ids: Sequence[str],
    include_intercept: bool,
) -> tuple[np.ndarray, np.ndarray, list[str]]:
    """Return (X, Y, selected factor ids); empty arrays when unusable."""
    empty = (np.empty((0, 0)), np.empty(0), [])

    usable = [
        t
        for t in targets
        if _finite(t.target_value)
        and any(_finite(t.scaling_factors.get(f)) for f in factor_ids)
    ]
    single_entity = len({t.entity_code for t in usable}) == 1

    selected: list[str] = []
    required = math.ceil(len(usable) * FACTOR_AVAILABILITY_RATIO)
    for factor in factor_ids:
        values = [
            t.scaling_factors[factor] for t in usable if _finite(t.scaling_factors.get(factor))
        ]
        if not values or len(values) < required:
            continue
        if single_entity:
            selected.append(factor)
        elif len(values) >= 2 and _cv(values) > MIN_FACTOR_CV:
            selected.append(factor)
        else:
            logger.debug("Factor %s excluded: not enough variation", factor)

    if not selected:
        logger.warning("No scaling factor with sufficient variation")
        return empty

    rows, ys = [], []
    for t in usable:
        values = [t.scaling_factors.get(f) for f in selected]
        if not all(_finite(v) for v in values):
            continue
        rows.append(([1.0] if include_intercept else []) + [float(v) for v in values])
        ys.append(float(t.target_value))

    min_required = 1 if single_entity else len(selected) + int(include_intercept)
    if len(rows) < min_required:
        logger.warning(
            "Insufficient data points: %d for %d factor(s) (need %d)",
            len(rows),
            len(selected),
            min_required,
        )
        return empty

    if len(ys) >= 2 and not single_entity and _cv(ys) < MIN_TARGET_CV:
        logger.warning("Target values have insufficient variation")
        return empty

    return np.array(rows, dtype=float), np.array(ys, dtype=float), selected


def _solve_least_squares(X: np.ndarray, Y: np.ndarray) -> Optional[np.ndarray]:
    # Columns and targets are scaled to a max-abs of 1 for conditioning.
    scales = np.abs(X).max(axis=0)
    scales[scales < 1e-12] = 1.0
    y_scale = float(np.abs(Y).max()) or 1.0

    try:
        beta, *_ = np.linalg.lstsq(X / scales, Y / y_scale, rcond=None)
    except np.linalg.LinAlgError:
        logger.exception("Least-squares fit failed")
        return None

    coefficients = beta / scales * y_scale
    if not np.all(np.isfinite(coefficients)):
        return None
    return coefficients


def _r_squared(X: np.ndarray, Y: np.ndarray, coefficients: np.ndarray) -> float:
    ss_res = float(np.sum((Y - X @ coefficients) ** 2))
    ss_tot = float(np.sum((Y - Y.mean()) ** 2))
    return 1.0 if ss_tot == 0 else 1.0 - ss_res / ss_tot


def _format_coefficient(value: float) -> str:
    return f"{value:.6g}"


def build_formula(
    coefficients: Sequence[float], factor_ids: Sequence[str], include_intercept: bool
) -> str:
    """Render fitted coefficients as a formula such as ``0.25+pop-1.5e-05*area``.

    Returns "0" when every coefficient is negligible.
    """
    terms: list[str] = []
    offset = 0

    if include_intercept:
        if abs(coefficients[0]) > COEFFICIENT_THRESHOLD:
            terms.append(_format_coefficient(coefficients[0]))
        offset = 1

    for i, factor in enumerate(factor_ids):
        coeff = coefficients[offset + i]
        if abs(coeff) <= COEFFICIENT_THRESHOLD:
            continue
        if abs(coeff - 1) < COEFFICIENT_THRESHOLD:
            term = factor
        elif abs(coeff + 1) < COEFFICIENT_THRESHOLD:
            term = f"-{factor}"
        else:
            term = f"{_format_coefficient(coeff)}*{factor}"
        terms.append(f"+{term}" if coeff >= 0 and terms else term)

    return "".join(terms) if terms else "0"


def optimize_scaling_formula(
    targets: Sequence[OptimizationTarget],
    factor_ids: Sequence[str],
    min_r_squared: float = DEFAULT_R_SQUARED_THRESHOLD,
    include_intercept: bool = True,
) -> OptimizationResult:
    """Fit ``target_value ~ intercept + sum(coeff * factor)`` over ``targets``.

    The fit is rejected when R² is below ``min_r_squared`` and the mean
    absolute residual is more than half of the target range.
    """
    if not targets:
        return OptimizationResult(False, error="At least 1 entity required for optimization")
    if not factor_ids:
        return OptimizationResult(False, error="No scaling factors available for optimization")

    X, Y, selected = _prepare_matrices(targets, factor_ids, include_intercept)
    if len(Y) == 0:
        return OptimizationResult(False, error="No valid data points found for optimization")

    logger.info(
        "Solving for %d factor(s)%s [%s] with %d data point(s)",
        len(selected),
        " + intercept" if include_intercept else "",
        ", ".join(selected),
        len(Y),
    )

    coefficients = _solve_least_squares(X, Y)
    if coefficients is None:
        return OptimizationResult(
            False, error="Unable to solve optimization problem (matrix may be singular)"
        )

    r_squared = _r_squared(X, Y, coefficients)
    residuals = np.abs(Y - X @ coefficients)
    spread = float(Y.max() - Y.min())
    relative_error = float(residuals.mean()) / spread if spread > 0 else 0.0
    logger.info(
        "Fit: R²=%.4f, max residual=%.3e, relative error=%.2f%%",
        r_squared,
        float(residuals.max()),
        relative_error * 100,
    )

    if r_squared < min_r_squared and relative_error > 0.5:
        return OptimizationResult(
            False,
            r_squared=r_squared,
            error=(
                f"Optimization quality too low (R² = {r_squared:.3f}, "
                f"relative error = {relative_error * 100:.1f}%)"
            ),
        )

    formula = build_formula(coefficients, selected, include_intercept)
    if formula == "0":
        return OptimizationResult(
            False,
            r_squared=r_squared,
            error="Optimized formula does not use any scaling factor",
        )

    offset = 1 if include_intercept else 0
    return OptimizationResult(
        True,
        formula=formula,
        coefficients={f: float(coefficients[offset + i]) for i, f in enumerate(selected)},
        intercept=float(coefficients[0]) if include_intercept else 0.0,
        r_squared=r_squared,
        target_line_count=len({t.account_code for t in targets}),
        entity_count=len({t.entity_code for t in targets}),
    )


# ---------------------------------------------------------------------------
# Account code optimization
# ---------------------------------------------------------------------------


def _variance_minimization_targets(
    variance_targets: Sequence[AccountVarianceTarget],
    scaling_variables: Mapping[str, Mapping[str, float]],
) -> list[OptimizationTarget]:
    ordered = sorted(variance_targets, key=lambda t: t.account_code)
    if not ordered:
        return []

    # Scaling that brings every entity to SCALING_TARGET_VALUE on the
    # reference account; the other accounts reuse it.
    reference: dict[str, float] = {}
    for entity, value in ordered[0].entity_values.items():
        if scaling_variables.get(entity) and value > 0:
            reference[entity] = value / SCALING_TARGET_VALUE

    targets = []
    for target in ordered:
        for entity in target.entity_values:
            if entity in reference:
                targets.append(
                    OptimizationTarget(
                        entity_code=entity,
                        account_code=target.account_code,
                        target_value=reference[entity],
                        scaling_factors=scaling_variables[entity],
                    )
                )
    logger.debug("Created %d optimization target(s)", len(targets))
    return targets


def _unchanged(summary: Iterable[TargetSummary]) -> list[AccountImprovement]:
    return [
        AccountImprovement(
            account_code=s.account_code,
            entity_count=s.entity_count,
            mean_value=s.mean_value,
            before_variance=s.current_variance,
            after_variance=s.current_variance,
            before_cv=s.current_cv,
            after_cv=s.current_cv,
            improvement=0.0,
        )
        for s in summary
    ]


def _improvements(
    variance_targets: Sequence[AccountVarianceTarget],
    result: OptimizationResult,
    scaling_variables: Mapping[str, Mapping[str, float]],
    summary: Iterable[TargetSummary],
) -> list[AccountImprovement]:
    by_code = {t.account_code: t for t in variance_targets}
    out = []

    for s in summary:
        target = by_code.get(s.account_code)
        if target is None:
            out.extend(_unchanged([s]))
            continue

        scaled: dict[str, float] = {}
        for entity, value in target.entity_values.items():
            factors = scaling_variables.get(entity)
            if not factors:
                continue
            divisor = result.intercept + sum(
                coeff * factors[f] for f, coeff in result.coefficients.items() if f in factors
            )
            scaled[entity] = value / divisor if divisor > 0 else value

        after_cv = calculate_coefficient_of_variation(scaled)
        improvement = (s.current_cv - after_cv) / s.current_cv * 100 if s.current_cv > 0 else 0.0
        out.append(
            AccountImprovement(
                account_code=s.account_code,
                entity_count=s.entity_count,
                mean_value=s.mean_value,
                before_variance=s.current_variance,
                after_variance=calculate_variance(scaled),
                before_cv=s.current_cv,
                after_cv=after_cv,
                improvement=improvement,
            )
        )
    return out


def _balanced_coefficient(value: float) -> str:
    if value < 0.0001:
        return f"{value:.2e}"
    if value < 0.01:
        return f"{value:.6f}"
    if value < 1:
        return f"{value:.4f}"
    return f"{value:.2f}"


def _optimize_single_entity(
    entity: str,
    variance_targets: Sequence[AccountVarianceTarget],
    factor_ids: Sequence[str],
    factors: Mapping[str, float],
    summary: Sequence[TargetSummary],
    include_intercept: bool,
) -> OptimizationResult:
    targets = [
        OptimizationTarget(
            entity_code=entity,
            account_code=t.account_code,
            target_value=math.log(max(t.entity_values[entity], 1.0)),
            scaling_factors=factors,
        )
        for t in variance_targets
        if t.entity_values.get(entity, 0) > 0
    ]
    if not targets:
        return OptimizationResult(False, error="No valid data for single entity optimization")

    if len(targets) < len(factor_ids):
        # Not enough equations: normalize every factor to contribute 1.0.
        coefficients = {}
        parts = []
        for factor in factor_ids:
            value = factors.get(factor)
            if _finite(value) and value > 0:
                coefficients[factor] = 1.0 / value
                parts.append(f"{_balanced_coefficient(1.0 / value)}*{factor}")
        if not parts:
            return OptimizationResult(False, error="No valid data for single entity optimization")
        return OptimizationResult(
            True,
            formula=" + ".join(parts),
            coefficients=coefficients,
            r_squared=0.0,
            target_line_count=len(variance_targets),
            entity_count=1,
            account_summary=_unchanged(summary),
        )

    result = optimize_scaling_formula(
        targets, factor_ids, SINGLE_ENTITY_R_SQUARED_THRESHOLD, include_intercept
    )
    result.entity_count = 1
    result.account_summary = _unchanged(summary)
    return result


def optimize_for_account_codes(
    data: FinancialData,
    account_codes: Iterable[str],
    factor_ids: Sequence[str],
    scaling_variables: Mapping[str, Mapping[str, float]],
    min_r_squared: float = ACCOUNT_CODE_R_SQUARED_THRESHOLD,
    include_intercept: bool = True,
) -> OptimizationResult:
    """Find the scaling formula minimizing the spread of ``account_codes``.

    Args:
        data: Integrated financial data.
        account_codes: Codes or "+" groups of codes to even out.
        factor_ids: Scaling ids the formula may use.
        scaling_variables: entity key -> {factor id -> value}.
        min_r_squared: Minimum R² of the fit (see optimize_scaling_formula).
        include_intercept: Fit a constant term too.
    """
    groups = parse_code_groups(account_codes)
    all_codes = [c for g in groups for c in g]
    validation = validate_account_codes(data, all_codes)
    if not validation.valid:
        return OptimizationResult(
            False,
            error=f"No valid account codes found. Invalid: {', '.join(validation.invalid)}",
        )

    variance_targets, summary = prepare_code_group_targets(data, groups)
    if not variance_targets:
        return OptimizationResult(
            False, error="No financial data found for the specified account codes"
        )

    logger.info(
        "Optimizing scaling for %s",
        ", ".join(f"{s.account_code} (CV {s.current_cv:.3f})" for s in summary),
    )

    if len(scaling_variables) == 1:
        entity, factors = next(iter(scaling_variables.items()))
        return _optimize_single_entity(
            entity, variance_targets, factor_ids, factors, summary, include_intercept
        )

    targets = _variance_minimization_targets(variance_targets, scaling_variables)
    if not targets:
        return OptimizationResult(
            False,
            error="Insufficient data points for optimization (need at least 1 entity)",
            account_summary=_unchanged(summary),
        )

    result = optimize_scaling_formula(targets, factor_ids, min_r_squared, include_intercept)
    if not result.is_valid:
        result.account_summary = _unchanged(summary)
        return result

    result.account_summary = _improvements(variance_targets, result, scaling_variables, summary)
    return result
