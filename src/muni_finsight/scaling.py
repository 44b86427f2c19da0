# Municipal FinSight - Public finance statement browser
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Per-entity scaling for Municipal FinSight.

Absolute amounts can be normalized by a per-entity divisor such as the
population ("per capita") or the area. A divisor is identified by a
scaling id (``pop``, ``area``, ...) and looked up for each entity through
a *scaling provider*, any callable::

    provider(scaling_id, source, entity_id, year) -> float | None

This module provides:

- :class:`TableScalingProvider`, a provider backed by a CSV table with the
  columns ``id, source, entity, year, value``;
- custom scaling formulas combining several divisors, such as
  ``1.5*pop + 30*area``. A formula is validated (non-empty, at least one
  variable, only known variables, arithmetic only) and evaluated with a
  restricted AST evaluator.

Custom formulas are addressed with the ``custom:`` prefix in a scaling id
(``custom:pop/1000``).
"""

import ast
import logging
import operator
from collections.abc import Collection, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

import pandas as pd

logger = logging.getLogger(__name__)

CUSTOM_SCALING_PREFIX = "custom:"

ScalingProvider = Callable[[str, str, str, str], Optional[float]]

_ALLOWED_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}


@dataclass(frozen=True)
class FormulaValidation:
    is_valid: bool
    error: Optional[str] = None
    variables: tuple[str, ...] = ()


def is_custom_scaling(scaling_id: Optional[str]) -> bool:
    return bool(scaling_id) and str(scaling_id).startswith(CUSTOM_SCALING_PREFIX)


def formula_from_scaling_id(scaling_id: str) -> str:
    return scaling_id[len(CUSTOM_SCALING_PREFIX):].strip()


def _parse(formula: str) -> ast.Expression:
    try:
        return ast.parse(formula, mode="eval")
    except SyntaxError as exc:
        raise ValueError(f"Invalid formula syntax: {formula!r}") from exc


def extract_variables(formula: str) -> tuple[str, ...]:
    """Return the variable names used in ``formula``, in order of appearance."""
    tree = _parse(formula)
    names = [n.id for n in ast.walk(tree) if isinstance(n, ast.Name)]
    return tuple(dict.fromkeys(names))


def _check_nodes(tree: ast.AST) -> None:
    for node in ast.walk(tree):
        if isinstance(node, (ast.Expression, ast.Name, ast.Load)):
            continue
        if isinstance(node, ast.Constant):
            if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
                raise ValueError(f"Unsupported constant in formula: {node.value!r}")
            continue
        if isinstance(node, (ast.BinOp, ast.UnaryOp)):
            continue
        if type(node) in _ALLOWED_OPERATORS:
            continue
        raise ValueError(f"Unsupported expression in formula: {type(node).__name__}")


def validate_formula(
    formula: str, available: Optional[Collection[str]] = None
) -> FormulaValidation:
    """Check that ``formula`` can be evaluated.

    Args:
        formula: Arithmetic expression over scaling ids.
        available: Known scaling ids. When None, any variable name is
            accepted.
    """
    text = (formula or "").strip()
    if not text:
        return FormulaValidation(False, "Formula cannot be empty")

    try:
        tree = _parse(text)
        _check_nodes(tree)
    except ValueError as exc:
        return FormulaValidation(False, str(exc))

    variables = extract_variables(text)
    if not variables:
        return FormulaValidation(
            False, "Formula must contain at least one scaling variable"
        )

    if available is not None:
        unknown = [v for v in variables if v not in available]
        if unknown:
            return FormulaValidation(
                False,
                f"Unknown scaling variables: {', '.join(unknown)}. "
                f"Available: {', '.join(sorted(available))}",
                variables,
            )

    return FormulaValidation(True, None, variables)


def evaluate_formula(formula: str, variables: Mapping[str, float]) -> float:
    """
    Evaluate a validated formula with the given variable values.

    Supported: numeric literals, variable names, +, -, *, /, unary minus
    and parentheses.

    Raises:
        ValueError: on unsupported constructs, unknown variables, division
            by zero or a non-finite result.
    """
    tree = _parse(formula.strip())

    def _eval(node: ast.AST) -> float:
        if isinstance(node, ast.Expression):
            return _eval(node.body)

        if isinstance(node, ast.Constant):
            if isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
                return float(node.value)
            raise ValueError(f"Unsupported constant in formula: {node.value!r}")

        if isinstance(node, ast.Name):
            if node.id not in variables:
                raise ValueError(f"Missing value for scaling variable: {node.id!r}")
            return float(variables[node.id])

        if isinstance(node, ast.BinOp):
            op_func = _ALLOWED_OPERATORS.get(type(node.op))
            if op_func is None:
                raise ValueError(f"Unsupported operator in formula: {type(node.op).__name__}")
            left = _eval(node.left)
            right = _eval(node.right)
            try:
                return float(op_func(left, right))
            except ZeroDivisionError as exc:
                raise ValueError("Division by zero in formula") from exc

        if isinstance(node, ast.UnaryOp):
            op_func = _ALLOWED_OPERATORS.get(type(node.op))
            if op_func is None:
                raise ValueError(f"Unsupported unary operator: {type(node.op).__name__}")
            return float(op_func(_eval(node.operand)))

        raise ValueError(f"Unsupported expression node: {type(node).__name__}")

    result = _eval(tree)
    if result != result or result in (float("inf"), float("-inf")):
        raise ValueError("Formula evaluation resulted in invalid number")
    return result


class TableScalingProvider:
    """Scaling provider reading divisors from a DataFrame.

    Expected columns: ``id``, ``source``, ``entity``, ``year``, ``value``.
    An empty ``source`` applies the row to both sources.
    """

    def __init__(self, table: pd.DataFrame):
        df = table.copy()
        df.columns = [str(c).lower().strip() for c in df.columns]
        missing = {"id", "entity", "year", "value"} - set(df.columns)
        if missing:
            raise ValueError(
                f"Scaling table is missing column(s): {', '.join(sorted(missing))}"
            )
        if "source" not in df.columns:
            df["source"] = ""

        self._values: dict[tuple[str, str, str, str], float] = {}
        for row in df.itertuples(index=False):
            value = pd.to_numeric(row.value, errors="coerce")
            if pd.isna(value):
                continue
            key = (
                str(row.id).strip(),
                "" if pd.isna(row.source) else str(row.source).strip(),
                str(row.entity).strip(),
                str(row.year).strip(),
            )
            self._values[key] = float(value)

    @classmethod
    def from_csv(cls, path: Union[str, Path]) -> "TableScalingProvider":
        p = Path(path)
        if not p.is_file():
            raise FileNotFoundError(f"Scaling file not found: {p}")
        return cls(pd.read_csv(p, dtype=str, keep_default_na=False))

    def ids(self) -> list[str]:
        return sorted({key[0] for key in self._values})

    def __call__(
        self, scaling_id: str, source: str, entity_id: str, year: str
    ) -> Optional[float]:
        for src in (source, ""):
            value = self._values.get((scaling_id, src, entity_id, str(year)))
            if value is not None:
                return value
        return None
