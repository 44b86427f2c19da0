from pathlib import Path

import pandas as pd
import pytest

from muni_finsight.scaling import (
    TableScalingProvider,
    evaluate_formula,
    extract_variables,
    formula_from_scaling_id,
    is_custom_scaling,
    validate_formula,
)


def test_custom_scaling_ids() -> None:
    assert is_custom_scaling("custom:pop/1000") is True
    assert is_custom_scaling("pop") is False
    assert is_custom_scaling(None) is False
    assert formula_from_scaling_id("custom: 1.5*pop + 30*area ") == "1.5*pop + 30*area"


def test_extract_variables_in_order_without_duplicates() -> None:
    assert extract_variables("pop + area * pop / 2") == ("pop", "area")


@pytest.mark.parametrize(
    "formula, message",
    [
        ("", "Formula cannot be empty"),
        ("   ", "Formula cannot be empty"),
        ("1000 / 2", "Formula must contain at least one scaling variable"),
        ("pop +", "Invalid formula syntax"),
        ("pop ** 2", "Unsupported expression"),
        ("__import__('os')", "Unsupported expression"),
        ("pop + 'x'", "Unsupported constant"),
    ],
)
def test_validate_formula_rejects(formula, message) -> None:
    result = validate_formula(formula)

    assert result.is_valid is False
    assert message in result.error


def test_validate_formula_checks_known_variables() -> None:
    result = validate_formula("pop + rooms", available={"pop", "area"})

    assert result.is_valid is False
    assert result.error == "Unknown scaling variables: rooms. Available: area, pop"

    ok = validate_formula("1.5*pop + 30*area", available={"pop", "area"})
    assert ok.is_valid is True
    assert ok.error is None
    assert ok.variables == ("pop", "area")


def test_evaluate_formula() -> None:
    variables = {"pop": 2000.0, "area": 10.0}

    assert evaluate_formula("1.5*pop + 30*area", variables) == pytest.approx(3300.0)
    assert evaluate_formula("(pop - area) / 2", variables) == pytest.approx(995.0)
    assert evaluate_formula("-pop", variables) == pytest.approx(-2000.0)


@pytest.mark.parametrize(
    "formula, variables, message",
    [
        ("pop / area", {"pop": 1.0, "area": 0.0}, "Division by zero"),
        ("pop + area", {"pop": 1.0}, "Missing value"),
    ],
)
def test_evaluate_formula_errors(formula, variables, message) -> None:
    with pytest.raises(ValueError, match=message):
        evaluate_formula(formula, variables)


@pytest.fixture
def table() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "id": ["pop", "pop", "area", "pop"],
            "source": ["gdn", "", "", "std"],
            "entity": ["010002", "010003", "010002", "gdn_zh"],
            "year": ["2022", "2022", "2022", "2022"],
            "value": ["2000", "500", "7.5", "n/a"],
        }
    )


def test_table_provider_lookup(table) -> None:
    provider = TableScalingProvider(table)

    assert provider.ids() == ["area", "pop"]
    assert provider("pop", "gdn", "010002", "2022") == 2000.0
    assert provider("area", "gdn", "010002", 2022) == 7.5
    # a blank source applies to every source
    assert provider("pop", "std", "010003", "2022") == 500.0
    assert provider("pop", "std", "010002", "2022") is None
    assert provider("pop", "std", "gdn_zh", "2022") is None
    assert provider("pop", "gdn", "010002", "2021") is None


def test_table_provider_requires_columns() -> None:
    with pytest.raises(ValueError, match="entity"):
        TableScalingProvider(pd.DataFrame({"id": [], "year": [], "value": []}))


def test_table_provider_from_csv(tmp_path: Path) -> None:
    path = tmp_path / "scaling.csv"
    path.write_text("id,entity,year,value\npop,010002,2022,2000\n", encoding="utf-8")

    provider = TableScalingProvider.from_csv(path)
    assert provider("pop", "gdn", "010002", "2022") == 2000.0

    with pytest.raises(FileNotFoundError):
        TableScalingProvider.from_csv(tmp_path / "missing.csv")
