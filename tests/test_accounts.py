from pathlib import Path

import pandas as pd
import pytest

from muni_finsight.accounts import build_tree, create_empty_structure, load_chart_of_accounts
from muni_finsight.tree import (
    ROOT_CODE,
    AccountValue,
    Entity,
    aggregate_value,
    clear_values,
    collect_codes,
    count_nodes,
    find_node_by_code,
    max_depth,
    scaled_value,
)

KEY = "gdn/fs/010002:2022"


def _write_chart(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_empty_structure_roots_and_top_level_codes(structure) -> None:
    income, balance = structure.income_statement, structure.balance_sheet

    assert income.code == ROOT_CODE
    assert balance.code == ROOT_CODE
    assert [c.code for c in income.children] == ["3", "4"]
    assert [c.code for c in balance.children] == ["1", "2"]
    assert income.label("de") == "Erfolgsrechnung"
    assert balance.label("en") == "Balance Sheet"
    assert structure.entities == {}
    assert structure.used_codes == [] and structure.unused_codes == []
    assert structure.metadata.source == ""


def test_empty_structure_nests_codes_by_longest_prefix(structure) -> None:
    node_360 = find_node_by_code(structure.income_statement, "360")
    node_36 = find_node_by_code(structure.income_statement, "36")

    assert node_360 is not None
    assert [c.code for c in node_360.children] == ["3600", "3601", "3602"]
    assert "360" in [c.code for c in node_36.children]
    assert max_depth(structure.income_statement) == 4


def test_empty_structure_calls_are_independent() -> None:
    first = create_empty_structure()
    second = create_empty_structure()

    find_node_by_code(first.income_statement, "30").values[KEY] = AccountValue(1.0)

    assert find_node_by_code(second.income_statement, "30").values == {}


def test_find_node_by_code_returns_none_for_unknown_code(structure) -> None:
    assert find_node_by_code(structure.income_statement, "9999") is None
    assert find_node_by_code(structure.income_statement, "1") is None
    assert find_node_by_code(structure.balance_sheet, "1").label("fr") == "Actif"


def test_labels_fall_back_to_german(structure) -> None:
    node = find_node_by_code(structure.income_statement, "3")
    assert node.label("fr") == "Charges"
    assert node.label("rm") == "Aufwand"
    assert node.label("de-CH") == "Aufwand"


def test_collect_codes_follows_chart_order(structure) -> None:
    codes = collect_codes(structure.income_statement)

    assert codes[0] == "3"
    assert codes.index("30") < codes.index("300") < codes.index("31")
    assert codes.index("39") < codes.index("4")
    assert count_nodes(structure.income_statement) == len(codes) + 1


def test_load_chart_of_accounts_sorts_and_fills_labels(tmp_path: Path) -> None:
    path = _write_chart(
        tmp_path / "chart.csv",
        "Arten,d,f\n301,Löhne,Salaires\n3,Aufwand,\n30,Personalaufwand,Personnel\n",
    )

    chart = load_chart_of_accounts(path)

    assert chart["code"].tolist() == ["3", "30", "301"]
    assert chart.loc[0, "fr"] == "Aufwand"
    assert chart.loc[2, "it"] == "Löhne"
    assert list(chart.columns) == ["code", "de", "fr", "it", "en"]


def test_load_chart_of_accounts_without_code_column_raises(tmp_path: Path) -> None:
    path = _write_chart(tmp_path / "chart.csv", "number,d\n3,Aufwand\n")

    with pytest.raises(ValueError, match="account code column"):
        load_chart_of_accounts(path)


def test_build_tree_attaches_gaps_to_nearest_existing_prefix() -> None:
    chart = pd.DataFrame(
        {
            "code": ["3", "9", "3601"],
            "de": ["Aufwand", "Abschluss", "Kantone"],
            "fr": ["", "", ""],
            "it": ["", "", ""],
            "en": ["", "", ""],
        }
    )

    root = build_tree(chart, {"de": "Root"})

    assert [c.code for c in root.children] == ["3", "9"]
    assert [c.code for c in root.children[0].children] == ["3601"]


def test_create_empty_structure_from_custom_directory(tmp_path: Path) -> None:
    _write_chart(tmp_path / "bilanz.csv", "arten,d\n1,Aktiven\n2,Passiven\n")
    _write_chart(tmp_path / "aufwand.csv", "arten,d\n3,Aufwand\n30,Personal\n")
    _write_chart(tmp_path / "ertrag.csv", "arten,d\n4,Ertrag\n")

    data = create_empty_structure(tmp_path)

    assert collect_codes(data.income_statement) == ["3", "30", "4"]
    assert collect_codes(data.balance_sheet) == ["1", "2"]


def test_aggregate_value_subtracts_expenses_and_liabilities(structure) -> None:
    income, balance = structure.income_statement, structure.balance_sheet
    find_node_by_code(income, "300").values[KEY] = AccountValue(100.0)
    find_node_by_code(income, "310").values[KEY] = AccountValue(20.0)
    find_node_by_code(income, "4000").values[KEY] = AccountValue(500.0)
    find_node_by_code(balance, "100").values[KEY] = AccountValue(1000.0)
    find_node_by_code(balance, "200").values[KEY] = AccountValue(400.0)

    assert aggregate_value(find_node_by_code(income, "3"), KEY) == pytest.approx(120.0)
    assert aggregate_value(income, KEY) == pytest.approx(380.0)
    assert aggregate_value(balance, KEY) == pytest.approx(600.0)
    assert aggregate_value(find_node_by_code(income, "36"), KEY) is None
    assert aggregate_value(income, "gdn/fs/other:2022") is None


def test_aggregate_value_adds_reported_value_to_children(structure) -> None:
    income = structure.income_statement
    find_node_by_code(income, "30").values[KEY] = AccountValue(999.0)
    find_node_by_code(income, "300").values[KEY] = AccountValue(100.0)

    assert aggregate_value(find_node_by_code(income, "30"), KEY) == pytest.approx(1099.0)
    assert aggregate_value(find_node_by_code(income, "3"), KEY) == pytest.approx(1099.0)
    assert aggregate_value(income, KEY) == pytest.approx(-1099.0)


def test_clear_values_for_one_entity(structure) -> None:
    node = find_node_by_code(structure.income_statement, "300")
    node.values[KEY] = AccountValue(1.0)
    node.values["other"] = AccountValue(2.0)

    clear_values(structure.income_statement, KEY)
    assert list(node.values) == ["other"]

    clear_values(structure.income_statement)
    assert node.values == {}


def test_scaled_value_divides_only_in_divide_mode() -> None:
    entity = Entity(code=KEY, name={"de": "X"}, year="2022")
    assert scaled_value(1000.0, entity) == 1000.0

    entity.scaling_factor = 4.0
    entity.scaling_mode = "divide"
    assert scaled_value(1000.0, entity) == 250.0
    assert scaled_value(None, entity) is None

    entity.clear_scaling()
    assert entity.scaling_factor is None and entity.scaling_info is None
    assert scaled_value(1000.0, entity) == 1000.0
