from pathlib import Path

import pytest

from muni_finsight.errors import ConfigurationError
from muni_finsight.filters import AccountCodeFilter
from muni_finsight.presets import (
    PresetCatalog,
    exclude_patterns,
    get_preset,
    include_patterns,
    load_presets,
    parse_rule,
)

BUILTIN_IDS = [
    "exclude-transfer-expenses",
    "exclude-internal-transfers",
    "operational-only",
    "revenue-analysis",
    "expense-analysis",
]


def test_builtin_presets_are_available() -> None:
    assert PresetCatalog().ids() == BUILTIN_IDS
    assert get_preset("does-not-exist") is None


@pytest.mark.parametrize(
    "preset_id, kept, dropped",
    [
        ("exclude-transfer-expenses", ["3000", "3900", "4000"], ["3600", "36"]),
        ("exclude-internal-transfers", ["3000", "4000"], ["3600", "3900"]),
        ("operational-only", ["3000", "4000"], ["1000", "2000"]),
        ("revenue-analysis", ["4000", "46"], ["3000", "1000"]),
        ("expense-analysis", ["3000", "3900"], ["3600", "4000"]),
    ],
)
def test_builtin_preset_semantics(preset_id, kept, dropped) -> None:
    f = AccountCodeFilter(get_preset(preset_id))

    assert all(f.should_include(code) for code in kept)
    assert not any(f.should_include(code) for code in dropped)


def test_get_preset_returns_fresh_copies() -> None:
    first = get_preset("exclude-internal-transfers")
    first.rules.clear()
    first.enabled = False

    second = get_preset("exclude-internal-transfers")
    assert second.enabled is True
    assert [r.pattern for r in second.rules] == ["36", "39"]


def test_custom_presets_file_overrides_and_extends(tmp_path: Path) -> None:
    path = tmp_path / "presets.toml"
    path.write_text(
        """
[presets.no-internal]
name = "No internal charges"
combine_mode = "or"

[[presets.no-internal.rules]]
id = "internal"
type = "regex"
pattern = "^(39|49)"

[presets.revenue-analysis]
name = "Tax revenue only"

[[presets.revenue-analysis.rules]]
id = "tax"
pattern = "40"
action = "include"
""",
        encoding="utf-8",
    )

    catalog = PresetCatalog(path)

    assert catalog.ids()[-1] == "no-internal"
    custom = catalog.get("no-internal")
    assert custom.combine_mode == "OR"
    assert custom.rules[0].name == "internal"
    assert custom.rules[0].action == "exclude"
    assert [r.pattern for r in catalog.get("revenue-analysis").rules] == ["40"]


def test_load_presets_rejects_invalid_rules(tmp_path: Path) -> None:
    path = tmp_path / "presets.toml"
    path.write_text(
        '[presets.bad]\n[[presets.bad.rules]]\ntype = "regex"\npattern = "("\n',
        encoding="utf-8",
    )

    with pytest.raises(ConfigurationError, match="rule-0"):
        load_presets(path)


def test_load_presets_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_presets(tmp_path / "missing.toml")


def test_parse_rule_defaults() -> None:
    rule = parse_rule({"pattern": "36"}, 3)

    assert rule.id == "rule-3"
    assert rule.name == "rule-3"
    assert rule.type == "startsWith"
    assert rule.action == "exclude"
    assert rule.enabled is True


def test_exclude_patterns_builder() -> None:
    config = exclude_patterns(["36", "39"])

    assert config.enabled is True
    assert config.combine_mode == "AND"
    assert [r.id for r in config.rules] == ["exclude-pattern-0", "exclude-pattern-1"]
    assert {r.action for r in config.rules} == {"exclude"}

    f = AccountCodeFilter(config)
    assert f.should_include("3000") is True
    assert f.should_include("3910") is False


def test_include_patterns_builder_uses_or() -> None:
    config = include_patterns(["30", "31"], description="Personnel and goods")

    assert config.combine_mode == "OR"
    assert config.rules[0].description == "Personnel and goods"

    f = AccountCodeFilter(config)
    assert f.should_include("3000") is True
    assert f.should_include("3100") is True
    assert f.should_include("3600") is False
