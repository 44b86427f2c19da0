import math

import pytest

from muni_finsight.formatting import (
    DEFAULT_SCALING_UNITS,
    ScalingUnit,
    UnitScalingConfig,
    UnitScalingFormatter,
    format_currency_with_units,
    format_with_units,
    resolve_locale,
)


@pytest.fixture
def formatter() -> UnitScalingFormatter:
    return UnitScalingFormatter()


def test_values_below_threshold_are_not_scaled(formatter) -> None:
    result = formatter.format(999, "en")

    assert result.value == 999
    assert result.unit == ""
    assert result.formatted == "999"
    assert result.scaling_factor == 1
    assert result.original == 999


@pytest.mark.parametrize(
    "value, scaled, unit, formatted, factor",
    [
        (1000, 1, "K", "1K", 1e3),
        (1500, 1.5, "K", "1.5K", 1e3),
        (-1500, -1.5, "K", "-1.5K", 1e3),
        (2_500_000, 2.5, "M", "2.5M", 1e6),
        (3_500_000_000, 3.5, "B", "3.5B", 1e9),
        (1_500_000_000_000, 1.5, "T", "1.5T", 1e12),
    ],
)
def test_scaling_picks_largest_fitting_unit(formatter, value, scaled, unit, formatted, factor) -> None:
    result = formatter.format(value, "en")

    assert result.value == pytest.approx(scaled)
    assert result.unit == unit
    assert result.formatted == formatted
    assert result.scaling_factor == factor


def test_zero(formatter) -> None:
    result = formatter.format(0, "en")
    assert (result.value, result.unit, result.formatted) == (0, "", "0")


@pytest.mark.parametrize(
    "locale, unit", [("en", "K"), ("de", "T"), ("fr", "k"), ("it", "k"), ("de-CH", "T")]
)
def test_unit_labels_follow_locale_language(formatter, locale, unit) -> None:
    assert formatter.format(1500, locale).unit == unit


def test_german_million_uses_decimal_comma(formatter) -> None:
    result = formatter.format(2_300_000, "de")

    assert result.unit == "Mio"
    assert result.formatted == "2,3Mio"


def test_unknown_locale_falls_back_to_english(formatter) -> None:
    result = formatter.format(1500, "invalid-locale")

    assert result.unit == "K"
    assert result.formatted == "1.5K"
    assert resolve_locale("xx").language == "en"


def formatter_for(locale: str) -> UnitScalingFormatter:
    return UnitScalingFormatter(force_locale=locale)


def test_unknown_language_label_falls_back_to_english() -> None:
    assert formatter_for("es").format(1500, "es").unit == "K"


def test_force_locale_overrides_call_locale() -> None:
    result = formatter_for("de").format(2_300_000, "en")
    assert result.formatted == "2,3Mio"


def test_full_unit_names(formatter) -> None:
    formatter.update_config(use_abbreviated=False)

    result = formatter.format(1500, "en")
    assert result.unit == "Thousand"
    assert result.formatted == "1.5Thousand"
    assert formatter.format(2_000_000, "de").unit == "Million"


def test_precision_rounds_half_up(formatter) -> None:
    formatter.update_config(precision=0)
    assert formatter.format(1567, "en").formatted == "2K"
    assert formatter.format(2500, "en").formatted == "3K"

    formatter.update_config(precision=2)
    assert formatter.format(1005, "en").formatted == "1.01K"
    assert formatter.format(1234.5, "en").formatted == "1.23K"


def test_update_config_changes_next_call(formatter) -> None:
    assert formatter.format(1500, "en").formatted == "1.5K"

    formatter.update_config(threshold=5000)

    assert formatter.format(1500, "en").formatted == "1,500"
    assert formatter.get_config().threshold == 5000


def test_update_config_rejects_invalid_values(formatter) -> None:
    with pytest.raises(ValueError):
        formatter.update_config(precision=-1)
    with pytest.raises(ValueError):
        formatter.update_config(threshold=0)
    with pytest.raises(ValueError):
        formatter.update_config(colour="red")

    assert formatter.get_config() == UnitScalingConfig()


def test_infinite_threshold_disables_scaling() -> None:
    formatter = UnitScalingFormatter(threshold=math.inf)

    result = formatter.format(1_234_567_890, "en")
    assert result.unit == ""
    assert result.formatted == "1,234,567,890"


def test_non_finite_values_are_not_scaled(formatter) -> None:
    assert formatter.format(float("nan"), "en").formatted == "NaN"

    result = formatter.format(float("-inf"), "en")
    assert result.unit == ""
    assert result.formatted.startswith("-")


def test_small_values_keep_precision(formatter) -> None:
    assert formatter.format(12.345, "en").formatted == "12.3"
    assert formatter.format(-0.01, "en").formatted == "0"


def test_currency_formatting(formatter) -> None:
    scaled = formatter.format_currency(1500, "en", "CHF")
    assert "CHF" in scaled.formatted
    assert scaled.formatted.endswith("1.5K")
    assert scaled.unit == "K"

    small = formatter.format_currency(999, "en", "CHF")
    assert "CHF" in small.formatted and "999" in small.formatted
    assert small.unit == ""

    assert "$" in formatter.format_currency(1500, "en", "USD").formatted


def test_scaling_units_can_be_replaced(formatter) -> None:
    hundred = ScalingUnit(
        factor=100,
        abbreviated={"de": "H", "en": "H", "fr": "C", "it": "C"},
        full={"de": "Hundert", "en": "Hundred", "fr": "Cent", "it": "Cento"},
    )
    ten_k = ScalingUnit(factor=10_000, abbreviated={"en": "TK"}, full={"en": "Ten thousand"})

    formatter.update_scaling_units([hundred, ten_k])
    formatter.update_config(threshold=100)

    assert [u.factor for u in formatter.get_scaling_units()] == [10_000, 100]
    assert formatter.format(250, "en").formatted == "2.5H"
    assert formatter.format(25_000, "en").formatted == "2.5TK"


def test_default_units_are_sorted_descending() -> None:
    factors = [u.factor for u in DEFAULT_SCALING_UNITS]
    assert factors == sorted(factors, reverse=True)
    for unit in DEFAULT_SCALING_UNITS:
        assert set(unit.abbreviated) == {"de", "en", "fr", "it"}
        assert set(unit.full) == {"de", "en", "fr", "it"}


def test_convenience_functions() -> None:
    assert format_with_units(1500, "en").formatted == "1.5K"
    assert format_with_units(1500, "en", use_abbreviated=False).formatted == "1.5Thousand"

    currency = format_currency_with_units(1500, "en", "CHF", precision=0)
    assert "CHF" in currency.formatted
    assert currency.formatted.endswith("2K")
