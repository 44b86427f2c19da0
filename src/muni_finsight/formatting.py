# Municipal FinSight - Public finance statement browser
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Unit scaling formatter for Municipal FinSight.

Large amounts are displayed with a magnitude unit instead of all their
digits: ``1500`` -> ``1.5K``, ``2300000`` -> ``2.3M`` (``2,3 Mio`` style
labels in German, ``Md`` in French, and so on).

Rules
-----
- ``|value| < threshold``: the value is rendered unscaled (locale
  grouping, at most ``precision`` decimals) with an empty unit.
- Otherwise the largest unit whose factor is <= ``|value|`` is chosen
  from a table sorted in descending order (10^12, 10^9, 10^6, 10^3), the
  value is divided by that factor, rounded half-up to ``precision``
  decimals and followed by the unit label of the requested language
  (English label when the language is missing).
- ``threshold = math.inf`` disables scaling.

Number rendering (grouping, decimal mark, currency placement) uses CLDR
locale data through Babel. Locale tags such as ``de``, ``de-CH`` or
``de_CH`` are accepted; unknown locales fall back to English.

The formatter keeps its configuration and unit table as state, and
:meth:`UnitScalingFormatter.update_config` changes the behavior of the
next call without building a new formatter.
"""

import math
import re
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from typing import Any, Optional

from babel import Locale, UnknownLocaleError
from babel.numbers import format_currency as babel_format_currency
from babel.numbers import format_decimal, get_infinity_symbol

DEFAULT_LOCALE = "en"
DEFAULT_CURRENCY = "CHF"


@dataclass(frozen=True)
class UnitScalingConfig:
    threshold: float = 1000
    precision: int = 1
    use_abbreviated: bool = True
    force_locale: Optional[str] = None


@dataclass(frozen=True)
class ScalingUnit:
    """A magnitude unit with its labels per language."""

    factor: float
    abbreviated: dict[str, str] = field(default_factory=dict)
    full: dict[str, str] = field(default_factory=dict)

    def label(self, language: str, abbreviated: bool = True) -> str:
        labels = self.abbreviated if abbreviated else self.full
        return labels.get(language) or labels.get("en", "")


@dataclass(frozen=True)
class FormattedNumber:
    """
    Result of a formatting call.

    Attributes:
        value: Scaled value (value / scaling_factor), not rounded.
        unit: Unit label, empty when the value was not scaled.
        formatted: Display string.
        original: Value passed in.
        scaling_factor: Divisor applied, 1 when not scaled.
    """

    value: float
    unit: str
    formatted: str
    original: float
    scaling_factor: float


DEFAULT_SCALING_UNITS: tuple[ScalingUnit, ...] = (
    ScalingUnit(
        factor=1e12,
        abbreviated={"de": "T", "en": "T", "fr": "T", "it": "T"},
        full={"de": "Billion", "en": "Trillion", "fr": "Billion", "it": "Trilione"},
    ),
    ScalingUnit(
        factor=1e9,
        abbreviated={"de": "Mrd", "en": "B", "fr": "Md", "it": "Mrd"},
        full={"de": "Milliarde", "en": "Billion", "fr": "Milliard", "it": "Miliardo"},
    ),
    ScalingUnit(
        factor=1e6,
        abbreviated={"de": "Mio", "en": "M", "fr": "M", "it": "Mln"},
        full={"de": "Million", "en": "Million", "fr": "Million", "it": "Milione"},
    ),
    ScalingUnit(
        factor=1e3,
        abbreviated={"de": "T", "en": "K", "fr": "k", "it": "k"},
        full={"de": "Tausend", "en": "Thousand", "fr": "Millier", "it": "Migliaio"},
    ),
)

_CONFIG_FIELDS = ("threshold", "precision", "use_abbreviated", "force_locale")


@lru_cache(maxsize=64)
def resolve_locale(tag: Optional[str]) -> Locale:
    """Parse a locale tag, falling back to English when unknown."""
    if tag:
        try:
            return Locale.parse(str(tag).replace("-", "_"))
        except (UnknownLocaleError, ValueError, TypeError):
            pass
    return Locale.parse(DEFAULT_LOCALE)


def _decimal_pattern(precision: int) -> str:
    return "#,##0" + ("." + "#" * precision if precision > 0 else "")


@lru_cache(maxsize=64)
def _currency_pattern(locale_tag: str, precision: int) -> str:
    """Locale currency pattern showing 0..precision fraction digits."""
    pattern = Locale.parse(locale_tag).currency_formats["standard"].pattern
    fraction = "." + "#" * precision if precision > 0 else ""
    return re.sub(r"0\.0+", "0" + fraction, pattern)


def _round_half_up(value: float, precision: int) -> Decimal:
    quantum = Decimal(1).scaleb(-precision)
    rounded = Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    # Avoid rendering "-0" for tiny negative values.
    return rounded if rounded != 0 else abs(rounded)


def _validate(config: UnitScalingConfig) -> None:
    if isinstance(config.precision, bool) or not isinstance(config.precision, int):
        raise ValueError(f"precision must be an integer, got {config.precision!r}")
    if config.precision < 0:
        raise ValueError("precision must be >= 0")
    if not config.threshold > 0:
        raise ValueError("threshold must be > 0")


class UnitScalingFormatter:
    """Formats numbers with magnitude units in a given locale."""

    def __init__(
        self,
        config: Optional[UnitScalingConfig] = None,
        units: Optional[list[ScalingUnit]] = None,
        **overrides: Any,
    ):
        base = config if config is not None else UnitScalingConfig()
        self._config = replace(base, **overrides) if overrides else base
        _validate(self._config)
        self._units: list[ScalingUnit] = list(
            units if units is not None else DEFAULT_SCALING_UNITS
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self) -> UnitScalingConfig:
        return self._config

    def update_config(self, **changes: Any) -> None:
        unknown = set(changes) - set(_CONFIG_FIELDS)
        if unknown:
            raise ValueError(f"Unknown formatter setting(s): {', '.join(sorted(unknown))}")
        new_config = replace(self._config, **changes)
        _validate(new_config)
        self._config = new_config

    def get_scaling_units(self) -> list[ScalingUnit]:
        return list(self._units)

    def update_scaling_units(self, units: list[ScalingUnit]) -> None:
        self._units = sorted(units, key=lambda u: u.factor, reverse=True)

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    def _locale(self, locale: Optional[str]) -> Locale:
        return resolve_locale(self._config.force_locale or locale)

    def _find_unit(self, abs_value: float) -> Optional[ScalingUnit]:
        for unit in self._units:
            if abs_value >= unit.factor:
                return unit
        return None

    def _scale(self, value: float, loc: Locale) -> tuple[float, str, float]:
        """Return (scaled value, unit label, factor)."""
        abs_value = abs(value)
        if not math.isfinite(value) or abs_value < self._config.threshold:
            return value, "", 1
        unit = self._find_unit(abs_value)
        if unit is None:
            return value, "", 1
        label = unit.label(loc.language, self._config.use_abbreviated)
        return value / unit.factor, label, unit.factor

    def _format_number(self, value: float, loc: Locale) -> str:
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            sign = "-" if value < 0 else ""
            return sign + get_infinity_symbol(loc)
        precision = self._config.precision
        return format_decimal(
            _round_half_up(value, precision),
            format=_decimal_pattern(precision),
            locale=loc,
        )

    def format(self, value: float, locale: Optional[str] = DEFAULT_LOCALE) -> FormattedNumber:
        """Format ``value`` with the best fitting unit for ``locale``."""
        value = float(value)
        loc = self._locale(locale)
        scaled, unit, factor = self._scale(value, loc)
        return FormattedNumber(
            value=scaled,
            unit=unit,
            formatted=f"{self._format_number(scaled, loc)}{unit}",
            original=value,
            scaling_factor=factor,
        )

    def format_currency(
        self,
        value: float,
        locale: Optional[str] = DEFAULT_LOCALE,
        currency: str = DEFAULT_CURRENCY,
    ) -> FormattedNumber:
        """Like :meth:`format`, with the scaled number rendered as currency.

        The unit label follows the currency-formatted number, e.g.
        ``CHF 1.5M`` in English.
        """
        value = float(value)
        loc = self._locale(locale)
        scaled, unit, factor = self._scale(value, loc)

        if math.isfinite(scaled):
            precision = self._config.precision
            number = babel_format_currency(
                _round_half_up(scaled, precision),
                currency,
                format=_currency_pattern(str(loc), precision),
                locale=loc,
                currency_digits=False,
            )
        else:
            number = f"{self._format_number(scaled, loc)} {currency}"

        return FormattedNumber(
            value=scaled,
            unit=unit,
            formatted=f"{number}{unit}",
            original=value,
            scaling_factor=factor,
        )


default_formatter = UnitScalingFormatter()


def format_with_units(
    value: float, locale: str = DEFAULT_LOCALE, **config: Any
) -> FormattedNumber:
    """Format with the default formatter, or a one-off one if ``config`` is given."""
    formatter = UnitScalingFormatter(**config) if config else default_formatter
    return formatter.format(value, locale)


def format_currency_with_units(
    value: float,
    locale: str = DEFAULT_LOCALE,
    currency: str = DEFAULT_CURRENCY,
    **config: Any,
) -> FormattedNumber:
    formatter = UnitScalingFormatter(**config) if config else default_formatter
    return formatter.format_currency(value, locale, currency)
