# Municipal FinSight - Public finance statement browser
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Configuration helpers for Municipal FinSight.

This module is responsible for:
- loading the application configuration from a TOML file,
- exposing typed dataclasses used by the rest of the application,
- turning the [filters] section into a FilterConfig.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover - fallback for older Python
    import tomli as tomllib  # type: ignore[import]

from .errors import ConfigurationError
from .extractor import DEFAULT_TARGET_CV
from .filters import COMBINE_MODES, FilterConfig, FilterRule
from .optimization import ACCOUNT_CODE_R_SQUARED_THRESHOLD
from .presets import PresetCatalog, parse_rules

DEFAULT_CONFIG_FILE = "muni_finsight_config.toml"

VIEWS = ("simplified", "regular", "complete")
DISPLAY_MODES = ("table", "csv", "both")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class DataConfig:
    """Where datasets and reference data are read from."""

    records_dir: Path
    catalog_dir: Optional[Path] = None
    codes_dir: Optional[Path] = None
    scaling_file: Optional[Path] = None
    datasets: tuple[str, ...] = ()


@dataclass(frozen=True)
class DisplayConfig:
    language: str = "de"
    locale: str = "de-CH"
    currency: str = "CHF"
    scaling: bool = True
    threshold: float = 1000
    precision: int = 1
    use_abbreviated: bool = True
    view: str = "complete"
    mode: str = "table"


@dataclass(frozen=True)
class FilterSettings:
    enabled: bool = False
    combine_mode: str = "AND"
    log_filtered: bool = False
    preset: Optional[str] = None
    presets_file: Optional[Path] = None
    rules: tuple[FilterRule, ...] = ()


@dataclass(frozen=True)
class AnalysisConfig:
    target_cv: float = DEFAULT_TARGET_CV
    account_codes: tuple[str, ...] = ()
    min_r_squared: float = ACCOUNT_CODE_R_SQUARED_THRESHOLD
    include_intercept: bool = True


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "WARNING"


@dataclass(frozen=True)
class AppConfig:
    """
    Application-wide configuration for Municipal FinSight.

    This aggregates:
    - the data locations and the datasets to load,
    - display options (language, locale, unit scaling, view),
    - the account code filter,
    - analysis options,
    - logging options.
    """

    data: DataConfig
    display: DisplayConfig = field(default_factory=DisplayConfig)
    filters: FilterSettings = field(default_factory=FilterSettings)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _load_toml(path: Path) -> dict[str, Any]:
    """
    Load a TOML file and return its content as a dictionary.

    Raises:
        FileNotFoundError: if the file does not exist.
        ValueError: if the TOML content cannot be parsed or is not a table.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise ValueError(f"Failed to parse TOML config file: {path}") from exc

    if not isinstance(data, dict):
        raise ValueError(f"Invalid TOML root type in {path}, expected a table.")

    return data


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, Mapping):
        return {}
    return section


def _choice(value: Any, choices: tuple[str, ...], name: str) -> str:
    text = str(value)
    if text not in choices:
        raise ValueError(
            f"Invalid value {text!r} for '{name}'. Expected one of: {', '.join(choices)}."
        )
    return text


def _parse_data(section: Mapping[str, Any], base_dir: Path) -> DataConfig:
    def _resolve_optional(rel: Any) -> Optional[Path]:
        if not rel:
            return None
        return (base_dir / str(rel)).resolve()

    raw_datasets = section.get("datasets") or []
    if isinstance(raw_datasets, str):
        raw_datasets = [raw_datasets]

    return DataConfig(
        records_dir=(base_dir / str(section.get("records_dir") or "data")).resolve(),
        catalog_dir=_resolve_optional(section.get("catalog_dir")),
        codes_dir=_resolve_optional(section.get("codes_dir")),
        scaling_file=_resolve_optional(section.get("scaling_file")),
        datasets=tuple(str(d) for d in raw_datasets),
    )


def _parse_display(section: Mapping[str, Any]) -> DisplayConfig:
    try:
        threshold = float(section.get("threshold", 1000))
        precision = int(section.get("precision", 1))
    except (TypeError, ValueError) as exc:
        raise ValueError(
            "Invalid [display] threshold/precision, expected numbers."
        ) from exc

    if threshold <= 0 or precision < 0:
        raise ValueError("[display] threshold must be > 0 and precision >= 0.")

    return DisplayConfig(
        language=str(section.get("language", "de")),
        locale=str(section.get("locale", "de-CH")),
        currency=str(section.get("currency", "CHF")),
        scaling=bool(section.get("scaling", True)),
        threshold=threshold,
        precision=precision,
        use_abbreviated=bool(section.get("use_abbreviated", True)),
        view=_choice(section.get("view", "complete"), VIEWS, "display.view"),
        mode=_choice(section.get("mode", "table"), DISPLAY_MODES, "display.mode"),
    )


def _parse_filters(section: Mapping[str, Any], base_dir: Path) -> FilterSettings:
    combine_mode = str(section.get("combine_mode", "AND")).upper()
    if combine_mode not in COMBINE_MODES:
        raise ConfigurationError(
            f"Invalid [filters] combine_mode '{combine_mode}'. Expected 'AND' or 'OR'."
        )

    presets_file = section.get("presets_file")
    return FilterSettings(
        enabled=bool(section.get("enabled", False)),
        combine_mode=combine_mode,
        log_filtered=bool(section.get("log_filtered", False)),
        preset=str(section["preset"]) if section.get("preset") else None,
        presets_file=(base_dir / str(presets_file)).resolve() if presets_file else None,
        rules=tuple(parse_rules(section.get("rules"))),
    )


def load_app_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Load the Municipal FinSight configuration from a TOML file.

    Expected top-level sections in the TOML file
    --------------------------------------------
    [data]
        records_dir, catalog_dir, codes_dir, scaling_file, datasets.

    [display]
        language, locale, currency, scaling, threshold, precision,
        use_abbreviated, view, mode.

    [filters]
        enabled, combine_mode, log_filtered, preset, presets_file and
        optional [[filters.rules]] tables.

    [analysis]
        target_cv, account_codes, min_r_squared, include_intercept.

    [logging]
        level.

    All sections are optional. File paths are resolved relative to the
    directory of the TOML file itself.

    Raises:
        FileNotFoundError: if the file does not exist.
        ValueError: if the TOML cannot be parsed or a value is invalid.
        ConfigurationError: if a filter rule is invalid.
    """
    if config_path is None:
        config_file = Path(DEFAULT_CONFIG_FILE).resolve()
    else:
        config_file = Path(config_path).resolve()

    raw = _load_toml(config_file)
    base_dir = config_file.parent

    analysis_section = _section(raw, "analysis")
    try:
        target_cv = float(analysis_section.get("target_cv", DEFAULT_TARGET_CV))
        min_r_squared = float(
            analysis_section.get("min_r_squared", ACCOUNT_CODE_R_SQUARED_THRESHOLD)
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(
            "Invalid [analysis] target_cv/min_r_squared, expected numbers."
        ) from exc

    logging_section = _section(raw, "logging")
    level = str(logging_section.get("level", "WARNING")).upper()

    return AppConfig(
        data=_parse_data(_section(raw, "data"), base_dir),
        display=_parse_display(_section(raw, "display")),
        filters=_parse_filters(_section(raw, "filters"), base_dir),
        analysis=AnalysisConfig(
            target_cv=target_cv,
            account_codes=tuple(
                str(c) for c in analysis_section.get("account_codes") or []
            ),
            min_r_squared=min_r_squared,
            include_intercept=bool(analysis_section.get("include_intercept", True)),
        ),
        logging=LoggingConfig(level=_choice(level, LOG_LEVELS, "logging.level")),
    )


def build_filter_config(
    settings: FilterSettings, presets: Optional[PresetCatalog] = None
) -> FilterConfig:
    """Return the FilterConfig described by ``settings``.

    A preset, when named, replaces the inline rules entirely.

    Raises:
        ConfigurationError: if the preset id is unknown.
    """
    if settings.preset:
        catalog = presets if presets is not None else PresetCatalog(settings.presets_file)
        config = catalog.get(settings.preset)
        if config is None:
            raise ConfigurationError(
                f"Unknown filter preset '{settings.preset}'. "
                f"Available presets: {', '.join(catalog.ids())}"
            )
        config.log_filtered = config.log_filtered or settings.log_filtered
        return config

    return FilterConfig(
        enabled=settings.enabled,
        rules=list(settings.rules),
        combine_mode=settings.combine_mode,
        log_filtered=settings.log_filtered,
    )
