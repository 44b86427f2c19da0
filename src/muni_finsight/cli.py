# Municipal FinSight - Public finance statement browser
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Command-Line Interface (CLI) for Municipal FinSight.

This module wires together the main building blocks of Municipal FinSight:

- global configuration (data locations, display, filters, logging),
- the chart of accounts and the empty balance sheet / income statement,
- raw-record loading and the entity catalog,
- the data integrator and the multi-dataset store,
- per-entity scaling and unit scaling of the displayed numbers,
- view helpers (detail levels and tabular rendering).

The CLI is intentionally thin: it does not implement any financial logic
itself. It orchestrates the underlying modules based on command-line
arguments and the TOML configuration.


High-level pipeline
-------------------

1) Load the TOML configuration (muni_finsight_config.toml by default)
   using ``load_app_config()``. When no --config is given and the default
   file does not exist, built-in defaults are used.

2) Configure logging from [logging].level or --log-level.

3) Build the filter configuration from [filters] (or --filter-preset),
   the raw-record source, the optional entity catalog and the
   ``DataIntegrator``.

4) Load the selected datasets (--dataset, repeatable, or [data].datasets)
   with ``FinancialDataStore.load_datasets()``. The first failing dataset
   aborts the run with ``Dataset <id>: <reason>``.

5) Optionally apply a per-entity scaling (--scaling pop, or
   --scaling "custom:pop/1000") using the table in [data].scaling_file.
   With --optimize-scaling, the custom formula is fitted instead so that
   the analyzed account codes become as similar as possible across the
   entities (least squares over the factors of the scaling table).

6) Flatten the income statement and/or balance sheet into tables, keep
   the requested level of detail and render them as console tables
   (numbers formatted with magnitude units) and/or raw CSV files.

7) Optionally analyze a list of account codes across the loaded
   entities (--analyze-codes): code validation and variance targets.


Dataset identifiers
-------------------
``{source}/{model}/{entityId}:{year}``, for example::

    gdn/fs/010002:2022     municipality 010002, model fs, year 2022
    std/fs/gdn_zh:2021     all municipalities of canton Zurich, 2021


Examples
--------
    muni-finsight --dataset gdn/fs/010002:2022 --dataset gdn/fs/010003:2022
    muni-finsight --config muni_finsight_config.toml --view simplified
    muni-finsight --dataset gdn/fs/010002:2022 --statement balance --lang fr
    muni-finsight --filter-preset operational-only --display-mode csv
    muni-finsight --dataset gdn/fs/010002:2022 --dataset gdn/fs/010003:2022 \
        --dataset gdn/fs/010004:2022 --optimize-scaling --analyze-codes 30 400+401
    muni-finsight --list-presets
"""

import argparse
import logging
import math
import sys
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Optional

import pandas as pd

from . import __version__
from .catalog import EntityCatalog
from .config import (
    DEFAULT_CONFIG_FILE,
    DISPLAY_MODES,
    LOG_LEVELS,
    VIEWS,
    AppConfig,
    DataConfig,
    build_filter_config,
    load_app_config,
)
from .datasets import FinancialDataStore
from .errors import ConfigurationError
from .extractor import validate_account_codes
from .filters import FilterConfig
from .formatting import UnitScalingConfig, UnitScalingFormatter
from .integrator import DataIntegrator
from .io import CsvRecordSource
from .optimization import (
    OptimizationResult,
    optimize_for_account_codes,
    parse_code_groups,
    prepare_code_group_targets,
)
from .presets import PresetCatalog
from .scaling import TableScalingProvider
from .tree import LANGUAGES, FinancialData
from .views import apply_view_level_filter, entity_labels, format_frame, tree_to_frame

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s - %(message)s"

STATEMENT_TITLES = {
    "income": {
        "de": "Erfolgsrechnung",
        "fr": "Compte de résultats",
        "it": "Conto economico",
        "en": "Income Statement",
    },
    "balance": {
        "de": "Bilanz",
        "fr": "Bilan",
        "it": "Bilancio",
        "en": "Balance Sheet",
    },
}


def _build_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the CLI."""
    ap = argparse.ArgumentParser(
        prog="muni-finsight",
        description=(
            "Municipal FinSight - Public finance statement browser. "
            "Loads the financial statements of Swiss municipalities and "
            "public-sector units, integrates them into the HRM2 chart of "
            "accounts and renders balance sheets and income statements "
            "side by side."
        ),
    )

    # Generic options
    ap.add_argument(
        "--version",
        action="store_true",
        help="Show the installed version of muni_finsight and exit.",
    )

    ap.add_argument(
        "--config",
        dest="config_path",
        help=(
            "Path to the main TOML configuration file. "
            f"If omitted, '{DEFAULT_CONFIG_FILE}' in the current directory is "
            "used when it exists."
        ),
    )

    ap.add_argument(
        "--log-level",
        dest="log_level",
        choices=LOG_LEVELS,
        help="Override the [logging] level from the configuration.",
    )

    # Dataset selection
    ap.add_argument(
        "--dataset",
        dest="datasets",
        action="append",
        metavar="SOURCE/MODEL/ENTITY:YEAR",
        help=(
            "Dataset to load, e.g. gdn/fs/010002:2022. Repeat the option to "
            "compare several entities or years. Overrides [data].datasets."
        ),
    )

    # Filtering
    ap.add_argument(
        "--filter-preset",
        dest="filter_preset",
        metavar="PRESET_ID",
        help=(
            "Apply a predefined account code filter (see --list-presets). "
            "Replaces the [filters] rules from the configuration."
        ),
    )
    ap.add_argument(
        "--list-presets",
        action="store_true",
        help="List the available filter presets and exit.",
    )

    # Scaling
    scaling = ap.add_mutually_exclusive_group()
    scaling.add_argument(
        "--scaling",
        metavar="SCALING_ID",
        help=(
            "Divide each entity's amounts by a per-entity factor read from "
            "[data].scaling_file (e.g. 'pop' for per-capita values), or by "
            "a formula of such factors: 'custom:pop/1000'."
        ),
    )
    scaling.add_argument(
        "--optimize-scaling",
        dest="optimize_scaling",
        action="store_true",
        help=(
            "Fit the custom scaling formula that makes the analyzed account "
            "codes most similar across entities (see --analyze-codes), print "
            "the fit and apply the formula."
        ),
    )

    # Display
    ap.add_argument(
        "--statement",
        choices=["income", "balance", "both"],
        default="both",
        help="Statement(s) to render. Default: both.",
    )
    ap.add_argument(
        "--view",
        choices=VIEWS,
        help=(
            "Level of detail: simplified (main groups), regular (two levels) "
            "or complete (all accounts). Overrides [display].view."
        ),
    )
    ap.add_argument(
        "--lang",
        choices=LANGUAGES,
        help="Label language. Overrides [display].language.",
    )
    ap.add_argument(
        "--no-scaling",
        dest="no_scaling",
        action="store_true",
        help="Show full numbers instead of magnitude units (K, M, ...).",
    )
    ap.add_argument(
        "--threshold",
        type=float,
        help="Smallest absolute value shown with a magnitude unit.",
    )
    ap.add_argument(
        "--precision",
        type=int,
        help="Maximum number of decimals of displayed numbers.",
    )
    ap.add_argument(
        "--full-units",
        dest="full_units",
        action="store_true",
        help="Use full unit names (Million) instead of abbreviations (M).",
    )
    ap.add_argument(
        "--currency",
        help=(
            "Currency code used when rendering amounts. Pass an empty string "
            "to render plain numbers. Overrides [display].currency."
        ),
    )
    ap.add_argument(
        "--display-mode",
        dest="display_mode",
        choices=DISPLAY_MODES,
        help=(
            "Display mode: 'table' (print to console), 'csv' (write CSV "
            "files) or 'both'. Overrides [display].mode."
        ),
    )
    ap.add_argument(
        "--output",
        dest="output_dir",
        help="Directory for CSV files when display mode is csv or both.",
    )

    # Analysis
    ap.add_argument(
        "--analyze-codes",
        dest="analyze_codes",
        nargs="*",
        metavar="CODE",
        help=(
            "Analyze account codes across the loaded entities (values, "
            "variance and coefficient of variation). Codes joined with '+' "
            "(400+401) are summed. Without codes, [analysis].account_codes "
            "is used."
        ),
    )

    return ap


def _load_config(config_path: Optional[str]) -> AppConfig:
    """Load the configuration, falling back to defaults without a file."""
    if config_path:
        return load_app_config(config_path)
    if Path(DEFAULT_CONFIG_FILE).is_file():
        return load_app_config()
    return AppConfig(data=DataConfig(records_dir=Path("data").resolve()))


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT)


def _print_presets(presets: PresetCatalog) -> None:
    print("=== Filter presets ===")
    for preset in presets.all():
        print(f"- {preset.id}: {preset.name}")
        if preset.description:
            print(f"    {preset.description}")
        for rule in preset.config.rules:
            print(f"    [{rule.action}] {rule.type} '{rule.pattern}' ({rule.name})")


def _build_formatter(config: AppConfig, args: argparse.Namespace) -> UnitScalingFormatter:
    display = config.display
    threshold = args.threshold if args.threshold is not None else display.threshold
    precision = args.precision if args.precision is not None else display.precision

    if args.no_scaling or not display.scaling:
        threshold = math.inf

    return UnitScalingFormatter(
        UnitScalingConfig(
            threshold=threshold,
            precision=precision,
            use_abbreviated=display.use_abbreviated and not args.full_units,
        )
    )


def _build_store(config: AppConfig, filter_config: FilterConfig) -> FinancialDataStore:
    catalog = (
        EntityCatalog.from_directory(config.data.catalog_dir)
        if config.data.catalog_dir is not None
        else None
    )
    integrator = DataIntegrator(
        CsvRecordSource(config.data.records_dir),
        catalog=catalog,
        filter_config=filter_config,
    )

    provider = None
    if config.data.scaling_file is not None:
        provider = TableScalingProvider.from_csv(config.data.scaling_file)

    return FinancialDataStore(
        integrator,
        scaling_provider=provider,
        scaling_variables=provider.ids() if provider is not None else None,
        codes_dir=config.data.codes_dir,
    )


def _statement_frames(
    data: FinancialData, statements: list[str], language: str, view: str
) -> dict[str, pd.DataFrame]:
    income, balance = data.trees()
    trees = {"income": income, "balance": balance}
    frames = {}
    for name in statements:
        df = tree_to_frame(trees[name], data, language=language)
        frames[name] = apply_view_level_filter(df, view)
    return frames


def _print_analysis(data: FinancialData, codes: list[str], target_cv: float) -> None:
    groups = parse_code_groups(codes)
    validation = validate_account_codes(data, [c for g in groups for c in g])
    print()
    print("=== Account code analysis ===")
    if validation.invalid:
        print(f"No data for: {', '.join(validation.invalid)}")

    _, summary = prepare_code_group_targets(data, groups, target_cv)
    if not summary:
        print("No account code has values in two or more entities.")
        return

    df = pd.DataFrame(
        [
            {
                "code": s.account_code,
                "entities": s.entity_count,
                "mean": round(s.mean_value, 2),
                "variance": round(s.current_variance, 2),
                "cv": round(s.current_cv, 4),
            }
            for s in summary
        ]
    )
    print(df.to_string(index=False))
    print(f"Target coefficient of variation: {target_cv}")


def _print_optimization(result: OptimizationResult) -> None:
    print()
    print("=== Scaling optimization ===")
    print(f"Formula: {result.scaling_id}")
    if result.r_squared is not None:
        print(f"R²: {result.r_squared:.4f}")
    print(f"Entities: {result.entity_count}, account codes: {result.target_line_count}")
    if result.account_summary:
        df = pd.DataFrame(
            [
                {
                    "code": s.account_code,
                    "entities": s.entity_count,
                    "cv_before": round(s.before_cv, 4),
                    "cv_after": round(s.after_cv, 4),
                    "improvement_pct": round(s.improvement, 1),
                }
                for s in result.account_summary
            ]
        )
        print(df.to_string(index=False))


def main(argv: Optional[list[str]] = None) -> None:
    """Entry point for the Municipal FinSight CLI.

    This function parses command-line arguments, loads the configuration,
    sets up logging, builds the filter, integrator and dataset store, loads
    the selected datasets, applies the optional per-entity scaling and
    renders the requested statements as console tables and/or CSV files.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    # --version: short-circuit and exit early.
    if args.version:
        print(f"muni_finsight version {__version__}")
        return

    # 1) Load application configuration
    try:
        config = _load_config(args.config_path)
    except (FileNotFoundError, ValueError) as exc:
        parser.error(str(exc))

    # 2) Logging and number formatting
    _configure_logging(args.log_level or config.logging.level)
    try:
        formatter = _build_formatter(config, args)
    except ValueError as exc:
        parser.error(str(exc))

    # 3) Filter presets and filter configuration
    presets = PresetCatalog(config.filters.presets_file)
    if args.list_presets:
        _print_presets(presets)
        return

    filter_settings = config.filters
    if args.filter_preset:
        filter_settings = replace(filter_settings, preset=args.filter_preset)
    try:
        filter_config = build_filter_config(filter_settings, presets)
    except ConfigurationError as exc:
        parser.error(str(exc))

    # 4) Datasets
    datasets = args.datasets or list(config.data.datasets)
    if not datasets:
        parser.error(
            "No dataset selected. Use --dataset SOURCE/MODEL/ENTITY:YEAR "
            "or set [data].datasets in the configuration."
        )

    try:
        store = _build_store(config, filter_config)
    except (FileNotFoundError, ValueError) as exc:
        parser.error(str(exc))

    optimize_codes = args.analyze_codes or list(config.analysis.account_codes)
    if args.optimize_scaling:
        if store.scaling_provider is None:
            parser.error("--optimize-scaling requires [data].scaling_file.")
        if not optimize_codes:
            parser.error(
                "--optimize-scaling needs account codes: use --analyze-codes "
                "or set [analysis].account_codes."
            )

    stats = store.integrator.get_filter_stats()
    if stats.is_active:
        print(
            f"Account code filter active: {stats.enabled_rules} rule(s) "
            f"({stats.include_rules} include, {stats.exclude_rules} exclude)."
        )

    store.set_datasets(datasets)
    if not store.load_datasets():
        print(f"Error: {store.error}", file=sys.stderr)
        sys.exit(1)

    data = store.combined_financial_data
    if data.unused_codes:
        print(
            f"Warning: {len(data.unused_codes)} account code(s) are not in the "
            "chart of accounts and were ignored."
        )

    # 5) Per-entity scaling
    if args.scaling:
        store.set_scaling(args.scaling)
        if store.error:
            print(f"Error: {store.error}", file=sys.stderr)
            sys.exit(1)
    elif args.optimize_scaling:
        factor_ids = list(store.scaling_variables or [])
        result = optimize_for_account_codes(
            data,
            optimize_codes,
            factor_ids,
            store.entity_scaling_variables(factor_ids),
            min_r_squared=config.analysis.min_r_squared,
            include_intercept=config.analysis.include_intercept,
        )
        if not result.is_valid:
            print(f"Error: Scaling optimization failed: {result.error}", file=sys.stderr)
            sys.exit(1)
        _print_optimization(result)
        store.set_scaling(result.scaling_id)
        if store.error:
            print(f"Error: {store.error}", file=sys.stderr)
            sys.exit(1)

    # 6) Statements
    language = args.lang or config.display.language
    view = args.view or config.display.view
    statements = ["income", "balance"] if args.statement == "both" else [args.statement]
    frames = _statement_frames(data, statements, language, view)
    headers = entity_labels(data, language)

    display_mode = args.display_mode or config.display.mode

    if display_mode in {"table", "both"}:
        currency = config.display.currency if args.currency is None else args.currency
        for name, df in frames.items():
            shown = format_frame(
                df, formatter, locale=config.display.locale, currency=currency or None
            )
            print()
            print(f"=== {STATEMENT_TITLES[name].get(language, name)} ===")
            print(shown.rename(columns=headers).to_string(index=False))

    if display_mode in {"csv", "both"}:
        output_dir = Path(args.output_dir) if args.output_dir else Path("data/output")
        output_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y-%m-%d-%H-%M-%S")

        for name, df in frames.items():
            path = output_dir / f"{name}_statement_{timestamp}.csv"
            df.rename(columns=headers).to_csv(path, index=False)
            print(f"Wrote {path} ({len(df)} rows)")

    # 7) Optional account code analysis
    if args.analyze_codes is not None:
        codes = args.analyze_codes or list(config.analysis.account_codes)
        if not codes:
            print("No account codes to analyze.")
        else:
            _print_analysis(data, codes, config.analysis.target_cv)


if __name__ == "__main__":
    main()
