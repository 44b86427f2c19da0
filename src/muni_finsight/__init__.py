# Municipal FinSight - Public finance statement browser
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Municipal FinSight
------------------

A Python-based browser for the published financial statements of Swiss
municipalities (GDN) and aggregated public-sector units (STD), built on
the HRM2 chart of accounts.

Main capabilities:
- static chart of accounts turned into balance sheet and income statement
  trees (aggregation computed on read),
- integration of raw account records from several datasets side by side,
- account code filters with rules and presets,
- per-entity scaling (per capita, per km2, custom formulas),
- locale-aware number formatting with magnitude units (K, M, Mio, Md),
- extraction of account values across entities for variance analysis,
- least-squares fitting of scaling formulas that even out chosen accounts.

Version: 0.1.0

Usage:
    muni-finsight --help
"""

__all__ = [
    "accounts",
    "catalog",
    "datasets",
    "extractor",
    "filters",
    "formatting",
    "integrator",
    "optimization",
    "tree",
    "views",
]

__version__ = "0.1.0"
