# Municipal FinSight - Public finance statement browser
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Filter presets for Municipal FinSight.

A preset is a named, complete :class:`~muni_finsight.filters.FilterConfig`.
Built-in presets are shipped in ``muni_finsight/data/presets.toml``:

- exclude-transfer-expenses   exclude codes starting with 36
- exclude-internal-transfers  exclude codes starting with 36 or 39
- operational-only            include codes matching ^[34]
- revenue-analysis            include codes starting with 4
- expense-analysis            include codes starting with 3, exclude 36

Users can add their own presets in a TOML file with the same layout::

    [presets.no-depreciation]
    name = "Without depreciation"
    combine_mode = "AND"

    [[presets.no-depreciation.rules]]
    id = "exclude-33"
    name = "Exclude depreciation"
    type = "startsWith"
    pattern = "33"
    action = "exclude"

Custom presets override built-in presets with the same id.

Every lookup returns a fresh copy, so callers may mutate the returned
configuration freely.
"""

import copy
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover - fallback for older Python
    import tomli as tomllib  # type: ignore[import]

from .errors import ConfigurationError
from .filters import FilterConfig, FilterRule, validate_rule

BUILTIN_PRESETS_FILE = Path(__file__).resolve().parent / "data" / "presets.toml"


@dataclass(frozen=True)
class FilterPreset:
    id: str
    name: str
    description: str
    config: FilterConfig


def _load_toml(path: Path) -> dict[str, Any]:
    """
    Load a TOML file and return its content as a dictionary.

    Raises:
        FileNotFoundError: if the file does not exist.
        ValueError: if the TOML content cannot be parsed or is not a table.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Filter presets file not found: {path}")

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise ValueError(f"Failed to parse TOML presets file: {path}") from exc

    if not isinstance(data, dict):
        raise ValueError(f"Invalid TOML root type in {path}, expected a table.")

    return data


def parse_rule(raw: Mapping[str, Any], index: int = 0) -> FilterRule:
    """Build a FilterRule from a TOML table.

    ``id`` defaults to ``rule-<index>`` and ``name`` to the id. The rule is
    validated and a ConfigurationError lists every problem found.
    """
    rule_id = str(raw.get("id") or f"rule-{index}")
    rule = FilterRule(
        id=rule_id,
        name=str(raw.get("name") or rule_id),
        type=str(raw.get("type") or "startsWith"),
        pattern=str(raw.get("pattern") or ""),
        enabled=bool(raw.get("enabled", True)),
        action=str(raw.get("action") or "exclude"),
        description=raw.get("description"),
    )
    errors = validate_rule(rule)
    if errors:
        raise ConfigurationError(
            f"Invalid filter rule '{rule_id}': " + " ".join(errors), errors
        )
    return rule


def parse_rules(raw_rules: Any) -> list[FilterRule]:
    if raw_rules is None:
        return []
    if not isinstance(raw_rules, list):
        raise ConfigurationError("Filter rules must be an array of tables.")
    return [
        parse_rule(raw, i) for i, raw in enumerate(raw_rules) if isinstance(raw, Mapping)
    ]


def _parse_presets(data: Mapping[str, Any]) -> dict[str, FilterPreset]:
    section = data.get("presets") or {}
    if not isinstance(section, Mapping):
        return {}

    presets: dict[str, FilterPreset] = {}
    for preset_id, cfg in section.items():
        if not isinstance(cfg, Mapping):
            continue
        preset_id = str(preset_id)
        combine_mode = str(cfg.get("combine_mode") or "AND").upper()
        if combine_mode not in ("AND", "OR"):
            raise ConfigurationError(
                f"Invalid combine_mode '{combine_mode}' in preset '{preset_id}'."
            )
        presets[preset_id] = FilterPreset(
            id=preset_id,
            name=str(cfg.get("name") or preset_id),
            description=str(cfg.get("description") or ""),
            config=FilterConfig(
                enabled=bool(cfg.get("enabled", True)),
                rules=parse_rules(cfg.get("rules")),
                combine_mode=combine_mode,
                log_filtered=bool(cfg.get("log_filtered", False)),
            ),
        )
    return presets


def load_presets(path: Union[str, Path]) -> dict[str, FilterPreset]:
    """Load the presets defined in a TOML file."""
    return _parse_presets(_load_toml(Path(path)))


class PresetCatalog:
    """Read-only lookup of filter presets by id."""

    def __init__(self, custom_file: Optional[Union[str, Path]] = None):
        self._presets = load_presets(BUILTIN_PRESETS_FILE)
        if custom_file is not None:
            self._presets.update(load_presets(custom_file))

    def ids(self) -> list[str]:
        return list(self._presets)

    def all(self) -> list[FilterPreset]:
        return [copy.deepcopy(p) for p in self._presets.values()]

    def get(self, preset_id: str) -> Optional[FilterConfig]:
        """Return a fresh copy of the preset's configuration, or None."""
        preset = self._presets.get(preset_id)
        return copy.deepcopy(preset.config) if preset is not None else None


_builtin_catalog: Optional[PresetCatalog] = None


def get_preset(preset_id: str) -> Optional[FilterConfig]:
    """Return a built-in preset configuration by id, or None."""
    global _builtin_catalog
    if _builtin_catalog is None:
        _builtin_catalog = PresetCatalog()
    return _builtin_catalog.get(preset_id)


def exclude_patterns(
    patterns: Iterable[str], description: Optional[str] = None
) -> FilterConfig:
    """Build a config excluding every code starting with one of ``patterns``."""
    rules = [
        FilterRule(
            id=f"exclude-pattern-{i}",
            name=f"Exclude {pattern}",
            description=description or f'Excludes account codes starting with "{pattern}"',
            type="startsWith",
            pattern=pattern,
            action="exclude",
        )
        for i, pattern in enumerate(patterns)
    ]
    return FilterConfig(enabled=True, rules=rules, combine_mode="AND")


def include_patterns(
    patterns: Iterable[str], description: Optional[str] = None
) -> FilterConfig:
    """Build a config keeping codes starting with any of ``patterns``.

    OR mode is used so that one matching pattern is enough.
    """
    rules = [
        FilterRule(
            id=f"include-pattern-{i}",
            name=f"Include {pattern}",
            description=description or f'Includes account codes starting with "{pattern}"',
            type="startsWith",
            pattern=pattern,
            action="include",
        )
        for i, pattern in enumerate(patterns)
    ]
    return FilterConfig(enabled=True, rules=rules, combine_mode="OR")
