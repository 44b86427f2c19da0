# Municipal FinSight - Public finance statement browser
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Account code filter engine for Municipal FinSight.

Raw records can be filtered by their account code (``arten``) before they
are integrated into the account trees. A filter is a list of rules, each
with a match type and an action:

    type:   startsWith | endsWith | contains | exact | regex
    action: include | exclude

Combination semantics
---------------------
Only enabled rules take part. With ``combine_mode``:

- ``AND``: a record is kept only if **every** include rule matches and
  **no** exclude rule matches.
- ``OR``:  a record is kept if **no** exclude rule matches and, when
  include rules exist, **at least one** of them matches.

Exclude rules therefore always win. When the filter is disabled, or when
no rule is enabled, every record passes.

Invalid regular expressions never raise during evaluation: they simply do
not match. They are reported by :func:`validate_rule` and rejected with
:class:`~muni_finsight.errors.ConfigurationError` when a rule is added or a
configuration is applied.
"""

import copy
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Optional

import pandas as pd

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

RULE_TYPES = ("startsWith", "endsWith", "contains", "exact", "regex")
RULE_ACTIONS = ("include", "exclude")
COMBINE_MODES = ("AND", "OR")


@dataclass
class FilterRule:
    """A single include/exclude predicate on account codes."""

    id: str
    name: str
    type: str
    pattern: str
    enabled: bool = True
    action: str = "exclude"
    description: Optional[str] = None


@dataclass
class FilterConfig:
    enabled: bool = False
    rules: list[FilterRule] = field(default_factory=list)
    combine_mode: str = "AND"
    log_filtered: bool = False


@dataclass(frozen=True)
class FilterResult:
    """Outcome of filtering one batch of records."""

    original_count: int
    filtered_count: int
    excluded_count: int
    excluded_codes: tuple[str, ...]
    was_filtered: bool


@dataclass(frozen=True)
class FilterStats:
    total_rules: int
    enabled_rules: int
    include_rules: int
    exclude_rules: int
    is_active: bool


@lru_cache(maxsize=256)
def _compile(pattern: str) -> Optional[re.Pattern]:
    try:
        return re.compile(pattern)
    except re.error:
        return None


def validate_rule(rule: FilterRule) -> list[str]:
    """Return user-facing validation messages for ``rule`` (empty if valid)."""
    errors: list[str] = []

    if not str(rule.id or "").strip():
        errors.append("Rule id is required.")
    if not str(rule.name or "").strip():
        errors.append("Rule name is required.")
    if rule.type not in RULE_TYPES:
        errors.append(
            f"Unknown rule type '{rule.type}'. Expected one of: "
            f"{', '.join(RULE_TYPES)}."
        )
    if rule.action not in RULE_ACTIONS:
        errors.append(
            f"Unknown rule action '{rule.action}'. Expected 'include' or 'exclude'."
        )

    pattern = str(rule.pattern or "")
    if not pattern.strip():
        errors.append("Pattern is required.")
    elif rule.type == "regex":
        try:
            re.compile(pattern)
        except re.error as exc:
            errors.append(f"Invalid regular expression '{pattern}': {exc}")

    return errors


def rule_matches(rule: FilterRule, code: str) -> bool:
    """Evaluate a single rule's predicate against an account code."""
    pattern = rule.pattern
    if rule.type == "startsWith":
        return code.startswith(pattern)
    if rule.type == "endsWith":
        return code.endswith(pattern)
    if rule.type == "contains":
        return pattern in code
    if rule.type == "exact":
        return code == pattern
    if rule.type == "regex":
        compiled = _compile(pattern)
        return compiled is not None and compiled.search(code) is not None

    logger.warning("Unknown filter rule type %r in rule %r", rule.type, rule.id)
    return False


def _check_rules(rules: list[FilterRule]) -> None:
    messages: list[str] = []
    for rule in rules:
        messages.extend(f"{rule.id or '<no id>'}: {m}" for m in validate_rule(rule))
    if messages:
        raise ConfigurationError("Invalid filter rules: " + "; ".join(messages), messages)


class AccountCodeFilter:
    """Evaluates a FilterConfig against account codes and record batches."""

    def __init__(self, config: Optional[FilterConfig] = None):
        config = copy.deepcopy(config) if config is not None else FilterConfig()
        _check_rules(config.rules)
        if config.combine_mode not in COMBINE_MODES:
            raise ConfigurationError(
                f"Invalid combine mode '{config.combine_mode}'. Expected 'AND' or 'OR'."
            )
        self._config = config

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self) -> FilterConfig:
        return copy.deepcopy(self._config)

    def update_config(self, **changes: Any) -> None:
        """Update selected fields of the configuration.

        Accepts ``enabled``, ``rules``, ``combine_mode`` and ``log_filtered``.
        The configuration is only replaced once all changes are valid.
        """
        unknown = set(changes) - {"enabled", "rules", "combine_mode", "log_filtered"}
        if unknown:
            raise ConfigurationError(
                f"Unknown filter setting(s): {', '.join(sorted(unknown))}"
            )

        new_config = copy.deepcopy(self._config)
        for key, value in changes.items():
            setattr(new_config, key, copy.deepcopy(value))

        if new_config.combine_mode not in COMBINE_MODES:
            raise ConfigurationError(
                f"Invalid combine mode '{new_config.combine_mode}'. "
                "Expected 'AND' or 'OR'."
            )
        _check_rules(new_config.rules)
        self._config = new_config

    def set_config(self, config: FilterConfig) -> None:
        """Replace the whole configuration (e.g. when applying a preset)."""
        self.update_config(
            enabled=config.enabled,
            rules=config.rules,
            combine_mode=config.combine_mode,
            log_filtered=config.log_filtered,
        )

    def add_rule(self, rule: FilterRule) -> None:
        """Add a rule, replacing any existing rule with the same id."""
        _check_rules([rule])
        rule = copy.deepcopy(rule)
        for i, existing in enumerate(self._config.rules):
            if existing.id == rule.id:
                self._config.rules[i] = rule
                return
        self._config.rules.append(rule)

    def remove_rule(self, rule_id: str) -> bool:
        before = len(self._config.rules)
        self._config.rules = [r for r in self._config.rules if r.id != rule_id]
        return len(self._config.rules) < before

    def toggle_rule(self, rule_id: str, enabled: Optional[bool] = None) -> bool:
        for rule in self._config.rules:
            if rule.id == rule_id:
                rule.enabled = (not rule.enabled) if enabled is None else bool(enabled)
                return True
        return False

    def get_filter_stats(self) -> FilterStats:
        enabled = [r for r in self._config.rules if r.enabled]
        return FilterStats(
            total_rules=len(self._config.rules),
            enabled_rules=len(enabled),
            include_rules=sum(1 for r in enabled if r.action == "include"),
            exclude_rules=sum(1 for r in enabled if r.action == "exclude"),
            is_active=self._config.enabled and len(enabled) > 0,
        )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def should_include(self, account_code: str) -> bool:
        """Return True if a record with this account code passes the filter."""
        if not self._config.enabled:
            return True

        rules = [r for r in self._config.rules if r.enabled]
        if not rules:
            return True

        code = str(account_code).strip()
        include_hits = [rule_matches(r, code) for r in rules if r.action == "include"]
        exclude_hits = [rule_matches(r, code) for r in rules if r.action == "exclude"]

        if any(exclude_hits):
            return False
        if self._config.combine_mode == "AND":
            return all(include_hits)
        return not include_hits or any(include_hits)

    def filter_records(self, records: pd.DataFrame) -> tuple[pd.DataFrame, FilterResult]:
        """Filter a normalized record DataFrame on its ``arten`` column.

        Returns:
            (kept records, FilterResult). The input is not modified.
        """
        original = len(records)
        if original == 0 or not self._config.enabled:
            return records.copy(), FilterResult(original, original, 0, (), False)

        codes = records["arten"].map(lambda c: "" if c is None else str(c).strip())
        decisions = {code: self.should_include(code) for code in codes.unique()}
        keep = codes.map(decisions).astype(bool)

        excluded_codes = tuple(dict.fromkeys(codes[~keep]))
        kept = records[keep].copy()
        excluded = original - len(kept)

        if self._config.log_filtered and excluded:
            logger.info(
                "Filtered out %d of %d records (account codes: %s)",
                excluded,
                original,
                ", ".join(excluded_codes),
            )

        return kept, FilterResult(
            original_count=original,
            filtered_count=len(kept),
            excluded_count=excluded,
            excluded_codes=excluded_codes,
            was_filtered=excluded > 0,
        )
