# Municipal FinSight - Public finance statement browser
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Error types for Municipal FinSight.

Three kinds of failures are distinguished:

- ValidationError:    malformed input detected before any I/O
                      (dataset identifiers, years, empty fields).
- ConfigurationError: invalid user configuration such as a filter rule
                      whose regular expression does not compile.
- IntegrationError:   one dataset could not be fetched or parsed.

Lookup misses (unknown account codes, entities without a value for a
code) are never raised; they are represented as absence in the results.
"""

from typing import Optional


class ValidationError(ValueError):
    """Raised when an input fails validation before any I/O happens."""


class ConfigurationError(ValidationError):
    """Raised when a filter rule or configuration value is invalid."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors: list[str] = list(errors or [message])


class IntegrationError(RuntimeError):
    """Raised when one dataset cannot be loaded into the account trees.

    Attributes:
        dataset: Dataset identifier ("gdn/fs/010002:2022").
        reason: Underlying failure message, without the dataset prefix.
    """

    def __init__(self, dataset: str, reason: str):
        super().__init__(
            f"Failed to load and integrate financial data for {dataset}: {reason}"
        )
        self.dataset = dataset
        self.reason = reason
