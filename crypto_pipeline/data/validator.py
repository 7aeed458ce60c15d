"""
Data validation module for collected market series.

Checks run on every AssetSeries before it is handed to preprocessing:
- Schema (requested variables present)
- Temporal consistency (strictly increasing daily calendar)
- Value ranges (no negative prices, volumes or market caps)
- Missing values (informational, against a configurable threshold)
"""

import logging
from datetime import datetime
from typing import Any, List, Sequence
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from .series import AssetSeries

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of a single validation check."""
    name: str
    passed: bool
    message: str
    details: Any = None


@dataclass
class ValidationReport:
    """Complete validation report for one asset."""
    asset: str
    timestamp: datetime
    row_count: int
    results: List[ValidationResult] = field(default_factory=list)

    CRITICAL_CHECKS = ('schema', 'temporal_consistency', 'value_ranges')

    @property
    def all_passed(self) -> bool:
        """Check if all validations passed."""
        return all(r.passed for r in self.results)

    @property
    def critical_passed(self) -> bool:
        """Check if critical validations passed."""
        return all(r.passed for r in self.results if r.name in self.CRITICAL_CHECKS)

    @property
    def failures(self) -> List[str]:
        return [f"{r.name}: {r.message}" for r in self.results if not r.passed]

    def summary(self) -> str:
        """Generate summary string."""
        lines = [
            f"Validation Report - {self.asset} - {self.timestamp}",
            f"Rows: {self.row_count}",
            f"Overall: {'PASSED' if self.all_passed else 'FAILED'}",
            "",
            "Results:"
        ]

        for result in self.results:
            status = "✓" if result.passed else "✗"
            lines.append(f"  {status} {result.name}: {result.message}")

        return "\n".join(lines)


class SeriesValidator:
    """Quality checks for collected series."""

    def __init__(self, missing_value_threshold: float = 0.05):
        """
        Initialize validator.

        Args:
            missing_value_threshold: Fraction of absent values that triggers a warning
        """
        self.missing_value_threshold = missing_value_threshold

    def validate_schema(self, series: AssetSeries, variables: Sequence[str]) -> ValidationResult:
        missing = [v for v in variables if v not in series.frame.columns]

        if missing:
            return ValidationResult(
                name="schema",
                passed=False,
                message=f"Missing variables: {missing}",
                details={'missing_variables': missing}
            )

        return ValidationResult(name="schema", passed=True, message="All variables present")

    def validate_temporal_consistency(self, series: AssetSeries) -> ValidationResult:
        index = series.timestamps
        issues = []

        if len(index) == 0:
            issues.append("Series is empty")
        if index.has_duplicates:
            issues.append(f"{int(index.duplicated().sum())} duplicate timestamps")
        if not index.is_monotonic_increasing:
            issues.append("Data not sorted chronologically")
        if len(index) > 1:
            steps = pd.Series(index).diff().dropna().unique()
            if len(steps) != 1 or steps[0] != pd.Timedelta(days=1):
                issues.append("Timestamps are not on a daily calendar")

        if issues:
            return ValidationResult(
                name="temporal_consistency",
                passed=False,
                message=f"Temporal issues: {issues}",
                details={'issues': issues}
            )

        return ValidationResult(
            name="temporal_consistency",
            passed=True,
            message="Data temporally consistent"
        )

    def validate_value_ranges(self, series: AssetSeries) -> ValidationResult:
        issues = []

        for col in series.frame.columns:
            values = series.frame[col].to_numpy(dtype=float)
            negative = int(np.sum(values[~np.isnan(values)] < 0))
            if negative > 0:
                issues.append(f"{col}: {negative} negative values")
            infinite = int(np.sum(np.isinf(values)))
            if infinite > 0:
                issues.append(f"{col}: {infinite} infinite values")

        if issues:
            return ValidationResult(
                name="value_ranges",
                passed=False,
                message=f"Range issues: {issues}",
                details={'issues': issues}
            )

        return ValidationResult(
            name="value_ranges",
            passed=True,
            message="All values within expected ranges"
        )

    def validate_missing_values(self, series: AssetSeries) -> ValidationResult:
        """Informational: flag variables whose absent fraction exceeds the threshold."""
        n = max(len(series), 1)
        fractions = {col: count / n for col, count in series.missing_counts().items()}
        problematic = {
            col: round(frac, 4) for col, frac in fractions.items()
            if frac > self.missing_value_threshold
        }

        if problematic:
            return ValidationResult(
                name="missing_values",
                passed=False,
                message=f"Missing fraction above {self.missing_value_threshold}: {problematic}",
                details={'missing_fractions': problematic}
            )

        total_missing = sum(series.missing_counts().values())
        return ValidationResult(
            name="missing_values",
            passed=True,
            message=f"Total missing values: {total_missing}"
        )

    def validate(self, series: AssetSeries, variables: Sequence[str]) -> ValidationReport:
        """
        Run all validation checks.

        Args:
            series: Collected series
            variables: Variables that must be present

        Returns:
            ValidationReport with all results
        """
        report = ValidationReport(
            asset=series.asset,
            timestamp=datetime.now(),
            row_count=len(series)
        )

        report.results = [
            self.validate_schema(series, variables),
            self.validate_temporal_consistency(series),
            self.validate_value_ranges(series),
            self.validate_missing_values(series),
        ]

        for result in report.results:
            log_level = logging.DEBUG if result.passed else logging.WARNING
            logger.log(log_level, f"  {series.asset} {result.name}: {result.message}")

        return report
