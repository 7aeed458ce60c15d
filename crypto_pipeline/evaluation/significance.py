"""
Pairwise statistical comparison of forecasters.

Paired tests on per-point absolute errors over the same test timestamps:
Wilcoxon signed-rank (default) or paired t-test.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy import stats

logger = logging.getLogger(__name__)

TESTS = ('wilcoxon', 'ttest')


@dataclass(frozen=True)
class SignificanceResult:
    """Outcome of one paired comparison."""
    model_a: str
    model_b: str
    scope: str
    test: str
    n: int
    statistic: Optional[float]
    p_value: Optional[float]
    significant: bool
    better: Optional[str] = None
    note: str = ''

    def to_dict(self):
        return {
            'model_a': self.model_a,
            'model_b': self.model_b,
            'scope': self.scope,
            'test': self.test,
            'n': self.n,
            'statistic': self.statistic,
            'p_value': self.p_value,
            'significant': self.significant,
            'better': self.better,
            'note': self.note,
        }


def paired_test(
    errors_a: np.ndarray,
    errors_b: np.ndarray,
    test: str = 'wilcoxon'
) -> Tuple[Optional[float], Optional[float], str]:
    """
    Run a paired test on two error samples.

    Returns:
        Tuple of (statistic, p_value, note); statistic and p-value are None
        when the test cannot be computed
    """
    a = np.asarray(errors_a, dtype=float)
    b = np.asarray(errors_b, dtype=float)

    if a.shape != b.shape:
        raise ValueError(f"Paired samples differ in length: {len(a)} vs {len(b)}")
    if test not in TESTS:
        raise ValueError(f"Unknown test: {test}")

    # Pairs with a missing side (skipped days) drop out of the test
    paired = np.isfinite(a) & np.isfinite(b)
    a, b = a[paired], b[paired]

    if len(a) < 2:
        return None, None, 'fewer than 2 paired points'

    diff = a - b
    if np.allclose(diff, 0.0):
        return 0.0, 1.0, 'identical errors'

    if test == 'wilcoxon':
        statistic, p_value = stats.wilcoxon(a, b)
    else:
        if np.std(diff) == 0:
            return None, 0.0, 'constant non-zero difference'
        statistic, p_value = stats.ttest_rel(a, b)

    statistic, p_value = float(statistic), float(p_value)
    if not np.isfinite(p_value):
        return None, None, 'test statistic undefined'

    return statistic, p_value, ''


def compare_pair(
    model_a: str,
    model_b: str,
    errors_a: np.ndarray,
    errors_b: np.ndarray,
    scope: str,
    test: str = 'wilcoxon',
    alpha: float = 0.05
) -> SignificanceResult:
    """
    Compare two models' absolute errors.

    Args:
        model_a: First model name
        model_b: Second model name
        errors_a: Per-point absolute errors of model_a
        errors_b: Per-point absolute errors of model_b
        scope: Asset name, or 'pooled' for all assets together
        test: 'wilcoxon' or 'ttest'
        alpha: Significance level

    Returns:
        SignificanceResult
    """
    statistic, p_value, note = paired_test(errors_a, errors_b, test)
    significant = p_value is not None and p_value < alpha

    errors_a = np.asarray(errors_a, dtype=float)
    errors_b = np.asarray(errors_b, dtype=float)
    paired = np.isfinite(errors_a) & np.isfinite(errors_b)

    better = None
    if significant:
        better = model_a if np.mean(errors_a[paired]) < np.mean(errors_b[paired]) else model_b

    return SignificanceResult(
        model_a=model_a,
        model_b=model_b,
        scope=scope,
        test=test,
        n=int(paired.sum()),
        statistic=statistic,
        p_value=p_value,
        significant=significant,
        better=better,
        note=note
    )
