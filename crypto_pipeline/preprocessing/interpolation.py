"""
Gap detection and missing-value interpolation.

Only absent (NaN) entries are ever written. Interior gaps are filled with
the selected method; gaps touching either end of the series cannot be
interpolated and are filled with the nearest known value instead.
"""

import logging
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np
from numpy.polynomial import Polynomial
from scipy.interpolate import CubicSpline

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Gap:
    """A maximal run of consecutive absent values, ``stop`` exclusive."""
    start: int
    stop: int
    kind: str  # 'interior', 'leading' or 'trailing'

    @property
    def length(self) -> int:
        return self.stop - self.start

    @property
    def is_edge(self) -> bool:
        return self.kind != 'interior'


def find_gaps(values: np.ndarray) -> List[Gap]:
    """Locate maximal runs of NaN in a 1-D array."""
    missing = np.isnan(values)
    n = len(values)
    gaps = []

    i = 0
    while i < n:
        if not missing[i]:
            i += 1
            continue
        j = i
        while j < n and missing[j]:
            j += 1
        if i == 0:
            kind = 'leading'
        elif j == n:
            kind = 'trailing'
        else:
            kind = 'interior'
        gaps.append(Gap(i, j, kind))
        i = j

    return gaps


def _fill_linear(values: np.ndarray, known: np.ndarray, gap: Gap) -> np.ndarray:
    positions = np.arange(len(values))
    return np.interp(positions[gap.start:gap.stop], positions[known], values[known])


def _fill_polynomial(
    values: np.ndarray,
    known: np.ndarray,
    gap: Gap,
    degree: int,
    window: int
) -> np.ndarray:
    """Least-squares polynomial over ``window`` known points on each side of the gap."""
    known_idx = np.flatnonzero(known)
    left = known_idx[known_idx < gap.start][-window:]
    right = known_idx[known_idx >= gap.stop][:window]
    anchors = np.concatenate([left, right])

    deg = min(degree, len(anchors) - 1)
    if deg < 1:
        return _fill_linear(values, known, gap)

    fit = Polynomial.fit(anchors.astype(float), values[anchors], deg)
    return fit(np.arange(gap.start, gap.stop, dtype=float))


def interpolate(
    values: np.ndarray,
    method: str = 'linear',
    polynomial_degree: int = 2,
    polynomial_window: int = 3
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, List[Gap]]:
    """
    Fill absent values in a 1-D series.

    Args:
        values: Series with NaN for absent entries
        method: 'linear', 'polynomial' or 'spline'
        polynomial_degree: Degree of the local polynomial fit
        polynomial_window: Known points used on each side of a gap

    Returns:
        Tuple of (filled values, interpolated mask, edge-filled mask, gaps)

    Raises:
        ValueError: if the series has no known value at all
    """
    values = np.asarray(values, dtype=float)
    filled = values.copy()
    known = ~np.isnan(values)
    interpolated = np.zeros(len(values), dtype=bool)
    edge_filled = np.zeros(len(values), dtype=bool)

    if not known.any():
        raise ValueError("series has no known values")

    gaps = find_gaps(values)
    if not gaps:
        return filled, interpolated, edge_filled, gaps

    spline = None
    if method == 'spline':
        if known.sum() >= 4:
            known_idx = np.flatnonzero(known)
            spline = CubicSpline(known_idx.astype(float), values[known_idx])
        else:
            logger.debug("Fewer than 4 known points, spline falls back to linear")

    first_known = values[np.flatnonzero(known)[0]]
    last_known = values[np.flatnonzero(known)[-1]]

    for gap in gaps:
        span = slice(gap.start, gap.stop)

        if gap.kind == 'leading':
            filled[span] = first_known
            edge_filled[span] = True
            continue
        if gap.kind == 'trailing':
            filled[span] = last_known
            edge_filled[span] = True
            continue

        if method == 'linear':
            filled[span] = _fill_linear(values, known, gap)
        elif method == 'polynomial':
            filled[span] = _fill_polynomial(
                values, known, gap, polynomial_degree, polynomial_window
            )
        elif method == 'spline':
            if spline is not None:
                filled[span] = spline(np.arange(gap.start, gap.stop, dtype=float))
            else:
                filled[span] = _fill_linear(values, known, gap)
        else:
            raise ValueError(f"Unknown interpolation method: {method}")

        interpolated[span] = True

    # Present values are never touched
    filled[known] = values[known]

    return filled, interpolated, edge_filled, gaps
