"""
Stabilized inverse-probability-of-treatment weights for a categorical exposure.

For subject ``i`` with observed exposure level ``e_i``::

    w_i = P(A = e_i) / P(A = e_i | L_i)

The numerator comes from an intercept-only multinomial model (the marginal
exposure distribution), the denominator from the covariate-conditional
model. Both are read off subjects-by-levels probability matrices whose
columns follow one shared ``ExposureLevels`` order.
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd

from ._exceptions import DegenerateWeight
from .propensity import check_probability_matrix

_ROW_SUM_TOL    = 1e-6
_DEGENERATE_TOL = 1e-12
_SHOW_SUBJECTS  = 10


def observed_probabilities(matrix: np.ndarray, codes: np.ndarray) -> np.ndarray:
    """For each subject, the entry of ``matrix`` in the column of their observed level."""
    matrix = np.asarray(matrix, dtype=float)
    codes = np.asarray(codes, dtype=int)
    if len(codes) != matrix.shape[0]:
        raise ValueError(
            f"{len(codes)} exposure codes for a probability matrix with "
            f"{matrix.shape[0]} rows."
        )
    if codes.size and (codes.min() < 0 or codes.max() >= matrix.shape[1]):
        raise ValueError(
            f"Exposure codes must lie in 0..{matrix.shape[1] - 1} to index the "
            f"probability matrix columns."
        )
    return matrix[np.arange(len(codes)), codes]


@dataclass(frozen=True)
class WeightResult:
    """
    Stabilized weights, with degenerate subjects flagged rather than hidden.

    A subject is degenerate when the denominator model gives their observed
    level a probability indistinguishable from zero. Their entry in
    ``weights`` is NaN (never Inf) and their position is listed in
    ``degenerate``. Callers decide whether to abort (``require_valid()``) or
    to drop them (``valid_mask``).
    """

    weights: np.ndarray
    numerator: np.ndarray
    denominator: np.ndarray
    degenerate: np.ndarray

    @property
    def is_valid(self) -> bool:
        """``True`` if every subject has a finite positive weight."""
        return self.degenerate.size == 0

    @property
    def valid_mask(self) -> np.ndarray:
        """Boolean mask of subjects with a usable weight."""
        mask = np.ones(len(self.weights), dtype=bool)
        mask[self.degenerate] = False
        return mask

    def require_valid(self) -> np.ndarray:
        """
        Return the weights, or raise ``DegenerateWeight`` naming the subjects
        whose observed-level denominator probability is numerically zero.
        """
        if not self.is_valid:
            shown = self.degenerate[:_SHOW_SUBJECTS].tolist()
            more = "" if self.degenerate.size <= _SHOW_SUBJECTS else ", ..."
            raise DegenerateWeight(
                f"{self.degenerate.size} subject(s) have a denominator probability of "
                f"(numerically) zero for their observed exposure level, so their "
                f"weight is undefined: rows {shown}{more}. This indicates a "
                f"positivity violation in the propensity model.",
                subjects=self.degenerate.tolist(),
            )
        return self.weights


def stabilized_weights(
    codes: np.ndarray,
    denominator: np.ndarray,
    numerator: np.ndarray,
    atol: float = _ROW_SUM_TOL,
) -> WeightResult:
    """
    Compute one stabilized weight per subject.

    Parameters
    ----------
    codes : array of int
        Observed exposure level of each subject, as 0-based column indices
        (see ``ExposureLevels.encode``).
    denominator : array, shape (n_subjects, n_levels)
        Covariate-conditional predicted probabilities.
    numerator : array, shape (n_subjects, n_levels)
        Marginal (intercept-only) predicted probabilities.
    atol : float
        Row-sum tolerance for the simplex check.

    Raises
    ------
    ``ModelOutputInvalid``
        If either matrix is not a valid probability matrix.
    """
    denominator = np.asarray(denominator, dtype=float)
    numerator = np.asarray(numerator, dtype=float)
    if denominator.shape != numerator.shape:
        raise ValueError(
            f"Numerator and denominator matrices differ in shape: "
            f"{numerator.shape} vs {denominator.shape}."
        )
    n_levels = denominator.shape[1] if denominator.ndim == 2 else 0
    check_probability_matrix(denominator, n_levels, "denominator", atol=atol)
    check_probability_matrix(numerator, n_levels, "numerator", atol=atol)

    d = observed_probabilities(denominator, codes)
    n = observed_probabilities(numerator, codes)

    degenerate = np.flatnonzero(d <= _DEGENERATE_TOL)
    weights = np.full(len(d), np.nan)
    ok = d > _DEGENERATE_TOL
    weights[ok] = n[ok] / d[ok]

    return WeightResult(weights=weights, numerator=n, denominator=d, degenerate=degenerate)


def weight_diagnostics(weights) -> pd.Series:
    """
    Summary of a weight distribution.

    Stabilized weights should average close to 1 when the denominator model
    is well specified; a large maximum or a small effective sample size
    (Kish) points to near-violations of positivity.
    """
    w = np.asarray(weights, dtype=float)
    w = w[np.isfinite(w)]
    return pd.Series({
        "mean": w.mean(),
        "sd":   w.std(ddof=1) if len(w) > 1 else np.nan,
        "min":  w.min(),
        "p01":  np.percentile(w, 1),
        "p50":  np.percentile(w, 50),
        "p99":  np.percentile(w, 99),
        "max":  w.max(),
        "ess":  w.sum() ** 2 / (w ** 2).sum(),
    })
