from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning,
    HessianInversionWarning,
    PerfectSeparationError,
    PerfectSeparationWarning,
)

from ._exceptions import ModelFitFailure, ModelOutputInvalid
from .levels import ExposureLevels

LOGGER = logging.getLogger(__name__)

_MAXITER      = 200
_ROW_SUM_TOL  = 1e-6
_SHOW_ROWS    = 5


@dataclass(frozen=True)
class PropensityModel:
    """
    A fitted unordered multinomial logit of exposure on covariates.

    ``result`` is the statsmodels ``MNLogitResults``. Its predicted columns
    follow the order of ``levels``: the exposure is coded 0..K-1 through
    ``levels`` before fitting, and every level is required to be present.
    """

    result: object
    levels: ExposureLevels
    formula: str
    name: str


def _formula(exposure: str, covariates) -> str:
    covariates = sorted(covariates)
    rhs = " + ".join(covariates) if covariates else "1"
    return f"{exposure} ~ {rhs}"


def fit_multinomial(
    data: pd.DataFrame,
    exposure: str,
    covariates,
    levels: ExposureLevels,
    name: str = "propensity",
) -> PropensityModel:
    """
    Fit an unordered multinomial logit of ``exposure`` on ``covariates``.

    With no covariates the model is intercept-only, and its predicted
    probabilities are the marginal exposure proportions: this is the
    numerator model of the stabilized weights. With covariates it is the
    covariate-conditional denominator model.

    Raises
    ------
    ``ModelFitFailure``
        If an exposure level has no subjects in ``data``, the optimiser does
        not converge, the information matrix is singular, the data are
        perfectly separated, or a coefficient is not finite.
    """
    codes = levels.encode(data[exposure])
    counts = np.bincount(codes, minlength=len(levels))
    absent = [levels.values[k] for k in np.flatnonzero(counts == 0)]
    if absent:
        raise ModelFitFailure(
            f"{name} model: exposure level(s) {absent} have no subjects in the "
            f"data, so their probabilities cannot be estimated."
        )

    formula = _formula(exposure, covariates)
    frame = data.assign(**{exposure: codes})

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            warnings.simplefilter("ignore", RuntimeWarning)
            warnings.simplefilter("ignore", HessianInversionWarning)
            warnings.simplefilter("error", PerfectSeparationWarning)
            with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
                result = smf.mnlogit(formula, data=frame).fit(disp=0, maxiter=_MAXITER)
    except (np.linalg.LinAlgError, PerfectSeparationError, PerfectSeparationWarning) as exc:
        raise ModelFitFailure(f"{name} model '{formula}' could not be fitted: {exc}") from exc

    if not result.mle_retvals.get("converged", True):
        raise ModelFitFailure(
            f"{name} model '{formula}' did not converge within {_MAXITER} "
            f"iterations. Check for sparse exposure levels or covariates that "
            f"nearly separate them."
        )
    if not np.all(np.isfinite(np.asarray(result.params))):
        raise ModelFitFailure(f"{name} model '{formula}' produced non-finite coefficients.")

    LOGGER.debug("Fitted %s model '%s' on %d subjects", name, formula, len(frame))
    return PropensityModel(result=result, levels=levels, formula=formula, name=name)


def predict_probabilities(model: PropensityModel, data: pd.DataFrame | None = None) -> np.ndarray:
    """
    Predicted probability of every exposure level for every subject.

    Returns an ``(n_subjects, n_levels)`` array whose column ``k`` is level
    ``model.levels.values[k]``. With ``data=None`` the in-sample fitted
    probabilities are returned.
    """
    probs = model.result.predict() if data is None else model.result.predict(data)
    probs = np.asarray(probs, dtype=float)
    check_probability_matrix(probs, len(model.levels), model.name)
    return probs


def check_probability_matrix(
    matrix: np.ndarray,
    n_levels: int,
    model_name: str = "propensity",
    atol: float = _ROW_SUM_TOL,
) -> None:
    """
    Verify that ``matrix`` is a valid subjects-by-levels probability matrix.

    Raises
    ------
    ``ModelOutputInvalid``
        If the matrix is not two-dimensional with ``n_levels`` columns, has
        an entry that is not finite or lies outside [0, 1], or has a row
        whose sum differs from 1 by more than ``atol``. The message names
        the model and the first offending subject rows.
    """
    matrix = np.asarray(matrix, dtype=float)
    if matrix.ndim != 2 or matrix.shape[1] != n_levels:
        raise ModelOutputInvalid(
            f"{model_name} model: expected a probability matrix with {n_levels} "
            f"columns, got shape {matrix.shape}."
        )

    out_of_range = ~np.isfinite(matrix) | (matrix < 0.0) | (matrix > 1.0)
    bad_rows = np.flatnonzero(out_of_range.any(axis=1))
    if bad_rows.size:
        raise ModelOutputInvalid(
            f"{model_name} model: probabilities outside [0, 1] for "
            f"{bad_rows.size} subject(s), first at rows {bad_rows[:_SHOW_ROWS].tolist()}."
        )

    row_sums = matrix.sum(axis=1)
    bad_rows = np.flatnonzero(np.abs(row_sums - 1.0) > atol)
    if bad_rows.size:
        first = bad_rows[0]
        raise ModelOutputInvalid(
            f"{model_name} model: probabilities do not sum to 1 for "
            f"{bad_rows.size} subject(s), first at rows {bad_rows[:_SHOW_ROWS].tolist()} "
            f"(row {first} sums to {row_sums[first]:.6f})."
        )
