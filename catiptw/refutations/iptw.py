from __future__ import annotations

import numpy as np
import pandas as pd

from ._check import RefutationCheck, RefutationReport
from ..estimators.iptw import _run_pipeline

_RCC_SEED     = 54321
_PLACEBO_SEED = 99999
_RCC_COL      = "_rcc"


def _worst(values: pd.Series, std_errs: pd.Series) -> tuple[str, float, float]:
    """The contrast with the largest value relative to its SE."""
    ratio = (values.abs() / std_errs).fillna(np.inf)
    label = ratio.idxmax()
    return label, float(values[label]), float(std_errs[label])


def _check_placebo_exposure(
    data: pd.DataFrame,
    original: pd.Series,
    std_errs: pd.Series,
    **settings,
) -> RefutationCheck:
    """
    Permute exposure labels at random and re-run the weighted analysis.

    The permuted exposure is independent of both confounders and outcome,
    so every placebo contrast should lie within one bootstrap SE of zero.
    """
    rng = np.random.default_rng(_PLACEBO_SEED)
    exposure = settings["exposure"]
    augmented = data.assign(**{exposure: rng.permutation(data[exposure].values)})

    try:
        placebo = _run_pipeline(augmented.reset_index(drop=True), **settings).estimates
    except Exception as exc:
        return RefutationCheck(
            name="Placebo exposure",
            passed=False,
            detail=f"Weighting failed on permuted exposure ({type(exc).__name__}: {exc}).",
        )

    label, value, se = _worst(placebo, std_errs)
    passed = bool((placebo.abs() <= std_errs).all())
    if passed:
        detail = (
            f"largest placebo contrast = {value:.4f} for {label}  (≤ 1 SE = {se:.4f})  "
            f"Permuting exposure labels yields near-zero contrasts, as expected."
        )
    else:
        detail = (
            f"placebo contrast = {value:.4f} for {label}  (> 1 SE = {se:.4f})  "
            f"A randomly permuted exposure produced a large contrast; the original "
            f"result may be driven by residual confounding or an unstable propensity model."
        )
    return RefutationCheck(name="Placebo exposure", passed=passed, detail=detail, contrast=label)


def _check_random_common_cause(
    data: pd.DataFrame,
    original: pd.Series,
    std_errs: pd.Series,
    **settings,
) -> RefutationCheck:
    """
    Add a random noise covariate to the denominator model and re-run.

    Pure noise carries no confounding, so no contrast should move by more
    than one bootstrap SE. A larger shift means the weights are sensitive to
    the propensity model specification.
    """
    rng = np.random.default_rng(_RCC_SEED)

    col = _RCC_COL
    while col in data.columns:
        col = "_" + col

    augmented = data.assign(**{col: rng.normal(size=len(data))}).reset_index(drop=True)
    settings = {**settings, "confounders": [*settings["confounders"], col]}

    try:
        new = _run_pipeline(augmented, **settings).estimates
    except Exception as exc:
        return RefutationCheck(
            name="Random common cause",
            passed=False,
            detail=f"Weighting failed after adding a random covariate ({type(exc).__name__}: {exc}).",
        )

    shifts = (new - original).abs()
    label, shift, se = _worst(shifts, std_errs)
    passed = bool((shifts <= std_errs).all())
    if passed:
        detail = f"largest shift = {shift:.4f} for {label}  (≤ 1 SE = {se:.4f})"
    else:
        detail = (
            f"estimate shifted by {shift:.4f} for {label}  (> 1 SE = {se:.4f})  "
            f"Adding a random common cause destabilised the weighted contrasts."
        )
    return RefutationCheck(name="Random common cause", passed=passed, detail=detail, contrast=label)


class IPTWRefutationReport(RefutationReport):
    """
    Results of refutation checks run against a categorical IPTW analysis.

    Obtain via ``IPTWResult.refute(data)``. Each check is a
    ``RefutationCheck`` in ``.checks``; the overall verdict is ``.passed``.

    Example::

        result = CategoricalIPTW(
            exposure="smoking", outcome="sbp", confounders=["age", "sex"],
        ).fit(df)
        report = result.refute(df)
        print(report.summary())
    """

    def _header_lines(self) -> list[str]:
        return [f"IPTW Refutation Report: {self._exposure} → {self._outcome}"]
