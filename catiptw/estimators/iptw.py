from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial

import numpy as np
import pandas as pd
import scipy.stats as st
import statsmodels.formula.api as smf

from .._exceptions import ConfigurationInvalid, ModelFitFailure
from ..bootstrap import BootstrapDistribution, run_replicates
from ..data import require_complete
from ..levels import ExposureLevels
from ..propensity import fit_multinomial, predict_probabilities
from ..refutations._check import Assumption
from ..weights import WeightResult, stabilized_weights, weight_diagnostics

LOGGER = logging.getLogger(__name__)

IPTW_ASSUMPTIONS: list[Assumption] = [
    Assumption("Conditional exchangeability: no unmeasured confounders given the covariates", testable=False),
    Assumption("Positivity: every exposure level is possible for every covariate pattern", testable=True),
    Assumption("Correct specification of the multinomial propensity model", testable=False),
    Assumption("Consistency: each exposure level is a well-defined intervention", testable=False),
    Assumption("Stable Unit Treatment Value Assumption (SUTVA)", testable=False),
]

_BOOTSTRAP_N    = 2000
_BOOTSTRAP_SEED = 42
_ALPHA          = 0.05
_COV_TYPE       = "HC0"
_COV_TYPES      = {"HC0", "HC1", "HC2", "HC3"}
_ON_DEGENERATE  = {"raise", "exclude"}


# ── Private helpers (also imported by catiptw/refutations/iptw.py) ────────────

def _label(level, reference) -> str:
    return f"{level} vs {reference}"


def _term(exposure: str, reference: int, level: int) -> str:
    """statsmodels parameter name of ``level`` in a fit with ``reference`` held out."""
    return f"C({exposure}, Treatment(reference={reference}))[T.{level}]"


def _fit_contrasts(
    data: pd.DataFrame,
    exposure: str,
    outcome: str,
    levels: ExposureLevels,
    weights: np.ndarray | None,
    cov_type: str,
) -> tuple[pd.Series, pd.Series, dict]:
    """
    Regress outcome on exposure indicators, once per reference level.

    Every pairwise contrast is read from the fit in which its reference level
    is held out. With ``weights=None`` the fits are unweighted OLS.

    Returns (estimates, standard errors, {reference: statsmodels result}).
    """
    codes = levels.encode(data[exposure])
    absent = [levels.values[k] for k in np.flatnonzero(np.bincount(codes, minlength=len(levels)) == 0)]
    if absent:
        raise ModelFitFailure(f"Outcome model: exposure level(s) {absent} have no subjects.")

    frame = data.assign(**{exposure: codes})
    estimates, std_errs, fits = {}, {}, {}
    for reference in levels.references():
        r = levels.index(reference)
        formula = f"{outcome} ~ C({exposure}, Treatment(reference={r}))"
        if weights is None:
            fit = smf.ols(formula, data=frame).fit(cov_type=cov_type)
        else:
            fit = smf.wls(formula, data=frame, weights=weights).fit(cov_type=cov_type)
        fits[reference] = fit
        for level in levels.values[r + 1:]:
            term = _term(exposure, r, levels.index(level))
            estimates[_label(level, reference)] = float(fit.params[term])
            std_errs[_label(level, reference)] = float(fit.bse[term])
    return pd.Series(estimates), pd.Series(std_errs), fits


def _exposure_weights(
    data: pd.DataFrame,
    exposure: str,
    confounders,
    levels: ExposureLevels,
) -> tuple[WeightResult, np.ndarray]:
    """Fit denominator and numerator models on ``data`` and form stabilized weights."""
    denominator = fit_multinomial(data, exposure, confounders, levels, name="denominator")
    numerator = fit_multinomial(data, exposure, (), levels, name="numerator")
    den_probs = predict_probabilities(denominator)
    result = stabilized_weights(
        levels.encode(data[exposure]), den_probs, predict_probabilities(numerator),
    )
    return result, den_probs


@dataclass
class _PipelineFit:
    estimates: pd.Series
    std_errs: pd.Series
    fits: dict
    weights: WeightResult
    propensity: np.ndarray
    kept: np.ndarray


def _run_pipeline(
    data: pd.DataFrame,
    exposure: str,
    outcome: str,
    confounders,
    levels: ExposureLevels,
    cov_type: str,
    on_degenerate: str,
) -> _PipelineFit:
    """Propensity models, weights and weighted contrasts on one table."""
    weights, propensity = _exposure_weights(data, exposure, confounders, levels)
    if on_degenerate == "raise":
        weights.require_valid()
    kept = weights.valid_mask
    estimates, std_errs, fits = _fit_contrasts(
        data.loc[kept], exposure, outcome, levels, weights.weights[kept], cov_type,
    )
    return _PipelineFit(estimates, std_errs, fits, weights, propensity, kept)


def _replicate_estimates(sample: pd.DataFrame, **kwargs) -> pd.Series:
    """Bootstrap statistic: refit everything on the resample, keep the contrasts."""
    return _run_pipeline(sample, **kwargs).estimates


# ── Result ─────────────────────────────────────────────────────────────────────

class IPTWResult:
    """
    The result of a stabilized IPTW analysis of a categorical exposure.

    Each contrast ``"b vs a"`` is the difference in weighted mean outcome
    between exposure levels ``b`` and ``a``. Point estimates come from the
    weighted fits on the original data. Confidence intervals are normal
    approximations centred on those estimates with the bootstrap SD as
    scale; the bootstrap refits both propensity models in every replicate,
    so the interval reflects their estimation uncertainty. The sandwich SE
    of the weighted fit is reported for comparison.
    """

    def __init__(
        self,
        pipeline: _PipelineFit,
        unadjusted: pd.Series,
        bootstrap: BootstrapDistribution,
        exposure: str,
        outcome: str,
        confounders: list[str],
        levels: ExposureLevels,
        alpha: float,
        cov_type: str,
        on_degenerate: str,
    ) -> None:
        self._pipeline = pipeline
        self._unadjusted = unadjusted
        self._bootstrap = bootstrap
        self._exposure = exposure
        self._outcome = outcome
        self._confounders = confounders
        self._levels = levels
        self._alpha = alpha
        self._cov_type = cov_type
        self._on_degenerate = on_degenerate

    # ── Contrast lookup ───────────────────────────────────────────────────────

    def _resolve(self, level, reference) -> tuple[str, float]:
        """Label of the stored contrast for this pair, and +1/-1 for its direction."""
        for lvl in (level, reference):
            self._levels.index(lvl)
        if level == reference:
            raise ValueError("A contrast needs two different exposure levels.")
        if self._levels.index(level) > self._levels.index(reference):
            return _label(level, reference), 1.0
        return _label(reference, level), -1.0

    def effect(self, level, reference) -> float:
        """Weighted mean outcome difference, ``level`` minus ``reference``."""
        label, sign = self._resolve(level, reference)
        return sign * float(self._pipeline.estimates[label])

    def unadjusted_effect(self, level, reference) -> float:
        """Unweighted mean outcome difference, ``level`` minus ``reference``."""
        label, sign = self._resolve(level, reference)
        return sign * float(self._unadjusted[label])

    def std_err(self, level, reference) -> float:
        """Bootstrap standard error of the contrast."""
        label, _ = self._resolve(level, reference)
        return float(self._bootstrap.std_err().get(label, np.nan))

    def robust_std_err(self, level, reference) -> float:
        """Sandwich standard error from the weighted fit on the original data."""
        label, _ = self._resolve(level, reference)
        return float(self._pipeline.std_errs[label])

    def conf_int(self, level, reference) -> tuple[float, float]:
        """Normal-approximation bootstrap interval: estimate ± z * bootstrap SD."""
        est = self.effect(level, reference)
        z = st.norm.ppf(1.0 - self._alpha / 2.0)
        se = self.std_err(level, reference)
        return (est - z * se, est + z * se)

    def pvalue(self, level, reference) -> float:
        """Two-sided p-value (``H0: contrast = 0``), z-test with the bootstrap SE."""
        se = self.std_err(level, reference)
        if not se > 0:
            return float("nan")
        z = abs(self.effect(level, reference)) / se
        return float(2.0 * st.norm.sf(z))

    # ── Tables and diagnostics ────────────────────────────────────────────────

    @property
    def contrasts(self) -> pd.DataFrame:
        """One row per pairwise contrast, with estimates, SEs, interval and p-value."""
        rows = []
        for level, reference in self._levels.pairs():
            lo, hi = self.conf_int(level, reference)
            rows.append({
                "contrast":     _label(level, reference),
                "level":        level,
                "reference":    reference,
                "estimate":     self.effect(level, reference),
                "robust_se":    self.robust_std_err(level, reference),
                "bootstrap_se": self.std_err(level, reference),
                "ci_lower":     lo,
                "ci_upper":     hi,
                "pvalue":       self.pvalue(level, reference),
                "unweighted":   self.unadjusted_effect(level, reference),
            })
        return pd.DataFrame(rows).set_index("contrast")

    @property
    def levels(self) -> ExposureLevels:
        return self._levels

    @property
    def confounders(self) -> list[str]:
        """Covariates in the denominator propensity model."""
        return list(self._confounders)

    @property
    def weights(self) -> np.ndarray:
        """Stabilized weight per subject (NaN for excluded degenerate subjects)."""
        return self._pipeline.weights.weights.copy()

    @property
    def weight_diagnostics(self) -> pd.Series:
        """Mean, spread, extremes and effective sample size of the weights."""
        return weight_diagnostics(self._pipeline.weights.weights)

    @property
    def propensity_scores(self) -> pd.DataFrame:
        """Denominator-model probability of every exposure level for every subject."""
        return pd.DataFrame(self._pipeline.propensity, columns=list(self._levels.values))

    @property
    def excluded_subjects(self) -> list[int]:
        """Row positions dropped from the weighted fit for degenerate weights."""
        return self._pipeline.weights.degenerate.tolist()

    @property
    def bootstrap_draws(self) -> pd.DataFrame:
        """Per-replicate contrast estimates from the bootstrap, for diagnostics."""
        return self._bootstrap.draws

    @property
    def n_bootstrap_used(self) -> int:
        return self._bootstrap.n_used

    @property
    def n_bootstrap_failed(self) -> int:
        return self._bootstrap.n_failed

    @property
    def bootstrap_failures(self) -> list:
        """The dropped replicates, each a ``ReplicateFitFailure`` with its cause."""
        return self._bootstrap.failures

    @property
    def statsmodels_results(self) -> dict:
        """Weighted statsmodels fits keyed by reference level."""
        return dict(self._pipeline.fits)

    @property
    def assumptions(self) -> list[Assumption]:
        """Modelling assumptions required for a causal interpretation."""
        return list(IPTW_ASSUMPTIONS)

    # ── Reporting ─────────────────────────────────────────────────────────────

    def executive_summary(self) -> str:
        """Narrative explanation of the method, weights, assumptions, and result."""
        from .._explain import explain_iptw
        return explain_iptw(self)

    def summary(self) -> str:
        diag = self.weight_diagnostics
        conf = 100 * (1 - self._alpha)
        adj = sorted(self._confounders)
        n = len(self._pipeline.kept)

        lines = [
            "",
            f"IPTW Causal Contrasts: {self._exposure} → {self._outcome}",
            f"  Estimand: ATE contrasts between exposure levels (stabilized weights)",
            "─" * 78,
            f"  Exposure levels      : {', '.join(map(str, self._levels))}",
            f"  Confounders          : {', '.join(adj) if adj else '(none)'}",
            f"  Weights              : mean {diag['mean']:.4f}, max {diag['max']:.4f}, "
            f"ESS {diag['ess']:.1f} of {n}",
        ]
        if self.excluded_subjects:
            lines.append(
                f"  Excluded subjects    : {len(self.excluded_subjects)} (degenerate weights)"
            )

        lines += [
            "",
            f"  {'Contrast':<14}{'Estimate':>10}{'Robust SE':>11}{'Boot. SE':>10}"
            f"   {f'{conf:g}% CI':<22}{'p-value':>8}{'Unweighted':>12}",
        ]
        for label, row in self.contrasts.iterrows():
            ci = f"[{row['ci_lower']:.4f}, {row['ci_upper']:.4f}]"
            lines.append(
                f"  {label:<14}{row['estimate']:>10.4f}{row['robust_se']:>11.4f}"
                f"{row['bootstrap_se']:>10.4f}   {ci:<22}{row['pvalue']:>8.4f}"
                f"{row['unweighted']:>12.4f}"
            )

        lines += [
            "",
            f"  Bootstrap            : {self.n_bootstrap_used} of "
            f"{self._bootstrap.n_requested} replicates used"
            + (f" ({self.n_bootstrap_failed} failed)" if self.n_bootstrap_failed else ""),
            f"  Interval             : normal approximation, estimate ± z × bootstrap SD",
            f"  Robust SE            : {self._cov_type} sandwich from the weighted fit",
            "",
            "  Assumptions",
            "  " + "┄" * 48,
        ]
        for a in IPTW_ASSUMPTIONS:
            lines.append(f"  {a.fmt_tag()}  {a.name}")
        lines.append("")
        return "\n".join(lines)

    def refute(self, data: pd.DataFrame):
        """
        Run refutation checks against this IPTW analysis.

        Currently runs:

        - **Placebo exposure**: randomly permutes exposure labels and re-runs
          the weighting. Every placebo contrast should be near zero.
        - **Random common cause**: adds a random noise covariate to the
          denominator model and checks that no contrast moves by more than
          one bootstrap standard error.

        Parameters
        ----------
        data : pd.DataFrame
            The same dataframe passed to ``fit()``.
        """
        from ..refutations.iptw import (
            IPTWRefutationReport,
            _check_placebo_exposure,
            _check_random_common_cause,
        )
        estimates = self._pipeline.estimates
        std_errs = self._bootstrap.std_err().reindex(estimates.index)
        kwargs = dict(
            exposure=self._exposure, outcome=self._outcome,
            confounders=self._confounders, levels=self._levels,
            cov_type=self._cov_type, on_degenerate=self._on_degenerate,
        )
        checks = [
            _check_placebo_exposure(data, estimates, std_errs, **kwargs),
            _check_random_common_cause(data, estimates, std_errs, **kwargs),
        ]
        return IPTWRefutationReport(
            checks=checks, exposure=self._exposure, outcome=self._outcome,
            n_bootstrap=self.n_bootstrap_used,
        )

    def __repr__(self) -> str:
        return self.summary()


# ── Estimator ──────────────────────────────────────────────────────────────────

class CategoricalIPTW:
    """
    Stabilized inverse-probability-of-treatment weighting for an unordered
    categorical exposure.

    1. Fits a multinomial logit of exposure on the confounders (denominator)
       and an intercept-only multinomial logit (numerator).
    2. Weights each subject by P(own level) / P(own level | confounders).
    3. Fits weighted least squares of outcome on exposure indicators, once
       per reference level, with sandwich standard errors.
    4. Bootstraps steps 1–3 on resampled subjects for the interval.

    Requires a complete-case table (see ``catiptw.complete_cases``).

    Example::

        result = CategoricalIPTW(
            exposure="smoking", outcome="sbp", confounders=["age", "sex"],
        ).fit(df)
        print(result.summary())
    """

    def __init__(
        self,
        exposure: str,
        outcome: str,
        confounders,
        levels=None,
        n_bootstrap: int = _BOOTSTRAP_N,
        seed=_BOOTSTRAP_SEED,
        alpha: float = _ALPHA,
        cov_type: str = _COV_TYPE,
        on_degenerate: str = "raise",
        n_jobs: int = 1,
    ) -> None:
        self._exposure = exposure
        self._outcome = outcome
        self._confounders = sorted(confounders)
        if levels is not None and not isinstance(levels, ExposureLevels):
            levels = ExposureLevels(levels)
        self._levels = levels
        self._n_bootstrap = n_bootstrap
        self._seed = seed
        self._alpha = alpha
        self._cov_type = cov_type
        self._on_degenerate = on_degenerate
        self._n_jobs = n_jobs
        self._validate_inputs()

    def _validate_inputs(self) -> None:
        if self._exposure == self._outcome:
            raise ValueError("Exposure and outcome must be different variables.")
        for label, var in [("Exposure", self._exposure), ("Outcome", self._outcome)]:
            if var in self._confounders:
                raise ValueError(f"{label} '{var}' cannot also be a confounder.")

        if isinstance(self._n_bootstrap, bool) or not isinstance(self._n_bootstrap, (int, np.integer)) \
                or self._n_bootstrap < 1:
            raise ConfigurationInvalid(
                f"n_bootstrap must be a positive integer, got {self._n_bootstrap!r}. "
                f"At least one replicate is needed to estimate any spread."
            )
        if not 0.0 < self._alpha < 1.0:
            raise ConfigurationInvalid(f"alpha must lie in (0, 1), got {self._alpha}.")
        if self._cov_type not in _COV_TYPES:
            raise ConfigurationInvalid(
                f"cov_type must be one of {sorted(_COV_TYPES)}, got {self._cov_type!r}."
            )
        if self._on_degenerate not in _ON_DEGENERATE:
            raise ConfigurationInvalid(
                f"on_degenerate must be one of {sorted(_ON_DEGENERATE)}, "
                f"got {self._on_degenerate!r}."
            )

    def fit(self, data: pd.DataFrame) -> IPTWResult:
        """
        Estimate the weights, the pairwise contrasts and their bootstrap intervals.

        Failures on the original data are fatal, since the point estimates
        centre every interval. Failures inside bootstrap replicates drop that
        replicate only; the number used is reported on the result.

        Parameters
        ----------
        data : pd.DataFrame
            Must contain the exposure, outcome and confounder columns with no
            missing values.

        Raises
        ------
        ``ValueError``
            If a required column is missing or the exposure has values
            outside the declared levels.
        ``DataIncomplete``
            If a required column has missing values.
        ``ModelFitFailure``, ``ModelOutputInvalid``, ``DegenerateWeight``
            If the analysis fails on the original data.
        """
        data_columns = set(data.columns)
        for label, var in [("Exposure", self._exposure), ("Outcome", self._outcome)]:
            if var not in data_columns:
                raise ValueError(f"{label} column '{var}' not found in dataframe.")
        missing = [c for c in self._confounders if c not in data_columns]
        if missing:
            raise ValueError(f"Confounder column(s) {missing} not found in dataframe.")

        columns = [self._outcome, self._exposure, *self._confounders]
        require_complete(data, columns)

        levels = self._levels
        if levels is None:
            levels = ExposureLevels.from_series(data[self._exposure])
        analysis = data[columns].reset_index(drop=True)
        settings = dict(
            exposure=self._exposure, outcome=self._outcome,
            confounders=self._confounders, levels=levels,
            cov_type=self._cov_type, on_degenerate=self._on_degenerate,
        )

        pipeline = _run_pipeline(analysis, **settings)
        if not pipeline.weights.is_valid:
            LOGGER.warning(
                "Excluded %d subject(s) with degenerate weights: rows %s",
                pipeline.weights.degenerate.size, pipeline.weights.degenerate.tolist(),
            )
        unadjusted, _, _ = _fit_contrasts(
            analysis, self._exposure, self._outcome, levels, None, self._cov_type,
        )

        bootstrap = run_replicates(
            partial(_replicate_estimates, **settings),
            analysis,
            self._n_bootstrap,
            seed=self._seed,
            n_jobs=self._n_jobs,
        )

        return IPTWResult(
            pipeline=pipeline,
            unadjusted=unadjusted,
            bootstrap=bootstrap,
            exposure=self._exposure,
            outcome=self._outcome,
            confounders=self._confounders,
            levels=levels,
            alpha=self._alpha,
            cov_type=self._cov_type,
            on_degenerate=self._on_degenerate,
        )
