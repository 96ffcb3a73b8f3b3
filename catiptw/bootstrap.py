"""
Nonparametric bootstrap over whole-analysis statistics.

``run_replicates`` knows nothing about weights or contrasts: it resamples
subjects, hands each resample to a ``statistic`` callable returning a
``pandas.Series`` of named scalars, and collects the results. A replicate
that fails is recorded and left out rather than aborting the run, and the
number actually used is always reported.
"""
from __future__ import annotations

import logging
from typing import Callable

import numpy as np
import pandas as pd
import scipy.stats as st
from joblib import Parallel, delayed

from ._exceptions import (
    ConfigurationInvalid,
    DegenerateWeight,
    ModelFitFailure,
    ModelOutputInvalid,
    ReplicateFitFailure,
)

LOGGER = logging.getLogger(__name__)

# Failures that make a single resample unusable without invalidating the run.
_REPLICATE_ERRORS = (
    ReplicateFitFailure,
    ModelFitFailure,
    ModelOutputInvalid,
    DegenerateWeight,
    np.linalg.LinAlgError,
    ValueError,
)


def resample(data: pd.DataFrame, rng: np.random.Generator) -> pd.DataFrame:
    """Draw ``len(data)`` rows uniformly with replacement."""
    n = len(data)
    idx = rng.integers(0, n, size=n)
    return data.iloc[idx].reset_index(drop=True)


def _one_replicate(
    statistic: Callable[[pd.DataFrame], pd.Series],
    data: pd.DataFrame,
    replicate: int,
    seed: np.random.SeedSequence,
):
    rng = np.random.default_rng(seed)
    try:
        return pd.Series(statistic(resample(data, rng)), dtype=float)
    except _REPLICATE_ERRORS as exc:
        return ReplicateFitFailure(replicate, exc)


class BootstrapDistribution:
    """
    Collected bootstrap draws of one or more named statistics.

    ``draws`` has one row per successful replicate and one column per
    statistic. Failed replicates are kept in ``failures`` only.
    """

    def __init__(
        self,
        draws: pd.DataFrame,
        failures: list[ReplicateFitFailure],
        n_requested: int,
    ) -> None:
        self._draws = draws
        self._failures = failures
        self._n_requested = n_requested

    @property
    def draws(self) -> pd.DataFrame:
        """Per-replicate statistics, indexed by replicate number."""
        return self._draws.copy()

    @property
    def failures(self) -> list[ReplicateFitFailure]:
        """Replicates that were dropped, with their cause."""
        return list(self._failures)

    @property
    def n_requested(self) -> int:
        return self._n_requested

    @property
    def n_used(self) -> int:
        """Number of replicates that contribute to the distribution."""
        return len(self._draws)

    @property
    def n_failed(self) -> int:
        return len(self._failures)

    def mean(self) -> pd.Series:
        return self._draws.mean()

    def std_err(self) -> pd.Series:
        """Bootstrap standard error (SD of the draws, ddof=1); NaN with fewer than two draws."""
        if self.n_used < 2:
            return pd.Series(np.nan, index=self._draws.columns)
        return self._draws.std(ddof=1)

    def normal_interval(self, estimates: pd.Series, alpha: float = 0.05) -> pd.DataFrame:
        """
        Normal-approximation interval ``estimate ± z * SD``.

        The centre is the point estimate from the original data, the spread
        is the bootstrap SD.
        """
        z = st.norm.ppf(1.0 - alpha / 2.0)
        se = self.std_err().reindex(estimates.index)
        return pd.DataFrame({"lower": estimates - z * se, "upper": estimates + z * se})

    def percentile_interval(self, alpha: float = 0.05) -> pd.DataFrame:
        """Percentile interval from the empirical distribution of the draws."""
        return pd.DataFrame({
            "lower": self._draws.quantile(alpha / 2.0),
            "upper": self._draws.quantile(1.0 - alpha / 2.0),
        })

    def __repr__(self) -> str:
        return (
            f"BootstrapDistribution(n_used={self.n_used}, "
            f"n_failed={self.n_failed}, statistics={list(self._draws.columns)})"
        )


def run_replicates(
    statistic: Callable[[pd.DataFrame], pd.Series],
    data: pd.DataFrame,
    n_replicates: int,
    seed=None,
    n_jobs: int = 1,
    backend: str | None = None,
) -> BootstrapDistribution:
    """
    Apply ``statistic`` to ``n_replicates`` independent resamples of ``data``.

    Each replicate draws from its own child of ``SeedSequence(seed)``, so for
    a fixed seed the resamples, and therefore the summary, are identical
    whatever ``n_jobs`` is. Replicates share only read access to ``data``.

    Parameters
    ----------
    statistic : callable
        Maps a resampled table to a ``pandas.Series`` of named scalars.
    n_replicates : int
        Number of resamples; must be at least 1.
    seed : int or None
        Seed for ``numpy.random.SeedSequence``.
    n_jobs : int
        Passed to ``joblib.Parallel``; 1 runs in-process.
    backend : str, optional
        ``joblib`` backend, e.g. ``"threading"``; joblib's default otherwise.

    Raises
    ------
    ``ConfigurationInvalid``
        If ``n_replicates`` is less than 1.
    """
    if int(n_replicates) != n_replicates or n_replicates < 1:
        raise ConfigurationInvalid(
            f"Number of bootstrap replicates must be a positive integer, got {n_replicates}. "
            f"At least one replicate is needed to estimate any spread."
        )
    n_replicates = int(n_replicates)

    children = np.random.SeedSequence(seed).spawn(n_replicates)
    LOGGER.info("Running %d bootstrap replicates (n_jobs=%d)", n_replicates, n_jobs)

    outputs = Parallel(n_jobs=n_jobs, backend=backend)(
        delayed(_one_replicate)(statistic, data, b + 1, children[b])
        for b in range(n_replicates)
    )

    rows, index, failures = [], [], []
    for b, out in enumerate(outputs, start=1):
        if isinstance(out, ReplicateFitFailure):
            LOGGER.warning("%s; replicate dropped", out)
            failures.append(out)
        else:
            rows.append(out)
            index.append(b)

    draws = pd.DataFrame(rows, index=pd.Index(index, name="replicate"))
    if failures:
        LOGGER.warning(
            "%d of %d bootstrap replicates failed; %d used",
            len(failures), n_replicates, len(rows),
        )
    if len(rows) < 2:
        LOGGER.warning(
            "Only %d bootstrap replicate(s) succeeded; the bootstrap standard "
            "error is undefined", len(rows),
        )
    LOGGER.info("Bootstrap finished: %d of %d replicates used", len(rows), n_replicates)
    return BootstrapDistribution(draws, failures, n_replicates)
