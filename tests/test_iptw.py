import numpy as np
import pandas as pd
import pytest

import catiptw.estimators.iptw as iptw_module
from catiptw import (
    CategoricalIPTW,
    ConfigurationInvalid,
    DataIncomplete,
    DegenerateWeight,
    ExposureLevels,
    IPTWResult,
    ModelFitFailure,
    ReplicateFitFailure,
    WeightResult,
)


N = 1_500
N_BOOT = 100
TRUE_EFFECTS = {1: 3.0, 2: 6.0}   # mean sbp shift relative to level 0


def make_data(seed=42):
    """
    Three-level exposure confounded by age and sex:
      P(smoking = k | age, sex)  multinomial logit
      sbp = 3*[smoking=1] + 6*[smoking=2] + 2*age + 4*sex + noise
    Older subjects are more likely to be level 1 and less likely level 2,
    so unweighted comparisons are biased.
    """
    rng = np.random.default_rng(seed)
    age = rng.normal(size=N)
    sex = rng.integers(0, 2, size=N).astype(float)
    logits = np.column_stack([
        np.zeros(N),
        0.8 * age + 0.5 * sex - 0.3,
        -0.8 * age + 0.4 * sex - 0.5,
    ])
    probs = np.exp(logits) / np.exp(logits).sum(axis=1, keepdims=True)
    u = rng.random(N)[:, None]
    smoking = np.minimum((u > probs.cumsum(axis=1)).sum(axis=1), 2)
    sbp = (
        TRUE_EFFECTS[1] * (smoking == 1)
        + TRUE_EFFECTS[2] * (smoking == 2)
        + 2.0 * age + 4.0 * sex + rng.normal(size=N)
    )
    return pd.DataFrame({"sbp": sbp, "smoking": smoking, "age": age, "sex": sex})


def make_estimator(**kwargs):
    settings = dict(exposure="smoking", outcome="sbp", confounders=["age", "sex"], n_bootstrap=N_BOOT)
    settings.update(kwargs)
    return CategoricalIPTW(**settings)


class TestCategoricalIPTWValidation:
    """Input validation; all raise before any model is fitted."""

    def test_exposure_equals_outcome_raises(self):
        with pytest.raises(ValueError, match="different"):
            CategoricalIPTW(exposure="sbp", outcome="sbp", confounders=["age"])

    def test_exposure_as_confounder_raises(self):
        with pytest.raises(ValueError, match="confounder"):
            CategoricalIPTW(exposure="smoking", outcome="sbp", confounders=["age", "smoking"])

    def test_zero_bootstrap_replicates_raises(self):
        with pytest.raises(ConfigurationInvalid, match="n_bootstrap"):
            make_estimator(n_bootstrap=0)

    def test_non_integer_bootstrap_replicates_raises(self):
        with pytest.raises(ConfigurationInvalid):
            make_estimator(n_bootstrap=10.5)

    def test_bad_alpha_raises(self):
        with pytest.raises(ConfigurationInvalid, match="alpha"):
            make_estimator(alpha=1.5)

    def test_bad_cov_type_raises(self):
        with pytest.raises(ConfigurationInvalid, match="cov_type"):
            make_estimator(cov_type="nonrobust")

    def test_bad_degenerate_policy_raises(self):
        with pytest.raises(ConfigurationInvalid, match="on_degenerate"):
            make_estimator(on_degenerate="ignore")

    def test_missing_exposure_column_raises(self):
        df = make_data().drop(columns=["smoking"])
        with pytest.raises(ValueError, match="Exposure column"):
            make_estimator().fit(df)

    def test_missing_outcome_column_raises(self):
        df = make_data().drop(columns=["sbp"])
        with pytest.raises(ValueError, match="Outcome column"):
            make_estimator().fit(df)

    def test_missing_confounder_column_raises(self):
        df = make_data().drop(columns=["sex"])
        with pytest.raises(ValueError, match="Confounder"):
            make_estimator().fit(df)

    def test_missing_values_raise(self):
        df = make_data()
        df.loc[3, "age"] = np.nan
        with pytest.raises(DataIncomplete):
            make_estimator().fit(df)

    def test_undeclared_exposure_level_raises(self):
        with pytest.raises(ValueError, match="declared levels"):
            make_estimator(levels=[0, 1]).fit(make_data())

    def test_absent_declared_level_is_fatal(self):
        df = make_data()
        df = df[df["smoking"] != 2].reset_index(drop=True)
        with pytest.raises(Exception, match=r"\[2\]"):
            make_estimator(levels=[0, 1, 2]).fit(df)


class TestCategoricalIPTWEstimation:
    """Fit once per class so the bootstrap runs only once."""

    @classmethod
    def setup_class(cls):
        cls.df = make_data()
        cls.result = make_estimator().fit(cls.df)

    def test_returns_iptw_result(self):
        assert isinstance(self.result, IPTWResult)

    def test_levels_inferred(self):
        assert self.result.levels == ExposureLevels([0, 1, 2])

    def test_contrasts_close_to_truth(self):
        assert abs(self.result.effect(1, 0) - 3.0) < 0.75
        assert abs(self.result.effect(2, 0) - 6.0) < 0.75
        assert abs(self.result.effect(2, 1) - 3.0) < 0.75

    def test_unweighted_contrasts_are_confounded(self):
        bias = abs(self.result.unadjusted_effect(2, 1) - 3.0)
        assert bias > abs(self.result.effect(2, 1) - 3.0)

    def test_reversed_contrast_is_negated(self):
        assert self.result.effect(0, 1) == pytest.approx(-self.result.effect(1, 0))
        lo, hi = self.result.conf_int(0, 1)
        lo_r, hi_r = self.result.conf_int(1, 0)
        assert lo == pytest.approx(-hi_r)
        assert hi == pytest.approx(-lo_r)

    def test_unknown_level_in_lookup_raises(self):
        with pytest.raises(ValueError):
            self.result.effect(3, 0)
        with pytest.raises(ValueError):
            self.result.effect(1, 1)

    def test_contrasts_table(self):
        table = self.result.contrasts
        assert list(table.index) == ["1 vs 0", "2 vs 0", "2 vs 1"]
        assert {"estimate", "robust_se", "bootstrap_se", "ci_lower", "ci_upper", "pvalue"} <= set(table.columns)

    def test_std_errs_positive(self):
        for level, reference in self.result.levels.pairs():
            assert self.result.std_err(level, reference) > 0
            assert self.result.robust_std_err(level, reference) > 0

    def test_conf_int_centred_on_point_estimate(self):
        lo, hi = self.result.conf_int(2, 0)
        assert (lo + hi) / 2 == pytest.approx(self.result.effect(2, 0))
        assert (hi - lo) / 2 == pytest.approx(1.959964 * self.result.std_err(2, 0), rel=1e-5)

    def test_conf_int_brackets_estimate(self):
        lo, hi = self.result.conf_int(1, 0)
        assert lo < self.result.effect(1, 0) < hi

    def test_pvalues_significant(self):
        assert self.result.pvalue(2, 0) < 0.05

    def test_mean_weight_near_one(self):
        assert abs(np.mean(self.result.weights) - 1.0) < 0.1

    def test_weights_positive(self):
        assert len(self.result.weights) == N
        assert (self.result.weights > 0).all()

    def test_weight_diagnostics(self):
        diag = self.result.weight_diagnostics
        assert 0 < diag["ess"] <= N
        assert diag["min"] <= diag["mean"] <= diag["max"]

    def test_propensity_rows_sum_to_one(self):
        ps = self.result.propensity_scores
        assert list(ps.columns) == [0, 1, 2]
        np.testing.assert_allclose(ps.sum(axis=1), 1.0, atol=1e-6)

    def test_bootstrap_counts(self):
        assert self.result.n_bootstrap_used + self.result.n_bootstrap_failed == N_BOOT
        assert len(self.result.bootstrap_draws) == self.result.n_bootstrap_used

    def test_bootstrap_draws_columns(self):
        assert list(self.result.bootstrap_draws.columns) == ["1 vs 0", "2 vs 0", "2 vs 1"]

    def test_one_weighted_fit_per_reference(self):
        fits = self.result.statsmodels_results
        assert sorted(fits) == [0, 1]
        assert fits[0].cov_type == "HC0"

    def test_no_excluded_subjects(self):
        assert self.result.excluded_subjects == []

    def test_assumptions_present(self):
        names = [a.name for a in self.result.assumptions]
        assert any("Positivity" in n for n in names)
        assert any("SUTVA" in n for n in names)


class TestIPTWResultSummary:
    @classmethod
    def setup_class(cls):
        cls.result = make_estimator(n_bootstrap=20).fit(make_data())

    def test_summary_contents(self):
        summary = self.result.summary()
        assert "IPTW" in summary
        assert "smoking" in summary and "sbp" in summary
        assert "2 vs 1" in summary
        assert "20 of 20 replicates used" in summary

    def test_repr_is_summary(self):
        assert repr(self.result) == self.result.summary()

    def test_executive_summary(self):
        text = self.result.executive_summary()
        assert "Executive Summary" in text
        assert "20 bootstrap replicates" in text


class TestDeterminism:
    def test_same_seed_same_bootstrap(self):
        df = make_data()
        a = make_estimator(n_bootstrap=10, seed=7).fit(df)
        b = make_estimator(n_bootstrap=10, seed=7).fit(df)
        pd.testing.assert_frame_equal(a.bootstrap_draws, b.bootstrap_draws)
        np.testing.assert_array_equal(a.weights, b.weights)

    def test_single_replicate(self):
        result = make_estimator(n_bootstrap=1).fit(make_data())
        assert result.n_bootstrap_used == 1
        assert np.isnan(result.std_err(1, 0))
        assert np.isnan(result.pvalue(1, 0))


class TestStringLevels:
    def test_labels_follow_declared_levels(self):
        df = make_data()
        df["smoking"] = df["smoking"].map({0: "never", 1: "former", 2: "current"})
        result = make_estimator(levels=["never", "former", "current"], n_bootstrap=10).fit(df)
        assert list(result.contrasts.index) == ["former vs never", "current vs never", "current vs former"]
        assert abs(result.effect("current", "never") - 6.0) < 0.75


class TestDegeneratePolicy:
    @staticmethod
    def patch_first_subject(monkeypatch):
        original = iptw_module._exposure_weights

        def patched(data, exposure, confounders, levels):
            result, probs = original(data, exposure, confounders, levels)
            weights = result.weights.copy()
            weights[0] = np.nan
            flagged = WeightResult(weights, result.numerator, result.denominator, np.array([0]))
            return flagged, probs

        monkeypatch.setattr(iptw_module, "_exposure_weights", patched)

    def test_raise_policy_is_fatal(self, monkeypatch):
        self.patch_first_subject(monkeypatch)
        with pytest.raises(DegenerateWeight, match=r"rows \[0\]"):
            make_estimator(n_bootstrap=5).fit(make_data())

    def test_exclude_policy_drops_subject(self, monkeypatch):
        self.patch_first_subject(monkeypatch)
        result = make_estimator(n_bootstrap=5, on_degenerate="exclude").fit(make_data())
        assert result.excluded_subjects == [0]
        assert np.isnan(result.weights[0])
        assert "Excluded subjects" in result.summary()
        assert result.n_bootstrap_used == 5


class TestZeroStandardError:
    def test_pvalue_is_nan_not_division_error(self, monkeypatch):
        result = make_estimator(n_bootstrap=5).fit(make_data())
        monkeypatch.setattr(result, "std_err", lambda level, reference: 0.0)
        assert np.isnan(result.pvalue(1, 0))
        assert result.contrasts["pvalue"].isna().all()


class TestFitRejection:
    def test_separated_exposure_fatal_in_primary_fit(self):
        rng = np.random.default_rng(3)
        x = rng.normal(size=300)
        e = np.digitize(x, [-0.5, 0.5])
        df = pd.DataFrame({"y": x + e + rng.normal(size=300), "e": e, "x": x})
        with pytest.raises(ModelFitFailure, match="denominator model"):
            CategoricalIPTW(exposure="e", outcome="y", confounders=["x"], n_bootstrap=5).fit(df)


class TestRareLevel:
    """
    Level 2 has three subjects, so a fair share of resamples omit it and the
    propensity fit on those resamples is rejected.
    """

    N_RARE = 300
    R = 200

    @classmethod
    def setup_class(cls):
        rng = np.random.default_rng(21)
        age = rng.normal(size=cls.N_RARE)
        e = (rng.random(cls.N_RARE) < 1.0 / (1.0 + np.exp(-age))).astype(int)
        e[np.argsort(np.abs(age))[:3]] = 2
        y = 1.0 * (e == 1) + 2.0 * (e == 2) + age + rng.normal(size=cls.N_RARE)
        cls.df = pd.DataFrame({"y": y, "e": e, "age": age})
        cls.result = CategoricalIPTW(
            exposure="e", outcome="y", confounders=["age"], n_bootstrap=cls.R, seed=1,
        ).fit(cls.df)

    def test_some_replicates_failed(self):
        assert self.result.n_bootstrap_failed > 0

    def test_counts_add_up(self):
        assert self.result.n_bootstrap_used + self.result.n_bootstrap_failed == self.R
        assert len(self.result.bootstrap_draws) == self.result.n_bootstrap_used

    def test_failures_carry_fit_cause(self):
        failures = self.result.bootstrap_failures
        assert all(isinstance(f, ReplicateFitFailure) for f in failures)
        assert any(isinstance(f.cause, ModelFitFailure) for f in failures)

    def test_summary_reports_failures(self):
        summary = self.result.summary()
        assert f"{self.result.n_bootstrap_used} of {self.R} replicates used" in summary
        assert f"({self.result.n_bootstrap_failed} failed)" in summary

    def test_standard_errors_from_used_replicates(self):
        assert self.result.std_err(2, 0) > 0
