"""
Refuting an IPTW analysis
=========================
Run the placebo-exposure and random-common-cause checks against a fitted
categorical IPTW result.
"""

import numpy as np
import pandas as pd

from catiptw import CategoricalIPTW

RNG = np.random.default_rng(2)
N = 2_000

age = RNG.normal(size=N)
sex = RNG.integers(0, 2, size=N).astype(float)
logits = np.column_stack([np.zeros(N), 0.8 * age + 0.5 * sex, -0.8 * age + 0.4 * sex])
probs = np.exp(logits) / np.exp(logits).sum(axis=1, keepdims=True)
smoking = np.minimum((RNG.random(N)[:, None] > probs.cumsum(axis=1)).sum(axis=1), 2)
sbp = 3.0 * (smoking == 1) + 6.0 * (smoking == 2) + 2.0 * age + 4.0 * sex + RNG.normal(size=N)

df = pd.DataFrame({"sbp": sbp, "smoking": smoking, "age": age, "sex": sex})

result = CategoricalIPTW(
    exposure="smoking", outcome="sbp", confounders=["age", "sex"], n_bootstrap=200,
).fit(df)
print(result.summary())

report = result.refute(df)
print(report.summary())
