"""
Stabilized weights, one step at a time
======================================
Fit the denominator and numerator multinomial models yourself, form the
weights, and inspect them before running any outcome model.
"""

import numpy as np
import pandas as pd

from catiptw import (
    ExposureLevels,
    fit_multinomial,
    predict_probabilities,
    stabilized_weights,
    weight_diagnostics,
)

RNG = np.random.default_rng(1)
N = 2_000

age = RNG.normal(size=N)
logits = np.column_stack([np.zeros(N), 1.2 * age, -1.2 * age])
probs = np.exp(logits) / np.exp(logits).sum(axis=1, keepdims=True)
exposure = np.minimum((RNG.random(N)[:, None] > probs.cumsum(axis=1)).sum(axis=1), 2)
df = pd.DataFrame({"exposure": exposure, "age": age})

# One shared level order for every model and lookup.
levels = ExposureLevels([0, 1, 2])

denominator = fit_multinomial(df, "exposure", ["age"], levels, name="denominator")
numerator = fit_multinomial(df, "exposure", [], levels, name="numerator")

weights = stabilized_weights(
    levels.encode(df["exposure"]),
    predict_probabilities(denominator),
    predict_probabilities(numerator),
)

print(denominator.result.summary())
print()
print("Weight diagnostics")
print(weight_diagnostics(weights.require_valid()).round(4))
