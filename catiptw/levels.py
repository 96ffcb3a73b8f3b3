from __future__ import annotations

from itertools import combinations

import numpy as np
import pandas as pd

from ._exceptions import ConfigurationInvalid


class ExposureLevels:
    """
    The fixed, ordered set of levels of a categorical exposure.

    Every probability matrix in catiptw has one column per level, in this
    order. Passing the same ``ExposureLevels`` to every model fit, weight
    lookup and contrast keeps the exposure codes aligned with the matrix
    columns, including inside bootstrap replicates where a refit could
    otherwise reorder or drop categories.

    Example::

        levels = ExposureLevels([0, 1, 2])
        codes = levels.encode(df["smoking"])   # array of 0, 1, 2
        levels.pairs()                         # [(1, 0), (2, 0), (2, 1)]
    """

    def __init__(self, values) -> None:
        values = list(values)
        if len(values) < 2:
            raise ConfigurationInvalid(
                f"A categorical exposure needs at least two levels. Got: {values}"
            )
        if len(set(values)) != len(values):
            raise ConfigurationInvalid(f"Exposure levels must be unique. Got: {values}")
        self._values = tuple(values)
        self._index = {v: k for k, v in enumerate(self._values)}

    @classmethod
    def from_series(cls, series: pd.Series) -> ExposureLevels:
        """Levels in sorted order of the distinct non-missing values of ``series``."""
        return cls(sorted(series.dropna().unique().tolist()))

    # ── Encoding ──────────────────────────────────────────────────────────────

    def encode(self, series) -> np.ndarray:
        """Map exposure values to 0-based level codes."""
        values = pd.Series(series)
        unknown = set(values.unique()) - set(self._values)
        if unknown:
            raise ValueError(
                f"Exposure values {sorted(map(str, unknown))} are not among the "
                f"declared levels {list(self._values)}."
            )
        return values.map(self._index).to_numpy(dtype=int)

    def decode(self, codes) -> list:
        """Map 0-based level codes back to exposure values."""
        return [self._values[int(c)] for c in codes]

    def index(self, level) -> int:
        """Column position of ``level`` in every probability matrix."""
        try:
            return self._index[level]
        except KeyError:
            raise ValueError(
                f"'{level}' is not an exposure level. Known levels: {list(self._values)}"
            ) from None

    # ── Contrasts ─────────────────────────────────────────────────────────────

    def pairs(self) -> list[tuple]:
        """All ``(level, reference)`` pairs, reference earlier in level order."""
        return [(b, a) for a, b in combinations(self._values, 2)]

    def references(self) -> list:
        """
        Reference levels whose refits together expose every pairwise contrast.

        Holding out each level but the last in turn yields every pair exactly
        once: for three levels, reference 0 gives (1 vs 0) and (2 vs 0) and
        reference 1 gives (2 vs 1).
        """
        return list(self._values[:-1])

    # ── Container protocol ────────────────────────────────────────────────────

    @property
    def values(self) -> tuple:
        return self._values

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self):
        return iter(self._values)

    def __contains__(self, level) -> bool:
        return level in self._index

    def __eq__(self, other) -> bool:
        return isinstance(other, ExposureLevels) and self._values == other._values

    def __hash__(self) -> int:
        return hash(self._values)

    def __repr__(self) -> str:
        return f"ExposureLevels({list(self._values)})"
