"""
Loading and complete-case preparation of the analysis table.

catiptw analyses complete cases only. Rows with a missing outcome, exposure
or confounder are dropped, not imputed; the number dropped is logged so the
restriction is never silent.
"""
from __future__ import annotations

import logging

import pandas as pd

from ._exceptions import DataIncomplete

LOGGER = logging.getLogger(__name__)


def load_dataset(source, columns: list[str] | None = None, **read_csv_kwargs) -> pd.DataFrame:
    """
    Read a CSV analysis table from a local path or URL.

    Parameters
    ----------
    source : str or path-like or file-like
        Anything ``pandas.read_csv`` accepts.
    columns : list of str, optional
        Keep only these columns, in this order.
    """
    data = pd.read_csv(source, **read_csv_kwargs)
    LOGGER.debug("Loaded %d rows x %d columns from %s", len(data), data.shape[1], source)
    if columns is not None:
        missing = [c for c in columns if c not in data.columns]
        if missing:
            raise ValueError(f"Columns {missing} not found in {source}.")
        data = data[list(columns)]
    return data


def complete_cases(data: pd.DataFrame, columns: list[str]) -> pd.DataFrame:
    """Drop rows with a missing value in any of ``columns``."""
    missing = [c for c in columns if c not in data.columns]
    if missing:
        raise ValueError(f"Columns {missing} not found in dataframe.")

    kept = data.dropna(subset=list(columns))
    dropped = len(data) - len(kept)
    if dropped:
        LOGGER.info(
            "Complete-case restriction dropped %d of %d rows (missing values in %s)",
            dropped, len(data), ", ".join(c for c in columns if data[c].isna().any()),
        )
    return kept.reset_index(drop=True)


def require_complete(data: pd.DataFrame, columns: list[str]) -> None:
    """Raise ``DataIncomplete`` if any of ``columns`` has missing values."""
    counts = data[list(columns)].isna().sum()
    counts = counts[counts > 0]
    if not counts.empty:
        n_rows = int(data[list(columns)].isna().any(axis=1).sum())
        detail = ", ".join(f"{col}: {n}" for col, n in counts.items())
        raise DataIncomplete(
            f"{n_rows} row(s) have missing values ({detail}).\n\n"
            f"Restrict to complete cases first with "
            f"catiptw.complete_cases(data, {list(columns)}). Dropping rows "
            f"biases the estimate unless values are missing completely at random."
        )
