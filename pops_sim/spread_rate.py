"""Directional spread rate of the infection.

For each run the bounding box of infected cells is recorded at the start
of the simulation and after every simulated year. The yearly rate in a
direction is how far the matching box edge moved outward, in map units.
A year with no infected cell before or after it has no rate (NaN).

The CSV written by ``write_spread_rate`` has the columns
``year,N,S,E,W`` with one row per simulated year so far.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

NAN_RATES = (math.nan, math.nan, math.nan, math.nan)


class BoundingBox(NamedTuple):
    north: int  # smallest row index
    south: int  # largest row index
    east: int   # largest column index
    west: int   # smallest column index


def infection_boundary(infected: np.ndarray) -> Optional[BoundingBox]:
    """Bounding box of the infected cells, or None when nothing is infected."""
    rows, cols = np.nonzero(infected > 0)
    if rows.size == 0:
        return None
    return BoundingBox(int(rows.min()), int(rows.max()), int(cols.max()), int(cols.min()))


class SpreadRate:
    """Yearly N/S/E/W spread rates of one stochastic run.

    Args:
        infected: Initial infected grid.
        ew_res: Cell width in map units.
        ns_res: Cell height in map units.
        n_years: Number of simulated years.
    """

    def __init__(self, infected: np.ndarray, ew_res: float, ns_res: float, n_years: int):
        self.ew_res = float(ew_res)
        self.ns_res = float(ns_res)
        self.n_years = n_years
        self.boundaries: List[Optional[BoundingBox]] = [None] * (n_years + 1)
        self.boundaries[0] = infection_boundary(infected)
        self.rates: List[Tuple[float, float, float, float]] = [NAN_RATES] * n_years

    def compute_yearly_spread_rate(self, infected: np.ndarray, sim_year: int) -> None:
        """Record the boundary after ``sim_year`` (0-based) and its rate."""
        box = infection_boundary(infected)
        self.boundaries[sim_year + 1] = box
        previous = self.boundaries[sim_year]
        if box is None or previous is None:
            self.rates[sim_year] = NAN_RATES
            return
        self.rates[sim_year] = (
            (previous.north - box.north) * self.ns_res,
            (box.south - previous.south) * self.ns_res,
            (box.east - previous.east) * self.ew_res,
            (previous.west - box.west) * self.ew_res,
        )

    def yearly_rate(self, sim_year: int) -> Tuple[float, float, float, float]:
        return self.rates[sim_year]


def average_spread_rate(rates: Sequence[SpreadRate], sim_year: int) -> Tuple[float, ...]:
    """NaN-ignoring mean of one year's rates across runs (NaN if all are NaN)."""
    values = np.array([r.yearly_rate(sim_year) for r in rates], dtype=np.float64)
    valid = ~np.isnan(values)
    counts = valid.sum(axis=0)
    sums = np.where(valid, values, 0.0).sum(axis=0)
    means = np.full(4, np.nan)
    np.divide(sums, counts, out=means, where=counts > 0)
    return tuple(float(v) for v in means)


def spread_rate_table(
    rates: Union[SpreadRate, Sequence[SpreadRate]],
    n_years: int,
    start_year: int,
) -> pd.DataFrame:
    """Build the ``year,N,S,E,W`` table for the first ``n_years`` years.

    A single SpreadRate gives that run's rates; a sequence gives the
    ensemble average.
    """
    if isinstance(rates, SpreadRate):
        rates = [rates]
    rows = []
    for sim_year in range(n_years):
        rows.append((start_year + sim_year,) + average_spread_rate(rates, sim_year))
    return pd.DataFrame(rows, columns=["year", "N", "S", "E", "W"])


def _round_half_away(values: pd.Series) -> pd.Series:
    # + 0.0 turns -0.0 into 0.0 so small negative rates print as "0"
    return np.sign(values) * np.floor(np.abs(values) + 0.5) + 0.0


def write_spread_rate(
    path: Union[str, Path],
    rates: Union[SpreadRate, Sequence[SpreadRate]],
    n_years: int,
    start_year: int,
) -> pd.DataFrame:
    """Write the spread-rate CSV, overwriting any earlier version.

    Returns:
        The table as written (rounded).
    """
    table = spread_rate_table(rates, n_years, start_year)
    for column in ("N", "S", "E", "W"):
        table[column] = _round_half_away(table[column])
    table.to_csv(path, index=False, float_format="%.0f", na_rep="nan")
    return table
