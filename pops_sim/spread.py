"""Per-cell spread capabilities: spore generation, dispersal, lethal removal.

All functions mutate the grids they are given in place and touch no
state outside one stochastic run, so the ensemble can call them
concurrently for different runs.

Grids are 2-D integer NumPy arrays (hosts are counted), weather
coefficients are 2-D float arrays.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

import numpy as np


def generate(
    rng: np.random.Generator,
    infected: np.ndarray,
    reproductive_rate: float,
    weather_coefficient: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Draw the number of spores produced in each cell.

    Every infected host produces Poisson(rate × weather) spores, so a
    cell produces Poisson(rate × weather × infected).

    Returns:
        Integer grid of spore counts, same shape as ``infected``.
    """
    lam = reproductive_rate * infected.astype(np.float64)
    if weather_coefficient is not None:
        lam = lam * weather_coefficient
    return rng.poisson(np.maximum(lam, 0.0))


def disperse(
    rng: np.random.Generator,
    kernel,
    spores: np.ndarray,
    susceptible: np.ndarray,
    infected: np.ndarray,
    cohort: np.ndarray,
    total_plants: np.ndarray,
    outside: List[Tuple[int, int]],
    weather_coefficient: Optional[np.ndarray] = None,
) -> int:
    """Disperse spores and infect susceptible hosts where they land.

    Spores are taken in row-major order of their source cell. Each one
    lands on the cell chosen by ``kernel``. Landings outside the grid are
    appended to ``outside`` as (row, col). A spore landing on a cell with
    susceptible hosts infects one of them with probability
    ``susceptible / total_plants`` (times the weather coefficient of the
    landing cell), moving it from ``susceptible`` to ``infected`` and
    counting it in ``cohort``. Spores are resolved sequentially, so later
    spores see the infections caused by earlier ones.

    Returns:
        Number of new infections.
    """
    n_rows, n_cols = susceptible.shape
    src_rows, src_cols = np.nonzero(spores)
    counts = spores[src_rows, src_cols]
    if counts.sum() == 0:
        return 0
    rows, cols = kernel(rng, np.repeat(src_rows, counts), np.repeat(src_cols, counts))

    inside = (rows >= 0) & (rows < n_rows) & (cols >= 0) & (cols < n_cols)
    if not inside.all():
        outside.extend(zip(rows[~inside].tolist(), cols[~inside].tolist()))
    rows = rows[inside]
    cols = cols[inside]

    # Hosts only ever leave the susceptible pool here.
    candidates = susceptible[rows, cols] > 0
    rows = rows[candidates]
    cols = cols[candidates]
    draws = rng.random(rows.size)

    new_infections = 0
    for row, col, u in zip(rows.tolist(), cols.tolist(), draws.tolist()):
        s = susceptible[row, col]
        total = total_plants[row, col]
        if s <= 0 or total <= 0:
            continue
        probability = s / total
        if weather_coefficient is not None:
            probability *= weather_coefficient[row, col]
        if u < probability:
            susceptible[row, col] -= 1
            infected[row, col] += 1
            cohort[row, col] += 1
            new_infections += 1
    return new_infections


def remove_lethal(
    infected: np.ndarray,
    susceptible: np.ndarray,
    temperature: np.ndarray,
    lethal_temperature: float,
    cohorts: Optional[np.ndarray] = None,
) -> int:
    """Return infected hosts to the susceptible pool where it is too cold.

    In every cell whose temperature is below ``lethal_temperature`` the
    infection dies out: infected hosts become susceptible again. When
    ``cohorts`` (ages × rows × cols) is given, the matching cells are
    cleared in every cohort too.

    Returns:
        Number of hosts returned to the susceptible pool.
    """
    cold = temperature < lethal_temperature
    removed = int(infected[cold].sum())
    susceptible[cold] += infected[cold]
    infected[cold] = 0
    if cohorts is not None:
        cohorts[:, cold] = 0
    return removed
