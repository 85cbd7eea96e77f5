"""Treatment schedule.

A treatment is an intensity grid in [0, 1] applied once in a given
calendar year. The application policy decides how it acts on infected
hosts; susceptible hosts are always reduced by the treated fraction.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

import numpy as np

from pops_sim.types import TreatmentApplication

logger = logging.getLogger(__name__)


class TreatmentSchedule:
    """Maps calendar year → treatment intensity grid.

    Counts are truncated toward zero after treatment, so a treatment never
    leaves a fractional host behind.
    """

    def __init__(self, application: TreatmentApplication = TreatmentApplication.RATIO_TO_ALL):
        self.application = application
        self._treatments: Dict[int, np.ndarray] = {}

    def __len__(self) -> int:
        return len(self._treatments)

    def __contains__(self, year: int) -> bool:
        return year in self._treatments

    def years(self):
        return sorted(self._treatments)

    def add_treatment(self, year: int, grid: np.ndarray) -> None:
        """Schedule ``grid`` for ``year``, replacing an earlier one for that year."""
        grid = np.asarray(grid, dtype=np.float64)
        if grid.size and (grid.min() < 0 or grid.max() > 1):
            raise ValueError(
                f"Treatment intensities must be in [0, 1] (year {year})"
            )
        self._treatments[int(year)] = grid

    def clear_after_year(self, year: int) -> None:
        """Drop every treatment scheduled after ``year``."""
        dropped = [y for y in self._treatments if y > year]
        for y in dropped:
            del self._treatments[y]
        if dropped:
            logger.debug("Dropped treatments for years %s", sorted(dropped))

    def get(self, year: int) -> Optional[np.ndarray]:
        return self._treatments.get(year)

    # ── application ──────────────────────────────────────────────────

    def _treat_infected(self, grid: np.ndarray, infected: np.ndarray) -> None:
        if self.application is TreatmentApplication.ALL_INFECTED_IN_CELL:
            infected[grid > 0] = 0
        else:
            infected[...] = np.floor(infected - infected * grid).astype(infected.dtype)

    def apply_treatment_host(self, year: int, infected: np.ndarray,
                             susceptible: np.ndarray) -> bool:
        """Apply the treatment of ``year`` to both host pools.

        Returns:
            True when a treatment was scheduled for ``year``.
        """
        grid = self._treatments.get(year)
        if grid is None:
            return False
        self._treat_infected(grid, infected)
        susceptible[...] = np.floor(susceptible - susceptible * grid).astype(susceptible.dtype)
        return True

    def apply_treatment_infected(self, year: int, infected: np.ndarray) -> bool:
        """Apply the treatment of ``year`` to an infected grid only (e.g. a cohort)."""
        grid = self._treatments.get(year)
        if grid is None:
            return False
        self._treat_infected(grid, infected)
        return True
