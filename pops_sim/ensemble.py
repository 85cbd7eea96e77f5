"""Ensemble of independent stochastic runs.

Each run owns its grids, cohort stack, generator, kernel copy and log of
dispersal events that left the grid. Phases that update runs (a year
chunk, mortality, spread-rate bookkeeping) are executed as a parallel map
over the runs with a join at the end; no run reads another run's state
during a phase. Everything that touches several runs at once (sync,
aggregation, snapshots) happens between phases, on the calling thread.

Cohorts: ``cohorts[age]`` holds the hosts infected during simulated year
``age`` (0 = first simulated year) that are still infected.
"""

from __future__ import annotations

import copy
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from pops_sim import spread
from pops_sim.checkpoints import Checkpoint
from pops_sim.date import Date, month_in_season
from pops_sim.rng import create_run_rngs, restore_rng_state, rng_state_snapshot
from pops_sim.spread_rate import SpreadRate
from pops_sim.treatments import TreatmentSchedule

logger = logging.getLogger(__name__)


@dataclass
class RunState:
    """State of one stochastic run."""
    index: int
    seed: int
    rng: np.random.Generator
    kernel: object
    susceptible: np.ndarray          # int64 (rows, cols)
    infected: np.ndarray             # int64 (rows, cols)
    cohorts: np.ndarray              # int64 (n_years, rows, cols)
    dead_this_year: np.ndarray       # int64 (rows, cols)
    outside_events: List[Tuple[int, int]] = field(default_factory=list)


class EnsembleRunner:
    """Executes chunk, mortality and aggregation phases over all runs.

    Args:
        runs: Run states, index order.
        total_plants: Total number of plants per cell (establishment denominator).
        reproductive_rate: Spores per infected host per step.
        season: (from_month, to_month) in which spores spread.
        treatments: Treatment schedule, or None.
        treatment_month: Month in which a year's treatment is applied.
        lethal_temperature: Temperature below which infection dies out.
        lethal_month: Month in which the lethal-temperature check runs.
        mortality_rate: Fraction of a dying cohort removed each year (None = off).
        mortality_time_lag: Year of infection in which hosts start dying (1 = first).
        threads: Worker threads for the parallel phases.
    """

    def __init__(
        self,
        runs: List[RunState],
        total_plants: np.ndarray,
        reproductive_rate: float,
        season: Tuple[int, int] = (1, 12),
        treatments: Optional[TreatmentSchedule] = None,
        treatment_month: Optional[int] = None,
        lethal_temperature: Optional[float] = None,
        lethal_month: Optional[int] = None,
        mortality_rate: Optional[float] = None,
        mortality_time_lag: int = 1,
        threads: int = 1,
    ):
        if not runs:
            raise ValueError("An ensemble needs at least one run")
        self.runs = runs
        self.total_plants = total_plants
        self.reproductive_rate = reproductive_rate
        self.season = tuple(season)
        self.treatments = treatments
        self.treatment_month = treatment_month
        self.lethal_temperature = lethal_temperature
        self.lethal_month = lethal_month
        self.mortality_rate = mortality_rate
        self.mortality_time_lag = mortality_time_lag
        self.threads = threads

    @classmethod
    def create(
        cls,
        host: np.ndarray,
        infected: np.ndarray,
        total_plants: np.ndarray,
        kernel,
        seed: int,
        n_runs: int,
        n_years: int,
        **kwargs,
    ) -> "EnsembleRunner":
        """Build ``n_runs`` runs starting from the same initial grids.

        Susceptible hosts are ``host - infected``. Run ``i`` is seeded with
        ``seed + i`` and receives its own copy of ``kernel``.
        """
        infected = np.asarray(infected, dtype=np.int64)
        susceptible = np.asarray(host, dtype=np.int64) - infected
        if (susceptible < 0).any():
            raise ValueError("Infected hosts exceed the number of hosts in some cells")
        rngs = create_run_rngs(seed, n_runs)
        runs = [
            RunState(
                index=i,
                seed=seed + i,
                rng=rngs[i],
                kernel=copy.deepcopy(kernel),
                susceptible=susceptible.copy(),
                infected=infected.copy(),
                cohorts=np.zeros((n_years,) + infected.shape, dtype=np.int64),
                dead_this_year=np.zeros(infected.shape, dtype=np.int64),
            )
            for i in range(n_runs)
        ]
        return cls(runs, np.asarray(total_plants, dtype=np.float64), **kwargs)

    @property
    def n_runs(self) -> int:
        return len(self.runs)

    @property
    def mortality_enabled(self) -> bool:
        return self.mortality_rate is not None

    def mortality_max_age(self, sim_year: int) -> int:
        """Oldest cohort index subject to mortality in ``sim_year`` (-1 if none)."""
        return sim_year - (self.mortality_time_lag - 1)

    # ── parallel map ─────────────────────────────────────────────────

    def map(self, fn: Callable[[RunState], object]) -> list:
        """Apply ``fn`` to every run; returns results in run order."""
        if self.threads == 1 or self.n_runs == 1:
            return [fn(run) for run in self.runs]
        with ThreadPoolExecutor(max_workers=self.threads) as pool:
            return list(pool.map(fn, self.runs))

    # ── phases ───────────────────────────────────────────────────────

    def run_chunk(
        self,
        dates: Sequence[Date],
        weather: Sequence[Optional[np.ndarray]],
        sim_year: int,
        temperature: Optional[np.ndarray] = None,
    ) -> None:
        """Apply one chunk of steps to every run.

        For each step: lethal-temperature removal (once a year, in the
        lethal month, when ``temperature`` is given), then treatment (once
        a year, in the treatment month; also applied to dying cohorts when
        mortality is on), then, inside the season, spore generation and
        dispersal into the cohort of ``sim_year``.
        """
        if len(weather) != len(dates):
            raise ValueError(
                f"Got {len(weather)} weather coefficients for {len(dates)} steps"
            )

        def step_run(run: RunState) -> int:
            lethality_done = False
            treatment_done = False
            new_infections = 0
            for date, coefficient in zip(dates, weather):
                if (temperature is not None and not lethality_done
                        and date.month == self.lethal_month):
                    spread.remove_lethal(run.infected, run.susceptible, temperature,
                                         self.lethal_temperature, run.cohorts)
                    lethality_done = True
                if (self.treatments is not None and not treatment_done
                        and date.month == self.treatment_month):
                    self.treatments.apply_treatment_host(
                        date.year, run.infected, run.susceptible)
                    if self.mortality_enabled:
                        for age in range(self.mortality_max_age(sim_year) + 1):
                            self.treatments.apply_treatment_infected(
                                date.year, run.cohorts[age])
                    treatment_done = True
                if not month_in_season(date.month, self.season):
                    continue
                spores = spread.generate(run.rng, run.infected,
                                         self.reproductive_rate, coefficient)
                new_infections += spread.disperse(
                    run.rng, run.kernel, spores, run.susceptible, run.infected,
                    run.cohorts[sim_year], self.total_plants, run.outside_events,
                    coefficient,
                )
            return new_infections

        counts = self.map(step_run)
        logger.debug("Year %d chunk of %d steps: new infections per run %s",
                     sim_year, len(dates), counts)

    def apply_mortality(self, sim_year: int) -> None:
        """Remove the yearly fraction of every dying cohort from all runs."""
        if not self.mortality_enabled:
            return
        max_age = self.mortality_max_age(sim_year)
        rate = self.mortality_rate

        def kill(run: RunState) -> None:
            run.dead_this_year[...] = 0
            for age in range(max_age + 1):
                dead = np.floor(rate * run.cohorts[age]).astype(np.int64)
                run.cohorts[age] -= dead
                run.dead_this_year += dead
            run.infected -= np.minimum(run.dead_this_year, run.infected)

        self.map(kill)

    def compute_spread_rates(self, rates: Sequence[SpreadRate], sim_year: int) -> None:
        """Record each run's yearly spread rate into ``rates[run.index]``.

        The engine calls this before ``sync_runs``, so after a sync every
        run keeps its own pre-sync boundary as the baseline for the next
        year's rate.
        """
        def compute(run: RunState) -> None:
            rates[run.index].compute_yearly_spread_rate(run.infected, sim_year)
        self.map(compute)

    def sync_runs(self, source: int = 0) -> None:
        """Copy the grids and cohorts of run ``source`` into every other run."""
        src = self.runs[source]
        for run in self.runs:
            if run is src:
                continue
            run.susceptible[...] = src.susceptible
            run.infected[...] = src.infected
            run.cohorts[...] = src.cohorts
        logger.info("Synchronized %d runs to run %d", self.n_runs, source)

    def all_infected(self) -> bool:
        """True when no run has a susceptible host left."""
        return all(not run.susceptible.any() for run in self.runs)

    # ── aggregation ──────────────────────────────────────────────────

    def mean_infected(self) -> np.ndarray:
        return np.mean([run.infected for run in self.runs], axis=0)

    def stddev_infected(self, mean: Optional[np.ndarray] = None) -> np.ndarray:
        if mean is None:
            mean = self.mean_infected()
        squares = [(run.infected - mean) ** 2 for run in self.runs]
        return np.sqrt(np.mean(squares, axis=0))

    def probability(self) -> np.ndarray:
        """Percentage (0-100, integer) of runs with infection in each cell."""
        occupied = np.sum([run.infected > 0 for run in self.runs], axis=0)
        return (occupied * 100) // self.n_runs

    def outside_events(self) -> List[Tuple[int, int, int]]:
        """All off-grid dispersal events as (run number from 1, row, col)."""
        return [(run.index + 1, row, col)
                for run in self.runs for row, col in run.outside_events]

    # ── checkpoints ──────────────────────────────────────────────────

    def snapshot(self, step: int, date: Date,
                 accumulated_dead: Optional[np.ndarray] = None) -> Checkpoint:
        return Checkpoint(
            step=step,
            date=date,
            susceptible=[run.susceptible.copy() for run in self.runs],
            infected=[run.infected.copy() for run in self.runs],
            cohorts=[run.cohorts.copy() for run in self.runs],
            rng_states=rng_state_snapshot([run.rng for run in self.runs]),
            outside_counts=[len(run.outside_events) for run in self.runs],
            accumulated_dead=None if accumulated_dead is None else accumulated_dead.copy(),
        )

    def restore(self, checkpoint: Checkpoint) -> None:
        if checkpoint.n_runs != self.n_runs:
            raise ValueError(
                f"Checkpoint has {checkpoint.n_runs} runs, ensemble has {self.n_runs}"
            )
        for i, run in enumerate(self.runs):
            run.susceptible[...] = checkpoint.susceptible[i]
            run.infected[...] = checkpoint.infected[i]
            run.cohorts[...] = checkpoint.cohorts[i]
            run.dead_this_year[...] = 0
            del run.outside_events[checkpoint.outside_counts[i]:]
        restore_rng_state([run.rng for run in self.runs], checkpoint.rng_states)
