"""Simulation engine: clock, year resolution, checkpoints and steering.

The engine owns the simulated date and the checkpoint store. Each
iteration of its loop:
  1. takes at most one steering command and reacts to it
  2. if the clock is allowed to advance (current date ≤ advance-until
     date), queues the current step; at the last step of a year it
     resolves the queued chunk through the ensemble, applies mortality,
     updates spread rates, syncs runs if asked, saves a checkpoint and
     writes the per-year outputs
  3. otherwise sleeps briefly (paused)

Without steering the advance-until date is the simulation end, so the
loop runs straight through. With steering it starts paused at the start
date and the controller moves the advance-until date (play, pause, step
forward) or rewinds the state (step back, goto).

Usage:
    config = load_config("configs/example.yaml")
    store = RasterGridStore("data/")
    result = run_simulation(config, store)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

from pops_sim.checkpoints import CheckpointStore
from pops_sim.config import SimulationConfig
from pops_sim.date import Date
from pops_sim.ensemble import EnsembleRunner
from pops_sim.gridio import GridStore
from pops_sim.kernel import build_dispersal_kernel
from pops_sim.rng import generate_seed
from pops_sim.spread_rate import SpreadRate, spread_rate_table, write_spread_rate
from pops_sim.steering import SteeringChannel, SteeringCommand
from pops_sim.treatments import TreatmentSchedule
from pops_sim.types import CommandKind

logger = logging.getLogger(__name__)


class EngineState(Enum):
    IDLE = "idle"
    ADVANCING = "advancing"
    PAUSED = "paused"
    STOPPED = "stopped"


def series_name(basename: str, date: Date) -> str:
    """Name of a per-period output: ``<basename>_YYYY_MM_DD``."""
    return f"{basename}_{date.year:04d}_{date.month:02d}_{date.day:02d}"


# ═══════════════════════════════════════════════════════════════════════
# RESULT
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationResult:
    """Final state of a simulation."""
    seed: int = 0
    n_runs: int = 0
    final_date: Optional[Date] = None      # last day of the last simulated step
    steps: int = 0                         # steps taken (global step counter)
    years_completed: int = 0
    infected: List[np.ndarray] = field(default_factory=list)      # per run
    susceptible: List[np.ndarray] = field(default_factory=list)   # per run
    mean_infected: Optional[np.ndarray] = None
    probability: Optional[np.ndarray] = None                      # 0-100 int
    outside_events: List[Tuple[int, int, int]] = field(default_factory=list)
    spread_rates: Optional[pd.DataFrame] = None
    accumulated_dead: Optional[np.ndarray] = None
    all_infected: bool = False             # stopped because no host was left


# ═══════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════

class SimulationEngine:
    """Top-level state machine of a (possibly steered) simulation.

    Args:
        config: Validated configuration.
        store: Grid store for inputs and outputs.
        channel: Steering channel, or None to run straight through.
    """

    def __init__(self, config: SimulationConfig, store: GridStore,
                 channel: Optional[SteeringChannel] = None):
        self.config = config
        self.store = store
        self.channel = channel

        sim = config.simulation
        self.step_unit = sim.step_unit
        self.start = Date.year_start(sim.start_year)
        self.end = Date.year_end(sim.end_year)
        self.num_years = sim.num_years

        if sim.generate_seed:
            self.seed = generate_seed()
            logger.info("Generated random seed %d", self.seed)
        else:
            self.seed = int(sim.seed)
            logger.info("Using seed %d", self.seed)

        host = store.read(config.inputs.host)
        infected = store.read(config.inputs.infected)
        total_plants = store.read(config.inputs.total_plants)
        for name, grid in ((config.inputs.infected, infected),
                           (config.inputs.total_plants, total_plants)):
            if grid.shape != host.shape:
                raise ValueError(
                    f"Grid '{name}' has shape {grid.shape}, host grid has {host.shape}"
                )
        ew_res, ns_res = store.resolution

        disp = config.dispersal
        kernel = build_dispersal_kernel(
            disp.natural_params(),
            disp.anthropogenic_params() if disp.use_anthropogenic else None,
            disp.percent_natural_dispersal,
            (ew_res, ns_res),
            host.shape,
        )

        self.treatments = TreatmentSchedule(config.treatments.application_enum)
        for grid_name, year in zip(config.treatments.grids, config.treatments.years):
            self.treatments.add_treatment(year, self._read_treatment(grid_name, host.shape))

        weather = config.weather
        mortality = config.mortality
        self.runner = EnsembleRunner.create(
            host, infected, total_plants, kernel,
            seed=self.seed,
            n_runs=sim.runs,
            n_years=self.num_years,
            reproductive_rate=disp.reproductive_rate,
            season=tuple(sim.season),
            treatments=self.treatments,
            treatment_month=config.treatments.month,
            lethal_temperature=weather.lethal_temperature,
            lethal_month=weather.lethal_month,
            mortality_rate=mortality.rate if mortality.enabled else None,
            mortality_time_lag=mortality.time_lag,
            threads=sim.threads,
        )

        self.spread_rates: Optional[List[SpreadRate]] = None
        if config.output.spread_rate_output:
            self.spread_rates = [
                SpreadRate(infected, ew_res, ns_res, self.num_years)
                for _ in range(sim.runs)
            ]

        self.accumulated_dead = (
            np.zeros(host.shape, dtype=np.int64) if mortality.enabled else None
        )

        # Clock
        self.current = self.start
        self.current_step = 0
        self.advance_until = self.start if self.steering else self.end
        self.last_day = self.current.last_day_of_step(self.step_unit)
        self.pending: List[Tuple[int, Date]] = []

        # Flags
        self.after_restore = False
        self.sync_pending = False
        self.all_infected = False
        self.series_basename = config.output.output_series
        self.last_name = ""
        self.state = EngineState.IDLE

        self.checkpoints = CheckpointStore(self.num_years + 1)
        self.checkpoints.save(0, self.runner.snapshot(0, self.start, self.accumulated_dead))

    # ── helpers ──────────────────────────────────────────────────────

    @property
    def steering(self) -> bool:
        return self.channel is not None

    @property
    def advancing(self) -> bool:
        return (self.advance_until > self.start
                and self.current <= self.advance_until
                and self.current <= self.end)

    @property
    def stopped(self) -> bool:
        return self.state is EngineState.STOPPED

    def _read_treatment(self, name: str, shape) -> np.ndarray:
        grid = self.store.read(name).astype(np.float64)
        if grid.shape != shape:
            raise ValueError(f"Treatment grid '{name}' has shape {grid.shape}, expected {shape}")
        return grid

    def _notify(self, text: str) -> None:
        if self.channel is not None:
            self.channel.send(text)

    def _weather_coefficient(self, step: int) -> Optional[np.ndarray]:
        weather = self.config.weather
        if not weather.use_weather:
            return None
        if weather.weather_coefficients:
            if step >= len(weather.weather_coefficients):
                raise RuntimeError(
                    f"No weather coefficient for step {step} "
                    f"({len(weather.weather_coefficients)} given)"
                )
            return self.store.read(weather.weather_coefficients[step]).astype(np.float64)
        if step >= len(weather.moisture_coefficients):
            raise RuntimeError(
                f"No moisture/temperature coefficient for step {step} "
                f"({len(weather.moisture_coefficients)} given)"
            )
        moisture = self.store.read(weather.moisture_coefficients[step])
        temperature = self.store.read(weather.temperature_coefficients[step])
        return moisture.astype(np.float64) * temperature.astype(np.float64)

    # ── steering ─────────────────────────────────────────────────────

    def handle_command(self, command: SteeringCommand) -> None:
        """React to one steering command."""
        kind = command.kind
        logger.info("Steering command: %s", kind.name)
        if kind is CommandKind.PLAY:
            self.advance_until = self.end
        elif kind is CommandKind.PAUSE:
            self.advance_until = self.current
        elif kind is CommandKind.STEP_FORWARD:
            self.advance_until = min(self.current.next_year_end(), self.end)
        elif kind is CommandKind.STEP_BACK:
            if self.checkpoints.last_index - 1 >= 0:
                self._restore(self.checkpoints.last_index - 1)
            else:
                logger.info("Already at the first checkpoint")
        elif kind is CommandKind.STOP:
            self.state = EngineState.STOPPED
        elif kind is CommandKind.LOAD_DATA:
            logger.info("Loading treatment %s for year %d", command.path, command.year)
            grid = self._read_treatment(command.path, self.runner.total_plants.shape)
            self.treatments.clear_after_year(command.year)
            self.treatments.add_treatment(command.year, grid)
        elif kind is CommandKind.CHANGE_NAME:
            logger.info("Output base name: %s", command.name)
            self.series_basename = command.name
        elif kind is CommandKind.GOTO:
            self._goto(command.year)
        elif kind is CommandKind.SYNC_RUNS:
            self.sync_pending = True

    def _goto(self, index: int) -> None:
        if not self.checkpoints.in_range(index):
            logger.info("Checkpoint %d is out of range, ignored", index)
        elif index <= self.checkpoints.last_index:
            self._restore(index)
        else:
            self.advance_until = min(Date.year_end(self.start.year + index - 1), self.end)
            logger.info("Advancing to %s", self.advance_until)

    def _restore(self, index: int) -> None:
        checkpoint = self.checkpoints.load(index)
        self.runner.restore(checkpoint)
        if self.accumulated_dead is not None and checkpoint.accumulated_dead is not None:
            self.accumulated_dead[...] = checkpoint.accumulated_dead
        self.current = checkpoint.date
        self.advance_until = checkpoint.date
        self.current_step = checkpoint.step
        self.pending.clear()
        self.after_restore = True
        logger.info("Going back to %s (checkpoint %d)", self.current, index)

    # ── clock ────────────────────────────────────────────────────────

    def _advance(self) -> None:
        """Process the current step and move the clock one step forward."""
        last_step = self.current.is_last_step_of_year(self.step_unit)
        if not (self.after_restore and last_step):
            self.pending.append((self.current_step, self.current))
        self.last_day = self.current.last_day_of_step(self.step_unit)

        if self.runner.all_infected():
            logger.warning("All susceptible hosts are infected")
            self.all_infected = True
            self.state = EngineState.STOPPED
            return

        if last_step and not self.after_restore:
            self._resolve_year()
        self.after_restore = False

        self.current = self.current.next_step(self.step_unit)
        self.current_step += 1
        if self.current > self.end:
            if self.steering:
                self._notify(f"info:last:{self.last_name}")
            else:
                self.state = EngineState.STOPPED

    def _resolve_year(self) -> None:
        sim_year = self.current.year - self.start.year
        if self.pending:
            temperature = None
            weather = self.config.weather
            if weather.use_lethal_temperature:
                if sim_year >= len(weather.temperatures):
                    raise RuntimeError(
                        f"Not enough temperatures: {len(weather.temperatures)} given, "
                        f"simulation year {sim_year + 1} needs one"
                    )
                temperature = self.store.read(weather.temperatures[sim_year])
            coefficients = [self._weather_coefficient(step) for step, _ in self.pending]
            self.runner.run_chunk([date for _, date in self.pending], coefficients,
                                  sim_year, temperature)
            self.pending.clear()

        self.runner.apply_mortality(sim_year)
        if self.accumulated_dead is not None:
            self.accumulated_dead += self.runner.runs[0].dead_this_year
        if self.spread_rates is not None:
            self.runner.compute_spread_rates(self.spread_rates, sim_year)

        synced = self.sync_pending
        if synced:
            self.runner.sync_runs(0)
            self.sync_pending = False

        self.checkpoints.save(
            sim_year + 1,
            self.runner.snapshot(self.current_step, self.current, self.accumulated_dead),
        )
        logger.debug("Checkpoint %d saved at %s", sim_year + 1, self.current)

        if self.spread_rates is not None:
            rates = self.spread_rates[0] if synced else self.spread_rates
            write_spread_rate(self.config.output.spread_rate_output, rates,
                              sim_year + 1, self.start.year)
        self._write_series(self.last_day)

    # ── outputs ──────────────────────────────────────────────────────

    def _write_series(self, date: Date) -> None:
        out = self.config.output
        single = out.series_as_single_run
        mean = None
        if (self.series_basename and not single) or out.stddev_series:
            mean = self.runner.mean_infected()
        if self.series_basename:
            name = series_name(self.series_basename, date)
            if single:
                self.store.write(self.runner.runs[0].infected, name,
                                 "Occurrence from a single stochastic run", date)
            else:
                self.store.write(mean, name,
                                 "Average occurrence from all stochastic runs", date)
            self._notify(f"output:{name}|")
            self.last_name = name
            logger.info("Output %s written", name)
        if out.stddev_series:
            name = series_name(out.stddev_series, date)
            self.store.write(self.runner.stddev_infected(mean), name,
                             "Standard deviation of average occurrence from all stochastic runs",
                             date)
            logger.info("Output %s written", name)
        if out.probability_series:
            name = series_name(out.probability_series, date)
            self.store.write(self.runner.probability(), name, "Probability of occurrence", date)
            self._notify(f"output:{name}|")
            logger.info("Output %s written", name)
        if out.mortality_series and self.accumulated_dead is not None:
            name = series_name(out.mortality_series, date)
            self.store.write(self.accumulated_dead, name, "Number of dead hosts to date", date)
            logger.info("Output %s written", name)

    def write_final_outputs(self) -> None:
        out = self.config.output
        date = self.last_day
        mean = None
        if out.output or out.stddev:
            mean = self.runner.mean_infected()
        if out.output:
            self.store.write(mean, out.output,
                             "Average occurrence from all stochastic runs", date)
            logger.info("Final output %s written", out.output)
        if out.stddev:
            self.store.write(self.runner.stddev_infected(mean), out.stddev,
                             "Standard deviation of average occurrence from all stochastic runs",
                             date)
            logger.info("Final output %s written", out.stddev)
        if out.probability:
            self.store.write(self.runner.probability(), out.probability,
                             "Probability of occurrence", date)
            logger.info("Final output %s written", out.probability)
        if out.outside_spores:
            self.store.write_points(self.runner.outside_events(), out.outside_spores,
                                    "Dispersers escaped outside computational region", date)
            logger.info("Final output %s written", out.outside_spores)

    # ── main loop ────────────────────────────────────────────────────

    def step_once(self) -> None:
        """One iteration of the main loop."""
        if self.channel is not None:
            command = self.channel.poll()
            if command is not None:
                self.handle_command(command)
        if self.stopped:
            return
        if self.advancing:
            self.state = EngineState.ADVANCING
            self._advance()
        else:
            self.state = EngineState.PAUSED
            time.sleep(self.config.steering.idle_interval)

    def advance(self) -> None:
        """Advance until paused or stopped, without reading steering commands."""
        while not self.stopped and self.advancing:
            self.state = EngineState.ADVANCING
            self._advance()

    def run(self) -> SimulationResult:
        """Run the main loop until stopped, then write the final outputs."""
        if self.channel is not None:
            self.channel.start()
        try:
            while not self.stopped:
                self.step_once()
            self.write_final_outputs()
        finally:
            if self.channel is not None:
                self.channel.close()
        return self.result()

    def result(self) -> SimulationResult:
        runs = self.runner.runs
        table = None
        if self.spread_rates is not None:
            table = spread_rate_table(self.spread_rates, self.checkpoints.last_index,
                                      self.start.year)
        return SimulationResult(
            seed=self.seed,
            n_runs=len(runs),
            final_date=self.last_day,
            steps=self.current_step,
            years_completed=self.checkpoints.last_index,
            infected=[run.infected.copy() for run in runs],
            susceptible=[run.susceptible.copy() for run in runs],
            mean_infected=self.runner.mean_infected(),
            probability=self.runner.probability(),
            outside_events=self.runner.outside_events(),
            spread_rates=table,
            accumulated_dead=None if self.accumulated_dead is None else self.accumulated_dead.copy(),
            all_infected=self.all_infected,
        )


def run_simulation(config: SimulationConfig, store: GridStore,
                   channel: Optional[SteeringChannel] = None) -> SimulationResult:
    """Run a simulation to completion.

    A steering channel is opened from ``config.steering`` when it names a
    host and no channel is given.
    """
    if channel is None and config.steering.enabled:
        channel = SteeringChannel.from_config(config.steering)
    return SimulationEngine(config, store, channel).run()
