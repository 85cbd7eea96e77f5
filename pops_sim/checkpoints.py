"""Year-boundary checkpoints for rewinding and jumping.

One checkpoint slot exists per year boundary: slot 0 holds the initial
state and slot k the state after the k-th simulated year. The store is
sized once and never grows; re-advancing past a restored slot overwrites
the slots after it.

Usage:
    store = CheckpointStore(n_slots=num_years + 1)
    store.save(0, runner.snapshot(step=0, date=start))

    # In the simulation loop, after a year resolves:
    store.save(sim_year + 1, runner.snapshot(step, date))

    # On StepBack:
    checkpoint = store.load(store.last_index - 1)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from pops_sim.date import Date


@dataclass
class Checkpoint:
    """Full ensemble state at one year boundary.

    Grids are copies; restoring a checkpoint copies them again, so a
    checkpoint can be restored any number of times.
    """
    step: int
    date: Date
    susceptible: List[np.ndarray]          # one grid per run
    infected: List[np.ndarray]             # one grid per run
    cohorts: List[np.ndarray]              # per run: (n_years, rows, cols)
    rng_states: List[dict] = field(default_factory=list)
    outside_counts: List[int] = field(default_factory=list)
    accumulated_dead: Optional[np.ndarray] = None

    @property
    def n_runs(self) -> int:
        return len(self.infected)


class CheckpointStore:
    """Fixed-size array of checkpoints indexed by year boundary."""

    def __init__(self, n_slots: int):
        if n_slots < 1:
            raise ValueError(f"n_slots must be >= 1, got {n_slots}")
        self._slots: List[Optional[Checkpoint]] = [None] * n_slots
        self.last_index = 0

    def __len__(self) -> int:
        return len(self._slots)

    def in_range(self, index: int) -> bool:
        return 0 <= index < len(self._slots)

    def has(self, index: int) -> bool:
        return self.in_range(index) and self._slots[index] is not None

    def save(self, index: int, checkpoint: Checkpoint) -> None:
        """Write ``checkpoint`` into slot ``index`` and make it the last one."""
        if not self.in_range(index):
            raise IndexError(
                f"Checkpoint index {index} out of range 0..{len(self._slots) - 1}"
            )
        self._slots[index] = checkpoint
        self.last_index = index

    def load(self, index: int) -> Checkpoint:
        """Return slot ``index`` and make it the last checkpoint.

        Raises:
            IndexError: If the index is out of range.
            KeyError: If the slot was never written.
        """
        if not self.in_range(index):
            raise IndexError(
                f"Checkpoint index {index} out of range 0..{len(self._slots) - 1}"
            )
        checkpoint = self._slots[index]
        if checkpoint is None:
            raise KeyError(f"No checkpoint saved at index {index}")
        self.last_index = index
        return checkpoint
