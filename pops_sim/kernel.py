"""Dispersal kernels.

A kernel maps the source cells of dispersed units to landing cells. All
kernels are vectorized: they take arrays of source rows and columns and
return arrays of landing rows and columns of the same length. Landing
cells may lie outside the grid; the caller decides what happens to them.

Kernels:
  - RadialKernel: distance from a Cauchy or exponential distribution,
    angle uniform or drawn from a von Mises around a compass direction
  - UniformKernel: landing cell drawn uniformly from the whole grid
  - DispersalKernel: mixes a natural and an optional anthropogenic
    kernel with a per-unit Bernoulli draw
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
from scipy import stats

from pops_sim.types import Direction, KernelParams, KernelType

Cells = Tuple[np.ndarray, np.ndarray]


def _round_half_away(values: np.ndarray) -> np.ndarray:
    """Round to the nearest integer, halves away from zero."""
    return (np.sign(values) * np.floor(np.abs(values) + 0.5)).astype(np.int64)


# ═══════════════════════════════════════════════════════════════════════
# RADIAL KERNEL
# ═══════════════════════════════════════════════════════════════════════

class RadialKernel:
    """Distance-and-angle kernel on a grid with cell size (ew_res, ns_res).

    The distance is ``|Cauchy(0, scale)|`` or ``Exponential(mean=scale)``.
    With a direction and a positive kappa the angle (clockwise from
    north) follows a von Mises distribution centred on the direction;
    otherwise it is uniform on [0, 2π).
    """

    def __init__(
        self,
        ew_res: float,
        ns_res: float,
        kernel_type: KernelType,
        scale: float,
        direction: Direction = Direction.NONE,
        kappa: float = 0.0,
    ):
        if not kernel_type.is_radial:
            raise ValueError(f"Kernel type '{kernel_type.value}' is not radial")
        if scale <= 0:
            raise ValueError(f"Kernel scale must be positive, got {scale}")
        if ew_res <= 0 or ns_res <= 0:
            raise ValueError(f"Invalid grid resolution ({ew_res}, {ns_res})")
        self.ew_res = float(ew_res)
        self.ns_res = float(ns_res)
        self.kernel_type = kernel_type
        self.scale = float(scale)
        self.direction = direction
        self.kappa = float(kappa)

    @classmethod
    def from_params(cls, params: KernelParams, ew_res: float, ns_res: float) -> "RadialKernel":
        return cls(ew_res, ns_res, params.kernel_type, params.scale,
                   params.direction, params.kappa)

    @property
    def directional(self) -> bool:
        return self.direction is not Direction.NONE and self.kappa > 0

    def distances(self, rng: np.random.Generator, n: int) -> np.ndarray:
        if self.kernel_type is KernelType.CAUCHY:
            return np.abs(stats.cauchy.rvs(loc=0.0, scale=self.scale, size=n,
                                           random_state=rng))
        return stats.expon.rvs(scale=self.scale, size=n, random_state=rng)

    def angles(self, rng: np.random.Generator, n: int) -> np.ndarray:
        if self.directional:
            return stats.vonmises.rvs(self.kappa, loc=self.direction.radians,
                                      size=n, random_state=rng)
        return rng.uniform(0.0, 2.0 * np.pi, size=n)

    def __call__(self, rng: np.random.Generator, rows: np.ndarray, cols: np.ndarray) -> Cells:
        rows = np.asarray(rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        n = rows.size
        if n == 0:
            return rows.copy(), cols.copy()
        distance = self.distances(rng, n)
        theta = self.angles(rng, n)
        new_cols = cols + _round_half_away(distance * np.sin(theta) / self.ew_res)
        new_rows = rows - _round_half_away(distance * np.cos(theta) / self.ns_res)
        return new_rows, new_cols


# ═══════════════════════════════════════════════════════════════════════
# UNIFORM KERNEL
# ═══════════════════════════════════════════════════════════════════════

class UniformKernel:
    """Lands every unit on a cell drawn uniformly from the whole grid."""

    def __init__(self, n_rows: int, n_cols: int):
        if n_rows < 1 or n_cols < 1:
            raise ValueError(f"Invalid grid shape ({n_rows}, {n_cols})")
        self.n_rows = int(n_rows)
        self.n_cols = int(n_cols)

    def __call__(self, rng: np.random.Generator, rows: np.ndarray, cols: np.ndarray) -> Cells:
        n = np.asarray(rows).size
        if n == 0:
            return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64)
        return (rng.integers(0, self.n_rows, size=n),
                rng.integers(0, self.n_cols, size=n))


# ═══════════════════════════════════════════════════════════════════════
# NATURAL / ANTHROPOGENIC MIX
# ═══════════════════════════════════════════════════════════════════════

class DispersalKernel:
    """Natural kernel, optionally mixed with an anthropogenic one.

    Without an anthropogenic kernel every unit uses the natural kernel.
    With one, each unit independently uses the natural kernel with
    probability ``percent_natural``.
    """

    def __init__(self, natural, anthropogenic=None, percent_natural: float = 1.0):
        if not 0.0 <= percent_natural <= 1.0:
            raise ValueError(
                f"percent_natural must be in [0, 1], got {percent_natural}"
            )
        self.natural = natural
        self.anthropogenic = anthropogenic
        self.percent_natural = float(percent_natural)

    def __call__(self, rng: np.random.Generator, rows: np.ndarray, cols: np.ndarray) -> Cells:
        rows = np.asarray(rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        if self.anthropogenic is None:
            return self.natural(rng, rows, cols)
        if rows.size == 0:
            return rows.copy(), cols.copy()
        use_natural = rng.random(rows.size) < self.percent_natural
        out_rows = np.empty_like(rows)
        out_cols = np.empty_like(cols)
        out_rows[use_natural], out_cols[use_natural] = self.natural(
            rng, rows[use_natural], cols[use_natural])
        long_range = ~use_natural
        out_rows[long_range], out_cols[long_range] = self.anthropogenic(
            rng, rows[long_range], cols[long_range])
        return out_rows, out_cols


def select_kernel(params: KernelParams, ew_res: float, ns_res: float,
                  n_rows: int, n_cols: int):
    """Build the kernel described by ``params`` for a grid."""
    if params.kernel_type.is_radial:
        return RadialKernel.from_params(params, ew_res, ns_res)
    return UniformKernel(n_rows, n_cols)


def build_dispersal_kernel(
    natural: KernelParams,
    anthropogenic: Optional[KernelParams],
    percent_natural: Optional[float],
    resolution: Tuple[float, float],
    shape: Tuple[int, int],
) -> DispersalKernel:
    """Assemble the dispersal kernel used by each stochastic run.

    Args:
        natural: Natural kernel parameters.
        anthropogenic: Anthropogenic kernel parameters, or None/'none' type
            to disperse naturally only.
        percent_natural: Probability of natural dispersal (with anthropogenic).
        resolution: (ew_res, ns_res) of the grid.
        shape: (n_rows, n_cols) of the grid.
    """
    ew_res, ns_res = resolution
    n_rows, n_cols = shape
    natural_kernel = select_kernel(natural, ew_res, ns_res, n_rows, n_cols)
    if anthropogenic is None or anthropogenic.kernel_type is KernelType.NONE:
        return DispersalKernel(natural_kernel)
    return DispersalKernel(
        natural_kernel,
        select_kernel(anthropogenic, ew_res, ns_res, n_rows, n_cols),
        1.0 if percent_natural is None else percent_natural,
    )
