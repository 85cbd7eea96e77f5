"""Core enumerations and small records for PoPS-Sim.

This module is the single place where the closed vocabularies of the
model are defined:
  - Direction: compass direction of a dispersal kernel (or none)
  - KernelType: distance distribution of a dispersal kernel
  - TreatmentApplication: how a treatment grid acts on infected hosts
  - StepUnit: granularity of simulation steps
  - CommandKind: kinds of steering commands

Configuration strings are converted to these enums once, when the
configuration is loaded, by the ``*_from_string`` parsers below.
"""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass
from enum import Enum, IntEnum


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class Direction(IntEnum):
    """Compass direction in degrees clockwise from north.

    NONE means the kernel has no preferred direction.
    """
    N = 0
    NE = 45
    E = 90
    SE = 135
    S = 180
    SW = 225
    W = 270
    NW = 315
    NONE = -1

    @property
    def radians(self) -> float:
        return math.radians(self.value)


class KernelType(Enum):
    """Distance distribution used by a radial kernel.

    UNIFORM and NONE are served by the uniform kernel, which drops a
    dispersed unit anywhere in the domain.
    """
    CAUCHY = "cauchy"
    EXPONENTIAL = "exponential"
    UNIFORM = "uniform"
    NONE = "none"

    @property
    def is_radial(self) -> bool:
        return self in (KernelType.CAUCHY, KernelType.EXPONENTIAL)


class TreatmentApplication(Enum):
    """Effect of a treatment grid on the infected pool."""
    RATIO_TO_ALL = "ratio_to_all"               # infected reduced by the treated ratio
    ALL_INFECTED_IN_CELL = "all_infected_in_cell"  # any treatment clears the cell


class StepUnit(Enum):
    """Length of one simulation step."""
    WEEK = "week"
    MONTH = "month"


class CommandKind(Enum):
    """Steering commands understood by the simulation engine."""
    PLAY = "play"
    PAUSE = "pause"
    STEP_FORWARD = "stepf"
    STEP_BACK = "stepb"
    STOP = "stop"
    GOTO = "goto"
    LOAD_DATA = "load"
    CHANGE_NAME = "name"
    SYNC_RUNS = "sync"


# ═══════════════════════════════════════════════════════════════════════
# KERNEL PARAMETERS
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class KernelParams:
    """Normalized parameters of one (natural or anthropogenic) kernel."""
    kernel_type: KernelType
    scale: float = 0.0
    direction: Direction = Direction.NONE
    kappa: float = 0.0

    @property
    def has_direction(self) -> bool:
        return self.direction is not Direction.NONE


# ═══════════════════════════════════════════════════════════════════════
# STRING PARSERS
# ═══════════════════════════════════════════════════════════════════════

def direction_from_string(text: str | None) -> Direction:
    """Parse a compass direction.

    Accepts N, NE, E, SE, S, SW, W, NW (any case), ``none`` and the empty
    string. The legacy upper-case ``NONE`` is accepted with a warning.

    Raises:
        ValueError: For any other value.
    """
    if text is None or text == "" or text == "none":
        return Direction.NONE
    if text == "NONE":
        warnings.warn(
            "Direction value 'NONE' is deprecated, use 'none' instead",
            DeprecationWarning,
            stacklevel=2,
        )
        return Direction.NONE
    try:
        return Direction[text.upper()]
    except KeyError:
        raise ValueError(
            f"Invalid direction '{text}', expected one of "
            f"N, NE, E, SE, S, SW, W, NW or none"
        ) from None


def kernel_type_from_string(text: str | None) -> KernelType:
    """Parse a dispersal kernel type (``NONE`` is a deprecated alias of ``none``)."""
    if text is None or text == "":
        return KernelType.NONE
    if text == "NONE":
        warnings.warn(
            "Kernel type 'NONE' is deprecated, use 'none' instead",
            DeprecationWarning,
            stacklevel=2,
        )
        return KernelType.NONE
    try:
        return KernelType(text.lower())
    except ValueError:
        raise ValueError(
            f"Invalid dispersal kernel type '{text}', expected one of "
            f"{[k.value for k in KernelType]}"
        ) from None


def treatment_application_from_string(text: str) -> TreatmentApplication:
    try:
        return TreatmentApplication(text)
    except ValueError:
        raise ValueError(
            f"Invalid treatment application '{text}', expected one of "
            f"{[t.value for t in TreatmentApplication]}"
        ) from None


def step_unit_from_string(text: str) -> StepUnit:
    try:
        return StepUnit(text)
    except ValueError:
        raise ValueError(
            f"Invalid simulation step '{text}', expected 'week' or 'month'"
        ) from None
