"""Configuration system for PoPS-Sim.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → command-line overrides

Each top-level YAML key maps to one dataclass section. Unknown keys are
ignored. ``validate_config`` detects every fatal setup condition before
the simulation starts; string-valued choices (kernel types, directions,
treatment application, step) are normalized into enums once, through the
section helper methods.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from pops_sim.date import month_in_season
from pops_sim.types import (
    KernelParams,
    KernelType,
    StepUnit,
    TreatmentApplication,
    direction_from_string,
    kernel_type_from_string,
    step_unit_from_string,
    treatment_application_from_string,
)


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationSection:
    """Simulation timing, ensemble size and randomness."""
    start_year: int = 2016
    end_year: int = 2018
    step: str = "month"             # 'week' or 'month'
    season: List[int] = field(default_factory=lambda: [1, 12])  # [from_month, to_month]
    runs: int = 1                   # ensemble size
    threads: int = 1                # worker threads for the ensemble phases
    seed: Optional[int] = None
    generate_seed: bool = False     # draw seed from OS entropy (non-deterministic)

    @property
    def num_years(self) -> int:
        return self.end_year - self.start_year + 1

    @property
    def step_unit(self) -> StepUnit:
        return step_unit_from_string(self.step)

    def month_in_season(self, month: int) -> bool:
        return month_in_season(month, self.season)


@dataclass
class InputSection:
    """Names of the initial grids in the grid store."""
    host: str = "host"
    total_plants: str = "total_plants"
    infected: str = "infected"


@dataclass
class DispersalSection:
    """Spore generation and dispersal kernels.

    The natural (short-distance) kernel always exists. The anthropogenic
    (long-distance) kernel is used only when its type is not 'none'; a
    Bernoulli draw with ``percent_natural_dispersal`` then picks the
    kernel for each dispersal event.
    """
    reproductive_rate: float = 4.4
    natural_kernel: str = "cauchy"
    natural_scale: float = 20.0
    natural_direction: str = "none"
    natural_kappa: float = 0.0
    anthropogenic_kernel: str = "none"
    anthropogenic_scale: Optional[float] = None
    anthropogenic_direction: str = "none"
    anthropogenic_kappa: Optional[float] = None
    percent_natural_dispersal: Optional[float] = None

    def natural_params(self) -> KernelParams:
        return KernelParams(
            kernel_type=kernel_type_from_string(self.natural_kernel),
            scale=float(self.natural_scale),
            direction=direction_from_string(self.natural_direction),
            kappa=float(self.natural_kappa),
        )

    def anthropogenic_params(self) -> KernelParams:
        return KernelParams(
            kernel_type=kernel_type_from_string(self.anthropogenic_kernel),
            scale=float(self.anthropogenic_scale or 0.0),
            direction=direction_from_string(self.anthropogenic_direction),
            kappa=float(self.anthropogenic_kappa or 0.0),
        )

    @property
    def use_anthropogenic(self) -> bool:
        return kernel_type_from_string(self.anthropogenic_kernel) is not KernelType.NONE


@dataclass
class WeatherSection:
    """Weather coefficients (per step) and lethal temperature (per year)."""
    weather_coefficients: List[str] = field(default_factory=list)
    moisture_coefficients: List[str] = field(default_factory=list)
    temperature_coefficients: List[str] = field(default_factory=list)
    temperatures: List[str] = field(default_factory=list)
    lethal_temperature: Optional[float] = None
    lethal_month: Optional[int] = None

    @property
    def use_weather(self) -> bool:
        return bool(self.weather_coefficients or self.moisture_coefficients)

    @property
    def use_lethal_temperature(self) -> bool:
        return bool(self.temperatures)


@dataclass
class TreatmentSection:
    """Treatment grids applied at the start of ``month`` in ``years``."""
    grids: List[str] = field(default_factory=list)
    years: List[int] = field(default_factory=list)
    month: Optional[int] = None
    application: str = "ratio_to_all"

    @property
    def application_enum(self) -> TreatmentApplication:
        return treatment_application_from_string(self.application)


@dataclass
class MortalitySection:
    """Removal of infected hosts a fixed number of years after infection."""
    enabled: bool = False
    rate: Optional[float] = None      # fraction of each dying cohort removed per year
    time_lag: int = 1                 # 1 = hosts die at the end of their first year


@dataclass
class OutputSection:
    """Output products. Every field is a grid name, basename or path."""
    output: Optional[str] = None
    output_series: Optional[str] = None
    stddev: Optional[str] = None
    stddev_series: Optional[str] = None
    probability: Optional[str] = None
    probability_series: Optional[str] = None
    mortality_series: Optional[str] = None
    outside_spores: Optional[str] = None
    spread_rate_output: Optional[str] = None
    series_as_single_run: bool = False


@dataclass
class SteeringSection:
    """Remote steering endpoint (host and port are both-or-neither)."""
    host: Optional[str] = None
    port: Optional[int] = None
    receive_timeout: float = 1.0
    idle_interval: float = 0.1      # sleep while paused (s)
    buffer_size: int = 200

    @property
    def enabled(self) -> bool:
        return self.host is not None


@dataclass
class SimulationConfig:
    """Complete simulation configuration.

    Load from YAML via `load_config()`. Sections map 1:1 to YAML top-level keys.
    """
    simulation: SimulationSection = field(default_factory=SimulationSection)
    inputs: InputSection = field(default_factory=InputSection)
    dispersal: DispersalSection = field(default_factory=DispersalSection)
    weather: WeatherSection = field(default_factory=WeatherSection)
    treatments: TreatmentSection = field(default_factory=TreatmentSection)
    mortality: MortalitySection = field(default_factory=MortalitySection)
    output: OutputSection = field(default_factory=OutputSection)
    steering: SteeringSection = field(default_factory=SteeringSection)


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added

    Args:
        base: Base dictionary (modified in place).
        override: Override dictionary.

    Returns:
        The merged base dictionary.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


_SECTION_MAP = {
    'simulation': SimulationSection,
    'inputs': InputSection,
    'dispersal': DispersalSection,
    'weather': WeatherSection,
    'treatments': TreatmentSection,
    'mortality': MortalitySection,
    'output': OutputSection,
    'steering': SteeringSection,
}


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    import dataclasses
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


def config_from_dict(data: Dict) -> SimulationConfig:
    """Convert a merged YAML dict to a SimulationConfig (not validated)."""
    sections = {}
    for key, cls in _SECTION_MAP.items():
        if key in data and isinstance(data[key], dict):
            sections[key] = _dict_to_section(cls, data[key])
        else:
            sections[key] = cls()
    return SimulationConfig(**sections)


# ═══════════════════════════════════════════════════════════════════════
# VALIDATION
# ═══════════════════════════════════════════════════════════════════════

def _check_month(value: Optional[int], name: str) -> None:
    if value is not None and not 1 <= int(value) <= 12:
        raise ValueError(f"{name} must be a month in 1..12, got {value}")


def validate_config(config: SimulationConfig) -> None:
    """Validate configuration constraints. Raises ValueError on failure.

    Checks:
      - Time horizon, step and season are consistent
      - Kernel strings are valid; anthropogenic kernel is fully specified
      - Treatments, mortality and lethal temperature are fully specified
      - Seed options and steering endpoint are consistent
      - At least one output product is requested
    """
    sim = config.simulation

    # Time
    if sim.start_year > sim.end_year:
        raise ValueError(
            f"Start date must precede the end date: start_year "
            f"({sim.start_year}) > end_year ({sim.end_year})"
        )
    sim.step_unit  # raises on an invalid step
    if len(sim.season) != 2:
        raise ValueError(
            f"simulation.season must be [from_month, to_month], got {sim.season}"
        )
    _check_month(sim.season[0], "simulation.season[0]")
    _check_month(sim.season[1], "simulation.season[1]")

    # Ensemble
    if sim.runs < 1:
        raise ValueError(f"simulation.runs must be >= 1, got {sim.runs}")
    if sim.threads < 1:
        raise ValueError(f"simulation.threads must be >= 1, got {sim.threads}")

    # Seed: exactly one of seed / generate_seed
    if sim.seed is not None and sim.generate_seed:
        raise ValueError(
            "simulation.seed and simulation.generate_seed are mutually exclusive"
        )
    if sim.seed is None and not sim.generate_seed:
        raise ValueError(
            "Either simulation.seed or simulation.generate_seed is required"
        )
    if sim.seed is not None and sim.seed < 0:
        raise ValueError("simulation.seed must be non-negative")

    # Dispersal
    disp = config.dispersal
    natural = disp.natural_params()
    anthropogenic = disp.anthropogenic_params()
    if natural.kernel_type.is_radial and natural.scale <= 0:
        raise ValueError("dispersal.natural_scale must be positive")
    if disp.use_anthropogenic:
        for key in ('anthropogenic_scale', 'anthropogenic_kappa',
                    'percent_natural_dispersal'):
            if getattr(disp, key) is None:
                raise ValueError(
                    f"The option dispersal.{key} is required for "
                    f"dispersal.anthropogenic_kernel={disp.anthropogenic_kernel}"
                )
        if anthropogenic.kernel_type.is_radial and anthropogenic.scale <= 0:
            raise ValueError("dispersal.anthropogenic_scale must be positive")
    if disp.percent_natural_dispersal is not None and not (
            0.0 <= disp.percent_natural_dispersal <= 1.0):
        raise ValueError(
            f"dispersal.percent_natural_dispersal must be in [0, 1], "
            f"got {disp.percent_natural_dispersal}"
        )
    if disp.reproductive_rate < 0:
        raise ValueError("dispersal.reproductive_rate must be non-negative")

    # Weather
    w = config.weather
    if bool(w.moisture_coefficients) != bool(w.temperature_coefficients):
        raise ValueError(
            "weather.moisture_coefficients and weather.temperature_coefficients "
            "must be given together"
        )
    if w.weather_coefficients and w.moisture_coefficients:
        raise ValueError(
            "weather.weather_coefficients is mutually exclusive with "
            "moisture/temperature coefficients"
        )
    if w.moisture_coefficients and (
            len(w.moisture_coefficients) != len(w.temperature_coefficients)):
        raise ValueError(
            "weather.moisture_coefficients and weather.temperature_coefficients "
            "must have the same length"
        )
    if w.use_lethal_temperature and (
            w.lethal_temperature is None or w.lethal_month is None):
        raise ValueError(
            "weather.temperatures requires weather.lethal_temperature "
            "and weather.lethal_month"
        )
    _check_month(w.lethal_month, "weather.lethal_month")

    # Treatments
    t = config.treatments
    t.application_enum  # raises on an invalid application
    if len(t.grids) != len(t.years):
        raise ValueError(
            f"treatments.grids and treatments.years must have the same number "
            f"of values ({len(t.grids)} != {len(t.years)})"
        )
    if t.grids and t.month is None:
        raise ValueError("treatments.month is required when treatments are given")
    _check_month(t.month, "treatments.month")

    # Mortality
    m = config.mortality
    if m.enabled:
        if m.rate is None:
            raise ValueError("mortality.rate is required when mortality is enabled")
        if not 0.0 <= m.rate <= 1.0:
            raise ValueError(f"mortality.rate must be in [0, 1], got {m.rate}")
        if m.time_lag < 1:
            raise ValueError(f"mortality.time_lag must be >= 1, got {m.time_lag}")
        if m.time_lag > sim.num_years:
            raise ValueError(
                f"mortality.time_lag is too large ({m.time_lag}). It must be "
                f"smaller or equal than number of simulation years "
                f"({sim.num_years})."
            )

    # Outputs
    out = config.output
    if out.mortality_series and not (m.enabled and out.series_as_single_run):
        raise ValueError(
            "output.mortality_series requires mortality.enabled and "
            "output.series_as_single_run"
        )
    if not any((out.output, out.output_series, out.probability,
                out.probability_series, out.outside_spores)):
        raise ValueError(
            "At least one of output.output, output.output_series, "
            "output.probability, output.probability_series or "
            "output.outside_spores is required"
        )

    # Steering
    st = config.steering
    if (st.host is None) != (st.port is None):
        raise ValueError("steering.host and steering.port must be given together")
    if st.receive_timeout <= 0:
        raise ValueError("steering.receive_timeout must be positive")


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict] = None,
) -> SimulationConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → overrides.
    Each layer overrides only the fields it specifies.

    Args:
        base_path: Path to base configuration YAML.
        scenario_path: Optional scenario override YAML.
        overrides: Optional dict of overrides (e.g. from the command line).

    Returns:
        Validated SimulationConfig.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ValueError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if not scenario_path.exists():
            raise FileNotFoundError(f"Scenario file not found: {scenario_path}")
        with open(scenario_path) as f:
            scenario = yaml.safe_load(f) or {}
        deep_merge(config_dict, scenario)

    if overrides is not None:
        deep_merge(config_dict, overrides)

    config = config_from_dict(config_dict)
    validate_config(config)
    return config


def default_config() -> SimulationConfig:
    """Return a SimulationConfig with default values, a fixed seed and a final output."""
    config = SimulationConfig()
    config.simulation.seed = 42
    config.output.output = "infected_average"
    validate_config(config)
    return config
