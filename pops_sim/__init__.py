"""PoPS-Sim: stochastic spread of pests and pathogens over a gridded landscape.

A time-stepped, ensemble simulation coupling:
  - Spore generation and dispersal with radial (Cauchy/exponential,
    optionally directional) or uniform kernels
  - Natural and anthropogenic long-distance dispersal
  - Treatments, lethal-temperature removal and cohort-based mortality
  - Year-boundary checkpoints with rewind and jump
  - Remote steering of a running simulation over TCP
"""

__version__ = "0.1.0"
