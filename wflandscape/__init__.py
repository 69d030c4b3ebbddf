"""wflandscape: Wright-Fisher evolution on a continuous landscape.

A spatially explicit, individual-based forward simulation coupling:
  - Fitness-weighted global choice of the first parent
  - Radius-bounded, fitness-weighted local choice of the second parent
    (forced self-fertilization when no other mate is in range)
  - Gaussian offspring dispersal around the parental midpoint, clamped
    to the unit square
  - A packed grid index rebuilt once per generation from the offspring

The mating rule (``wflandscape.rules``) exposes the four lifecycle hooks
``w`` / ``pick1`` / ``pick2`` / ``update`` that a forward-simulation
engine calls each generation; ``wflandscape.model`` is such an engine.
"""

__version__ = "0.1.0"
