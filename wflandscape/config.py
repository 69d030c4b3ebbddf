"""Configuration system for wflandscape.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → command-line overrides

Sections map 1:1 to YAML top-level keys; unknown keys are ignored so older
config files keep loading.
"""

from __future__ import annotations

import copy
import dataclasses
import math
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from wflandscape.rules import OFFSPRING_STRATEGIES
from wflandscape.sampler import SAMPLER_METHODS


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationSection:
    """Run length, seeding and threading."""
    n_individuals: int = 1000
    generations: Optional[int] = None   # None → 10·N
    seed: int = 42
    workers: int = 1                    # >1 runs offspring slots on a thread pool
    slot_rng: bool = False              # per-slot random streams (implied by workers > 1)


@dataclass
class LandscapeSection:
    """Mating rule and dispersal on the unit square."""
    radius: float = 0.1                 # mating radius (Euclidean)
    dispersal: float = 0.05             # per-axis sd of offspring displacement
    sampler_global: str = 'alias'       # first-parent sampler
    sampler_local: str = 'cumulative'   # neighbourhood sampler
    offspring_strategy: str = 'bulk'    # 'bulk' or 'incremental'
    check_consistency: bool = False
    cell_size: Optional[float] = None   # None → sized from N


@dataclass
class GeneticsSection:
    """Loci, selection and mutation.

    theta and rho are population-scaled (4Nμ, 4Nr); per-gamete rates are
    theta/4N and rho/4N. mu is the per-gamete mutation rate at selected loci.
    """
    n_loci: int = 100
    n_selected: int = 10
    theta: float = 10.0
    rho: float = 10.0
    s: float = 0.01
    h: float = 0.5
    mu: float = 0.001
    init_freq: float = 0.0


@dataclass
class InitializationSection:
    """Initial spatial layout."""
    layout: str = 'split'               # 'split' (two quadrants) or 'uniform'


@dataclass
class OutputSection:
    """Output control."""
    directory: str = "results/"
    format: int = 0                     # 0 = tidy table, k = ms sample of k, N = everyone
    snapshots: bool = False
    snapshot_interval: int = 10
    summary: bool = True                # per-generation CSV


@dataclass
class SimulationConfig:
    """Complete simulation configuration.

    Load from YAML via `load_config()`. Sections map 1:1 to YAML top-level keys.
    """
    simulation: SimulationSection = field(default_factory=SimulationSection)
    landscape: LandscapeSection = field(default_factory=LandscapeSection)
    genetics: GeneticsSection = field(default_factory=GeneticsSection)
    initialization: InitializationSection = field(default_factory=InitializationSection)
    output: OutputSection = field(default_factory=OutputSection)


SECTION_MAP = {
    'simulation': SimulationSection,
    'landscape': LandscapeSection,
    'genetics': GeneticsSection,
    'initialization': InitializationSection,
    'output': OutputSection,
}

VALID_LAYOUTS = ('split', 'uniform')


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added

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


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


def _yaml_to_config(data: Dict) -> SimulationConfig:
    """Convert a merged YAML dict to a SimulationConfig."""
    sections = {}
    for key, cls in SECTION_MAP.items():
        if key in data and isinstance(data[key], dict):
            sections[key] = _dict_to_section(cls, data[key])
        else:
            sections[key] = cls()
    return SimulationConfig(**sections)


def config_to_dict(config: SimulationConfig) -> Dict:
    """Plain nested dict of a config (for saving alongside results)."""
    return dataclasses.asdict(config)


def effective_generations(config: SimulationConfig) -> int:
    """Number of generations to run: the configured value, or 10·N."""
    g = config.simulation.generations
    return 10 * config.simulation.n_individuals if g is None else int(g)


def validate_config(config: SimulationConfig) -> None:
    """Validate configuration constraints. Raises ValueError on failure.

    Checks:
      - Population size, run length, seed and worker count
      - Mating radius, dispersal and sampler/strategy names
      - Genetic parameters are consistent
      - Output format does not ask for more individuals than exist
    """
    sim = config.simulation
    if sim.n_individuals < 1:
        raise ValueError(f"simulation.n_individuals must be >= 1, got {sim.n_individuals}")
    if sim.generations is not None and sim.generations < 0:
        raise ValueError(f"simulation.generations must be >= 0, got {sim.generations}")
    if sim.seed < 0:
        raise ValueError("simulation.seed must be non-negative")
    if sim.workers < 1:
        raise ValueError(f"simulation.workers must be >= 1, got {sim.workers}")

    # Landscape
    ls = config.landscape
    if not (math.isfinite(ls.radius) and ls.radius >= 0):
        raise ValueError(f"landscape.radius must be finite and >= 0, got {ls.radius}")
    if not (math.isfinite(ls.dispersal) and ls.dispersal >= 0):
        raise ValueError(f"landscape.dispersal must be finite and >= 0, got {ls.dispersal}")
    for name in ('sampler_global', 'sampler_local'):
        value = getattr(ls, name)
        if value not in SAMPLER_METHODS:
            raise ValueError(
                f"landscape.{name} must be one of {SAMPLER_METHODS}, got '{value}'"
            )
    if ls.offspring_strategy not in OFFSPRING_STRATEGIES:
        raise ValueError(
            f"landscape.offspring_strategy must be one of {OFFSPRING_STRATEGIES}, "
            f"got '{ls.offspring_strategy}'"
        )
    if ls.cell_size is not None and not (0 < ls.cell_size <= 1):
        raise ValueError(f"landscape.cell_size must be in (0, 1], got {ls.cell_size}")
    if ls.radius >= math.sqrt(2.0):
        warnings.warn(
            f"landscape.radius ({ls.radius}) spans the whole unit square; "
            f"mate choice is effectively panmictic.",
            UserWarning,
            stacklevel=2,
        )

    # Genetics
    g = config.genetics
    if g.n_loci < 0:
        raise ValueError(f"genetics.n_loci must be >= 0, got {g.n_loci}")
    if not (0 <= g.n_selected <= g.n_loci):
        raise ValueError(
            f"genetics.n_selected must be in [0, n_loci={g.n_loci}], got {g.n_selected}"
        )
    for name in ('theta', 'rho', 'mu'):
        if getattr(g, name) < 0:
            raise ValueError(f"genetics.{name} must be >= 0, got {getattr(g, name)}")
    if not (0.0 <= g.init_freq <= 1.0):
        raise ValueError(f"genetics.init_freq must be in [0, 1], got {g.init_freq}")

    if config.initialization.layout not in VALID_LAYOUTS:
        raise ValueError(
            f"initialization.layout must be one of {VALID_LAYOUTS}, "
            f"got '{config.initialization.layout}'"
        )

    # Output
    out = config.output
    if not (0 <= out.format <= sim.n_individuals):
        raise ValueError(
            f"output.format must be in [0, n_individuals={sim.n_individuals}], "
            f"got {out.format}"
        )
    if out.snapshot_interval < 1:
        raise ValueError(
            f"output.snapshot_interval must be >= 1, got {out.snapshot_interval}"
        )


def config_from_dict(data: Dict) -> SimulationConfig:
    """Build and validate a config from a nested dict (missing keys → defaults)."""
    config = _yaml_to_config(copy.deepcopy(data))
    validate_config(config)
    return config


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
        overrides: Optional nested dict, e.g. ``{'landscape': {'radius': 0.2}}``.

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
        if scenario_path.exists():
            with open(scenario_path) as f:
                scenario = yaml.safe_load(f) or {}
            deep_merge(config_dict, scenario)

    if overrides is not None:
        deep_merge(config_dict, overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config() -> SimulationConfig:
    """Return a SimulationConfig with all default values."""
    config = SimulationConfig()
    validate_config(config)
    return config
