"""Wright-Fisher driver on the continuous landscape.

Each generation, for a fixed population of N diploids:
  1. rules.w(genotypes, fitness_fn)      cache fitness, build sampler
  2. for each offspring slot:
       pick1 → pick2 → make_offspring → update
  3. rules.complete_generation()         offspring index for next generation
  4. record wbar, mating tallies, allele frequencies, fixations

Serial mode draws everything from the 'mating' stream in slot order.
Slot mode gives every (generation, slot) pair its own stream and fixes the
offspring id to the slot, so results do not depend on how slots are
scheduled; with simulation.workers > 1 the slots of one generation run on
a thread pool.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

import numpy as np

from wflandscape.config import SimulationConfig, default_config, effective_generations
from wflandscape.genetics import (
    GeneticMap,
    MutationRates,
    SpatialFitness,
    allocate_genotypes,
    compute_allele_frequencies,
    compute_heterozygosity,
    initialize_genotypes,
    make_genetic_map,
    make_offspring,
    update_fixations,
)
from wflandscape.rng import RandomContext, create_rng_hierarchy, rng_state_snapshot, slot_context
from wflandscape.rules import SpatialMatingRules
from wflandscape.snapshots import SnapshotRecorder
from wflandscape.types import FitnessContext, records_from_positions

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# INITIALIZATION
# ═══════════════════════════════════════════════════════════════════════

def initialize_positions(n: int, layout: str, rng: np.random.Generator) -> np.ndarray:
    """Initial records with ids 0..n-1.

    'split': the first n//2 individuals uniform on the upper-left quadrant
        [0, 0.5) × [0.5, 1), the rest on the lower-right quadrant
        [0.5, 1) × [0, 0.5).
    'uniform': all individuals uniform on the unit square.
    """
    if layout == 'uniform':
        return records_from_positions(rng.random((n, 2)))
    if layout != 'split':
        raise ValueError(f"unknown layout '{layout}'")

    half = n // 2
    xy = np.empty((n, 2), dtype=np.float64)
    xy[:half, 0] = rng.uniform(0.0, 0.5, half)
    xy[:half, 1] = rng.uniform(0.5, 1.0, half)
    xy[half:, 0] = rng.uniform(0.5, 1.0, n - half)
    xy[half:, 1] = rng.uniform(0.0, 0.5, n - half)
    return records_from_positions(xy)


def initialize_population(
    config: SimulationConfig,
    rngs: Dict[str, np.random.Generator],
) -> Tuple[np.ndarray, np.ndarray, GeneticMap]:
    """Build the genetic map, initial positions and initial genotypes.

    Returns:
        (records, genotypes, genetic_map)
    """
    g = config.genetics
    n = config.simulation.n_individuals
    genetic_map = make_genetic_map(g.n_loci, g.n_selected, g.s, g.h, rngs['map'])
    records = initialize_positions(n, config.initialization.layout, rngs['init'])
    genotypes = initialize_genotypes(n, g.n_loci, rngs['init'], g.init_freq)
    return records, genotypes, genetic_map


# ═══════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationResult:
    """Results of a landscape simulation."""
    n_individuals: int = 0
    n_generations: int = 0

    # Per-generation timeseries (length = n_generations)
    wbar: Optional[np.ndarray] = None
    n_outcross: Optional[np.ndarray] = None
    n_chance_self: Optional[np.ndarray] = None
    n_forced_self: Optional[np.ndarray] = None
    n_zero_weight_draws: Optional[np.ndarray] = None
    heterozygosity_obs: Optional[np.ndarray] = None
    heterozygosity_exp: Optional[np.ndarray] = None
    allele_freq: Optional[np.ndarray] = None      # (n_generations, n_loci), offspring

    # First generation at which each locus fixed for the derived allele (-1 = never)
    fixation_times: Optional[np.ndarray] = None

    # Final population
    records: Optional[np.ndarray] = None
    genotypes: Optional[np.ndarray] = None
    fitness: Optional[np.ndarray] = None
    genetic_map: Optional[GeneticMap] = None

    rng_state: Dict[str, dict] = field(default_factory=dict)
    # Stream for output subsampling (ms-style samples of k individuals)
    sampling_rng: Optional[np.random.Generator] = None

    @property
    def selfing_rate(self) -> np.ndarray:
        """Fraction of matings per generation that were selfing (chance or forced)."""
        n = self.n_outcross + self.n_chance_self + self.n_forced_self
        selfed = self.n_chance_self + self.n_forced_self
        return np.divide(selfed, n, out=np.zeros(len(n), dtype=np.float64), where=n > 0)

    @property
    def n_fixed(self) -> int:
        return int((self.fixation_times >= 0).sum())


# ═══════════════════════════════════════════════════════════════════════
# ONE GENERATION
# ═══════════════════════════════════════════════════════════════════════

def _reproduce(
    rules: SpatialMatingRules,
    rng: RandomContext,
    genotypes: np.ndarray,
    offspring_geno: np.ndarray,
    genetic_map: GeneticMap,
    rates: MutationRates,
    slot: Optional[int] = None,
) -> None:
    p1 = rules.pick1(rng)
    p2 = rules.pick2(rng, p1)
    child = make_offspring(genotypes[p1], genotypes[p2], genetic_map, rates, rng.generator)
    rec = rules.update(rng, p1, p2, slot=slot)
    offspring_geno[rec.id] = child


def run_generation(
    rules: SpatialMatingRules,
    genotypes: np.ndarray,
    fitness_fn: Callable,
    genetic_map: GeneticMap,
    rates: MutationRates,
    rng: RandomContext,
) -> Tuple[np.ndarray, np.ndarray]:
    """Advance one generation, drawing everything from ``rng`` in slot order.

    Returns:
        (offspring genotypes, offspring records), both ordered by id.
    """
    n = rules.n
    rules.w(genotypes, fitness_fn)
    offspring_geno = allocate_genotypes(n, genetic_map.n_loci)
    for _ in range(n):
        _reproduce(rules, rng, genotypes, offspring_geno, genetic_map, rates)
    return offspring_geno, rules.complete_generation()


def run_generation_slots(
    rules: SpatialMatingRules,
    genotypes: np.ndarray,
    fitness_fn: Callable,
    genetic_map: GeneticMap,
    rates: MutationRates,
    master_seed: int,
    workers: int = 1,
) -> Tuple[np.ndarray, np.ndarray]:
    """Advance one generation with one random stream per offspring slot.

    Offspring ``i`` always uses ``slot_context(master_seed, generation, i)``
    and gets id ``i``, so any ``workers`` value gives the same result.
    """
    n = rules.n
    rules.w(genotypes, fitness_fn)
    generation = rules.generation
    offspring_geno = allocate_genotypes(n, genetic_map.n_loci)

    def one_slot(slot: int) -> None:
        rng = slot_context(master_seed, generation, slot)
        _reproduce(rules, rng, genotypes, offspring_geno, genetic_map, rates, slot=slot)

    if workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            # list() re-raises the first worker exception
            list(pool.map(one_slot, range(n)))
    else:
        for slot in range(n):
            one_slot(slot)
    return offspring_geno, rules.complete_generation()


# ═══════════════════════════════════════════════════════════════════════
# FULL RUN
# ═══════════════════════════════════════════════════════════════════════

def make_rules(config: SimulationConfig, records: np.ndarray) -> SpatialMatingRules:
    """Mating rule configured from the landscape section."""
    ls = config.landscape
    return SpatialMatingRules(
        records,
        radius=ls.radius,
        dispersal=ls.dispersal,
        sampler=ls.sampler_global,
        local_sampler=ls.sampler_local,
        offspring_strategy=ls.offspring_strategy,
        cell_size=ls.cell_size,
        check_consistency=ls.check_consistency,
    )


def run_simulation(
    config: Optional[SimulationConfig] = None,
    fitness_fn: Optional[Callable] = None,
    recorder: Optional[SnapshotRecorder] = None,
) -> SimulationResult:
    """Run the landscape Wright-Fisher model.

    Args:
        config: Simulation configuration (default_config() if None).
        fitness_fn: ``(genotype, FitnessContext) -> float``. Defaults to
            the spatial fitness model over the run's genetic map.
        recorder: Optional SnapshotRecorder, fed after every fitness refresh.

    Returns:
        SimulationResult with per-generation diagnostics and the final
        population.
    """
    if config is None:
        config = default_config()
    sim = config.simulation
    g = config.genetics
    n = sim.n_individuals
    n_gen = effective_generations(config)
    slot_mode = sim.slot_rng or sim.workers > 1

    rngs = create_rng_hierarchy(sim.seed)
    records, genotypes, genetic_map = initialize_population(config, rngs)
    if fitness_fn is None:
        fitness_fn = SpatialFitness(genetic_map)
    rates = MutationRates.from_scaled(g.theta, g.rho, g.mu, n)
    rules = make_rules(config, records)
    mating_rng = RandomContext(rngs['mating'])

    n_loci = genetic_map.n_loci
    result = SimulationResult(
        n_individuals=n,
        n_generations=n_gen,
        wbar=np.zeros(n_gen, dtype=np.float64),
        n_outcross=np.zeros(n_gen, dtype=np.int64),
        n_chance_self=np.zeros(n_gen, dtype=np.int64),
        n_forced_self=np.zeros(n_gen, dtype=np.int64),
        n_zero_weight_draws=np.zeros(n_gen, dtype=np.int64),
        heterozygosity_obs=np.zeros(n_gen, dtype=np.float64),
        heterozygosity_exp=np.zeros(n_gen, dtype=np.float64),
        allele_freq=np.zeros((n_gen, n_loci), dtype=np.float64),
        fixation_times=np.full(n_loci, -1, dtype=np.int64),
        genetic_map=genetic_map,
    )

    logger.info(
        "starting run: N=%d, %d generations, radius=%g, dispersal=%g, seed=%d%s",
        n, n_gen, config.landscape.radius, config.landscape.dispersal, sim.seed,
        f", {sim.workers} workers" if sim.workers > 1 else "",
    )
    report_every = max(1, n_gen // 10)

    for gen in range(n_gen):
        if slot_mode:
            genotypes, records = run_generation_slots(
                rules, genotypes, fitness_fn, genetic_map, rates, sim.seed, sim.workers,
            )
        else:
            genotypes, records = run_generation(
                rules, genotypes, fitness_fn, genetic_map, rates, mating_rng,
            )

        stats = rules.stats
        if recorder is not None:
            recorder.capture(gen, rules.parental_records, rules.fitness[:n])
        result.wbar[gen] = stats.wbar
        result.n_outcross[gen] = stats.n_outcross
        result.n_chance_self[gen] = stats.n_chance_self
        result.n_forced_self[gen] = stats.n_forced_self
        result.n_zero_weight_draws[gen] = stats.n_zero_weight_draws

        q = compute_allele_frequencies(genotypes)
        result.allele_freq[gen] = q
        result.heterozygosity_obs[gen], result.heterozygosity_exp[gen] = (
            compute_heterozygosity(genotypes)
        )
        newly_fixed = update_fixations(q, result.fixation_times, gen)
        if newly_fixed:
            logger.debug("generation %d: %d locus/loci fixed", gen, newly_fixed)

        if (gen + 1) % report_every == 0:
            logger.info(
                "generation %d/%d: wbar=%.4f selfing=%.3f fixed=%d",
                gen + 1, n_gen, stats.wbar, stats.selfing_rate, result.n_fixed,
            )

    # Fitness of the final population, for output and plotting
    fitness = np.array([
        fitness_fn(genotypes[i], FitnessContext(i, float(records['x'][i]),
                                                float(records['y'][i]), n_gen))
        for i in range(n)
    ], dtype=np.float64)

    result.records = records
    result.genotypes = genotypes
    result.fitness = fitness
    result.rng_state = rng_state_snapshot(rngs)
    result.sampling_rng = rngs['sampling']
    logger.info("run complete: %d loci fixed", result.n_fixed)
    return result
