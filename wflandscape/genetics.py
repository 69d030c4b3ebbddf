"""Genetic engine for the landscape Wright-Fisher model.

Diploid, biallelic loci on a uniform genetic map [0, 1):
  - Locus positions drawn once per run (sorted ascending)
  - A subset of loci is under selection (per-locus s, h); the rest are neutral
  - Allele 0 = ancestral, 1 = derived

Core responsibilities:
  - Genetic map construction
  - Genotype initialization (Bernoulli per allele copy)
  - Meiosis: Poisson(r) crossovers per gamete, random starting strand
  - Mutation: Poisson(θ/4N) flips at neutral loci and Poisson(μ) flips at
    selected loci, per gamete
  - Spatial fitness: multiplicative across selected sites, with the sign of
    s reversed in the lower-left quadrant of the landscape
  - Allele frequency, heterozygosity and fixation tracking

Genotypes of a population are stored as an (N, n_loci, 2) int8 array;
one individual's payload is its (n_loci, 2) slice.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from wflandscape.types import FitnessContext


# ═══════════════════════════════════════════════════════════════════════
# GENETIC MAP
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class GeneticMap:
    """Locus layout and selection coefficients.

    Attributes:
        positions: (L,) float64 map positions in [0, 1), ascending.
        selected: (L,) bool, True for loci under selection.
        s: (L,) float64 selection coefficients (0 at neutral loci).
        h: (L,) float64 dominance coefficients (0 at neutral loci).
    """
    positions: np.ndarray
    selected: np.ndarray
    s: np.ndarray
    h: np.ndarray

    @property
    def n_loci(self) -> int:
        return len(self.positions)

    @property
    def neutral_idx(self) -> np.ndarray:
        return np.flatnonzero(~self.selected)

    @property
    def selected_idx(self) -> np.ndarray:
        return np.flatnonzero(self.selected)


def make_genetic_map(
    n_loci: int,
    n_selected: int,
    s: float,
    h: float,
    rng: np.random.Generator,
) -> GeneticMap:
    """Draw locus positions and choose which loci are under selection.

    Args:
        n_loci: Total number of loci.
        n_selected: How many of them are under selection (<= n_loci).
        s: Selection coefficient shared by all selected loci.
        h: Dominance coefficient shared by all selected loci.
        rng: Random generator ('map' stream).

    Returns:
        GeneticMap with sorted positions.
    """
    if n_selected > n_loci:
        raise ValueError(f"n_selected ({n_selected}) exceeds n_loci ({n_loci})")
    positions = np.sort(rng.random(n_loci))
    selected = np.zeros(n_loci, dtype=bool)
    if n_selected > 0:
        selected[rng.choice(n_loci, size=n_selected, replace=False)] = True
    return GeneticMap(
        positions=positions,
        selected=selected,
        s=np.where(selected, s, 0.0),
        h=np.where(selected, h, 0.0),
    )


# ═══════════════════════════════════════════════════════════════════════
# GENOTYPES
# ═══════════════════════════════════════════════════════════════════════

def allocate_genotypes(n: int, n_loci: int) -> np.ndarray:
    """Allocate an all-ancestral (n, n_loci, 2) int8 genotype array."""
    return np.zeros((n, n_loci, 2), dtype=np.int8)


def initialize_genotypes(
    n: int,
    n_loci: int,
    rng: np.random.Generator,
    init_freq: float = 0.0,
) -> np.ndarray:
    """Each allele copy is derived with probability ``init_freq``."""
    geno = allocate_genotypes(n, n_loci)
    if init_freq > 0.0:
        geno[:] = (rng.random((n, n_loci, 2)) < init_freq).astype(np.int8)
    return geno


# ═══════════════════════════════════════════════════════════════════════
# MEIOSIS & MUTATION
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class MutationRates:
    """Per-gamete event rates.

    neutral:   expected allele flips at neutral loci (θ / 4N)
    selected:  expected allele flips at selected loci (μ)
    crossover: expected crossovers per meiosis (ρ / 4N)
    """
    neutral: float = 0.0
    selected: float = 0.0
    crossover: float = 0.0

    @classmethod
    def from_scaled(cls, theta: float, rho: float, mu: float, n: int) -> 'MutationRates':
        """Convert population-scaled θ and ρ to per-gamete rates."""
        return cls(neutral=theta / (4.0 * n), selected=mu, crossover=rho / (4.0 * n))


def form_gamete(
    parent: np.ndarray,
    genetic_map: GeneticMap,
    crossover_rate: float,
    rng: np.random.Generator,
) -> np.ndarray:
    """Recombine the two haplotypes of one parent into a gamete.

    The starting haplotype is chosen with probability 1/2; the number of
    crossovers is Poisson(crossover_rate) with uniform breakpoints on
    [0, 1). A locus lies on the starting haplotype iff an even number of
    breakpoints fall at or before its map position.

    Args:
        parent: (L, 2) int8 genotype.
        genetic_map: Locus positions.
        crossover_rate: Expected crossovers per meiosis.
        rng: Random generator.

    Returns:
        (L,) int8 haplotype.
    """
    start = int(rng.integers(2))
    n_xo = int(rng.poisson(crossover_rate)) if crossover_rate > 0.0 else 0
    if n_xo == 0:
        return parent[:, start].copy()
    breakpoints = np.sort(rng.random(n_xo))
    n_before = np.searchsorted(breakpoints, genetic_map.positions, side='right')
    strand = (start + n_before) % 2
    return parent[np.arange(len(strand)), strand]


def _flip_random(gamete: np.ndarray, loci: np.ndarray, n_events: int,
                 rng: np.random.Generator) -> int:
    if n_events == 0 or len(loci) == 0:
        return 0
    n_events = min(n_events, len(loci))
    hit = rng.choice(loci, size=n_events, replace=False)
    gamete[hit] = 1 - gamete[hit]
    return n_events


def apply_mutations(
    gamete: np.ndarray,
    genetic_map: GeneticMap,
    rates: MutationRates,
    rng: np.random.Generator,
) -> int:
    """Apply bidirectional point mutations to one gamete in place.

    Returns:
        Number of allele flips applied.
    """
    n_neutral = int(rng.poisson(rates.neutral)) if rates.neutral > 0.0 else 0
    n_selected = int(rng.poisson(rates.selected)) if rates.selected > 0.0 else 0
    return (_flip_random(gamete, genetic_map.neutral_idx, n_neutral, rng)
            + _flip_random(gamete, genetic_map.selected_idx, n_selected, rng))


def make_offspring(
    parent1: np.ndarray,
    parent2: np.ndarray,
    genetic_map: GeneticMap,
    rates: MutationRates,
    rng: np.random.Generator,
) -> np.ndarray:
    """One gamete from each parent, mutated. Returns (L, 2) int8."""
    child = np.empty((genetic_map.n_loci, 2), dtype=np.int8)
    for copy, parent in enumerate((parent1, parent2)):
        gamete = form_gamete(parent, genetic_map, rates.crossover, rng)
        apply_mutations(gamete, genetic_map, rates, rng)
        child[:, copy] = gamete
    return child


# ═══════════════════════════════════════════════════════════════════════
# SPATIAL FITNESS
# ═══════════════════════════════════════════════════════════════════════

def geographic_factor(x: float, y: float) -> float:
    """-1 in the lower-left quadrant (x <= 0.5 and y <= 0.5), else +1."""
    return -1.0 if (x <= 0.5 and y <= 0.5) else 1.0


def spatial_fitness(genotype: np.ndarray, x: float, y: float,
                    genetic_map: GeneticMap) -> float:
    """Multiplicative fitness across selected sites, floored at 0.

    w = Π (1 + g·2s) over derived homozygous sites
      × Π (1 + g·h·s) over heterozygous sites

    where g = geographic_factor(x, y).
    """
    idx = genetic_map.selected_idx
    if len(idx) == 0:
        return 1.0
    g = geographic_factor(x, y)
    count = genotype[idx, 0].astype(np.int64) + genotype[idx, 1]
    s = genetic_map.s[idx]
    h = genetic_map.h[idx]
    factors = np.where(count == 2, 1.0 + g * 2.0 * s,
                       np.where(count == 1, 1.0 + g * h * s, 1.0))
    return max(0.0, float(np.prod(factors)))


class SpatialFitness:
    """Fitness callable for ``SpatialMatingRules.w``: payload is an (L, 2) genotype."""

    def __init__(self, genetic_map: GeneticMap):
        self.genetic_map = genetic_map

    def __call__(self, genotype: np.ndarray, ctx: FitnessContext) -> float:
        return spatial_fitness(genotype, ctx.x, ctx.y, self.genetic_map)


# ═══════════════════════════════════════════════════════════════════════
# DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════

def compute_allele_frequencies(genotypes: np.ndarray) -> np.ndarray:
    """Derived allele frequency at each locus, (L,) float64."""
    n = genotypes.shape[0]
    if n == 0:
        return np.zeros(genotypes.shape[1], dtype=np.float64)
    return genotypes.sum(axis=(0, 2)).astype(np.float64) / (2.0 * n)


def compute_heterozygosity(genotypes: np.ndarray) -> Tuple[float, float]:
    """Observed and expected (2pq) heterozygosity averaged across loci."""
    n = genotypes.shape[0]
    if n < 2 or genotypes.shape[1] == 0:
        return 0.0, 0.0
    H_o = float(np.mean(genotypes[:, :, 0] != genotypes[:, :, 1]))
    q = compute_allele_frequencies(genotypes)
    H_e = float(np.mean(2.0 * q * (1.0 - q)))
    return H_o, H_e


def update_fixations(
    allele_freq: np.ndarray,
    fixation_times: np.ndarray,
    generation: int,
) -> int:
    """Record ``generation`` for loci whose derived allele just reached frequency 1.

    ``fixation_times`` holds -1 for loci never fixed and is modified in place.

    Returns:
        Number of newly fixed loci.
    """
    new = (allele_freq >= 1.0) & (fixation_times < 0)
    fixation_times[new] = generation
    return int(new.sum())
