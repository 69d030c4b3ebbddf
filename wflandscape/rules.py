"""Spatial mating rule: the four lifecycle hooks of a landscape generation.

A forward-simulation engine drives one generation as:

  1. ``w(payloads, fitness_fn)``: promote last generation's offspring
     index to parental, reset the offspring arena, cache fitness, build
     the global sampler. Returns mean fitness.
  2. for each of the N offspring:
       ``pick1(rng)``: parent 1, drawn from the whole population
         proportional to fitness
       ``pick2(rng, p1)``: parent 2, drawn by fitness among the
         individuals within ``radius`` of p1
       (engine builds the offspring's genome)
       ``update(rng, p1, p2)``: place the offspring and store it
  3. ``complete_generation()``: verify the arena holds exactly N
     offspring with ids 0..N-1 and build next generation's index from it.
     ``w`` calls this itself if the engine did not.

The parental index and the fitness table are read-only between ``w`` and
``complete_generation``; the offspring arena is the only shared mutable
state and is written under a lock, so the per-offspring cycle may run on
several threads at once (pass ``slot=`` to ``update`` to fix the
offspring's id independently of thread timing).

Offspring strategies:
  - 'bulk' (default): offspring go into a pre-sized arena; the next
    parental index is built from it once, at generation end.
  - 'incremental': each offspring is also inserted into the live offspring
    index as it is placed.
Both produce identical query results because radius queries return
records in id order.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

import numpy as np

from wflandscape.dispersal import DispersalModel
from wflandscape.errors import ConsistencyViolation, InvalidFitness, InvalidPosition
from wflandscape.rng import RandomContext
from wflandscape.sampler import SAMPLER_METHODS, WeightedSampler, build_sampler
from wflandscape.spatial_index import SpatialIndex, auto_cell_size
from wflandscape.types import (
    DOMAIN_MAX,
    DOMAIN_MIN,
    FitnessContext,
    MatingKind,
    PositionRecord,
    RecordLike,
    allocate_records,
    as_records,
    check_records_finite,
)

logger = logging.getLogger(__name__)

FitnessFunction = Callable[[Any, FitnessContext], float]

OFFSPRING_STRATEGIES = ('bulk', 'incremental')


# ═══════════════════════════════════════════════════════════════════════
# DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class GenerationStats:
    """Mating tallies for one generation (diagnostic only)."""
    generation: int = -1
    wbar: float = 0.0
    n_outcross: int = 0
    n_chance_self: int = 0
    n_forced_self: int = 0
    n_zero_weight_draws: int = 0   # pick2 neighbourhoods with zero total fitness

    @property
    def n_matings(self) -> int:
        return self.n_outcross + self.n_chance_self + self.n_forced_self

    @property
    def selfing_rate(self) -> float:
        n = self.n_matings
        return (self.n_chance_self + self.n_forced_self) / n if n else 0.0

    def record(self, kind: MatingKind) -> None:
        if kind == MatingKind.OUTCROSS:
            self.n_outcross += 1
        elif kind == MatingKind.CHANCE_SELF:
            self.n_chance_self += 1
        else:
            self.n_forced_self += 1


def _checked_fitness(individual: int, value: Any) -> float:
    try:
        f = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidFitness(individual, value, "not a number") from exc
    if not math.isfinite(f):
        raise InvalidFitness(individual, value, "not finite")
    if f < 0.0:
        raise InvalidFitness(individual, value, "negative")
    return f


def _check_dense_ids(records: np.ndarray, what: str) -> np.ndarray:
    """Return records ordered by id; ids must be exactly 0..n-1."""
    ordered = records[np.argsort(records['id'], kind='stable')]
    if not np.array_equal(ordered['id'], np.arange(len(records))):
        raise ConsistencyViolation(f"{what} ids are not exactly 0..{len(records) - 1}")
    return ordered


# ═══════════════════════════════════════════════════════════════════════
# MATING RULE
# ═══════════════════════════════════════════════════════════════════════

class SpatialMatingRules:
    """Fitness-weighted, radius-bounded mating on the unit square.

    Args:
        records: Initial population snapshot (N records, ids 0..N-1,
            positions in [0, 1]²). Becomes the parental index at the first
            ``w`` call.
        radius: Mating radius (>= 0), fixed for the run.
        dispersal: Per-axis standard deviation of offspring dispersal.
        sampler: Sampler used for the global first-parent draw.
        local_sampler: Sampler used for each neighbourhood draw.
        offspring_strategy: 'bulk' or 'incremental'.
        cell_size: Grid cell size of both indexes (None: sized from N).
        check_consistency: Verify at each promotion that the parental index
            holds exactly the population it was built from.
    """

    def __init__(
        self,
        records: RecordLike,
        radius: float,
        dispersal: float,
        sampler: str = 'alias',
        local_sampler: str = 'cumulative',
        offspring_strategy: str = 'bulk',
        cell_size: Optional[float] = None,
        check_consistency: bool = False,
    ):
        radius = float(radius)
        if not (radius >= 0.0 and math.isfinite(radius)):
            raise ValueError(f"mating radius must be finite and >= 0, got {radius!r}")
        for name, method in (('sampler', sampler), ('local_sampler', local_sampler)):
            if method not in SAMPLER_METHODS:
                raise ValueError(f"{name} must be one of {SAMPLER_METHODS}, got {method!r}")
        if offspring_strategy not in OFFSPRING_STRATEGIES:
            raise ValueError(
                f"offspring_strategy must be one of {OFFSPRING_STRATEGIES}, "
                f"got {offspring_strategy!r}"
            )

        recs = as_records(records).copy()
        if len(recs) == 0:
            raise ValueError("the initial population is empty")
        check_records_finite(recs)
        outside = ((recs['x'] < DOMAIN_MIN) | (recs['x'] > DOMAIN_MAX)
                   | (recs['y'] < DOMAIN_MIN) | (recs['y'] > DOMAIN_MAX))
        if outside.any():
            raise InvalidPosition(
                f"{int(outside.sum())} initial position(s) lie outside the unit square"
            )
        recs = _check_dense_ids(recs, "initial population")

        self.n = len(recs)
        self.radius = radius
        self.dispersal = DispersalModel(dispersal)
        self.sampler_method = sampler
        self.local_sampler_method = local_sampler
        self.offspring_strategy = offspring_strategy
        self.cell_size = cell_size if cell_size is not None else auto_cell_size(self.n)
        self.check_consistency = check_consistency

        self.generation = -1
        self.wbar = 0.0
        self.fitness = np.zeros(0, dtype=np.float64)
        self.stats = GenerationStats()
        self._global: Optional[WeightedSampler] = None

        self.parental = SpatialIndex(cell_size=self.cell_size)
        self._parental_records = allocate_records(0)

        # The initial snapshot occupies the offspring slot so that the
        # first w() promotes it like any other generation's offspring.
        self.offspring = SpatialIndex(recs, cell_size=self.cell_size)
        self._arena = recs
        self._placed = np.ones(self.n, dtype=bool)
        self._n_placed = self.n
        self._next_id = self.n
        self._complete = True
        self._lock = threading.Lock()

    # ── Hook 1: fitness refresh ──────────────────────────────────────

    def w(self, payloads: Sequence[Any], fitness_fn: FitnessFunction) -> float:
        """Start a generation: promote, reset, cache fitness, build the sampler.

        Args:
            payloads: Engine-owned genetic payload of each individual,
                indexed by id (length N).
            fitness_fn: ``fitness_fn(payload, FitnessContext) -> float >= 0``.

        Returns:
            Mean fitness of the parental population.

        Raises:
            InvalidFitness: If any fitness is negative, non-finite or not
                a number. The generation is not started.
            ConsistencyViolation: If the population size or the index
                contents do not match.
        """
        if not self._complete:
            self.complete_generation()

        if len(payloads) != self.n:
            raise ConsistencyViolation(
                f"engine passed {len(payloads)} individuals, population size is {self.n}"
            )

        n = self.n
        generation = self.generation + 1

        # Computed before promotion: InvalidFitness leaves the rule unchanged
        incoming = self._arena
        fresh = np.empty(n, dtype=np.float64)
        xs = incoming['x']
        ys = incoming['y']
        for i in range(n):
            ctx = FitnessContext(i, float(xs[i]), float(ys[i]), generation)
            fresh[i] = _checked_fitness(i, fitness_fn(payloads[i], ctx))

        # Ownership transfer: last generation's offspring become parents
        self.parental = self.offspring
        self._parental_records = incoming
        if self.check_consistency:
            self.parental.verify_population(self._parental_records)

        self.offspring = SpatialIndex(cell_size=self.cell_size)
        self._arena = allocate_records(n)
        self._placed = np.zeros(n, dtype=bool)
        self._n_placed = 0
        self._next_id = 0
        self._complete = False

        if self.fitness.size < n:
            self.fitness = np.zeros(n, dtype=np.float64)
        self.fitness[:n] = fresh
        fit = self.fitness[:n]
        self.wbar = float(fit.sum() / n)
        self._global = build_sampler(fit, self.sampler_method)
        if self._global.uniform_fallback:
            logger.warning(
                "generation %d: every individual has zero fitness; "
                "first parents are drawn uniformly", generation,
            )

        self.generation = generation
        self.stats = GenerationStats(generation=generation, wbar=self.wbar)
        logger.debug("generation %d: wbar=%.6f", generation, self.wbar)
        return self.wbar

    # ── Hook 2: first parent ─────────────────────────────────────────

    def _require_generation(self) -> None:
        if self._global is None:
            raise RuntimeError("w() must be called before picking parents or placing offspring")

    def _parent_position(self, p: int) -> tuple:
        if not 0 <= p < self.n:
            raise IndexError(f"parent id {p} is outside 0..{self.n - 1}")
        rec = self._parental_records[p]
        return float(rec['x']), float(rec['y'])

    def pick1(self, rng: RandomContext) -> int:
        """Draw parent 1 from the whole population, proportional to fitness."""
        self._require_generation()
        return rng.discrete(self._global)

    # ── Hook 3: second parent ────────────────────────────────────────

    def pick2(self, rng: RandomContext, p1: int) -> int:
        """Draw parent 2 from the individuals within ``radius`` of parent 1.

        Parent 1 is itself a candidate. If it is the only one, it is
        returned without consuming randomness (forced selfing).

        Raises:
            ConsistencyViolation: If the query does not even find parent 1.
        """
        self._require_generation()
        p1 = int(p1)
        mates = self.parental.query_radius(self._parent_position(p1), self.radius)
        ids = mates['id']

        if len(ids) == 0:
            raise ConsistencyViolation(
                f"radius query around individual {p1} found no one, not even itself"
            )
        if len(ids) == 1:
            if ids[0] != p1:
                raise ConsistencyViolation(
                    f"radius query around individual {p1} returned only individual {int(ids[0])}"
                )
            with self._lock:
                self.stats.record(MatingKind.FORCED_SELF)
            return p1

        local = build_sampler(self.fitness[ids], self.local_sampler_method)
        p2 = int(ids[rng.discrete(local)])
        kind = MatingKind.CHANCE_SELF if p2 == p1 else MatingKind.OUTCROSS
        with self._lock:
            self.stats.record(kind)
            if local.uniform_fallback:
                self.stats.n_zero_weight_draws += 1
        return p2

    # ── Hook 4: offspring placement ──────────────────────────────────

    def update(self, rng: RandomContext, p1: int, p2: int,
               slot: Optional[int] = None) -> PositionRecord:
        """Place one offspring of ``p1`` × ``p2`` and store it in the arena.

        Args:
            rng: Random capabilities (dispersal draws).
            p1, p2: Parent ids in the current parental population.
            slot: Offspring id to use. None takes the next id from the
                per-generation counter.

        Returns:
            The stored PositionRecord.

        Raises:
            InvalidPosition: If a parent position is not finite.
            ConsistencyViolation: If more than N offspring are placed or a
                slot is filled twice.
        """
        self._require_generation()
        x, y = self.dispersal.place(self._parent_position(int(p1)),
                                    self._parent_position(int(p2)), rng)
        with self._lock:
            if slot is None:
                oid = self._next_id
                self._next_id += 1
            else:
                oid = int(slot)
            if not 0 <= oid < self.n:
                raise ConsistencyViolation(
                    f"offspring id {oid} is outside 0..{self.n - 1}; "
                    f"the population size is fixed at {self.n}"
                )
            if self._placed[oid]:
                raise ConsistencyViolation(f"offspring slot {oid} was already filled")
            self._arena[oid] = (x, y, oid)
            self._placed[oid] = True
            self._n_placed += 1
            if self.offspring_strategy == 'incremental':
                self.offspring.insert((x, y, oid))
        return PositionRecord(x, y, oid)

    # ── Generation end ───────────────────────────────────────────────

    def complete_generation(self) -> np.ndarray:
        """Close the generation and build next generation's index.

        Returns:
            Copy of the offspring records, ordered by id.

        Raises:
            ConsistencyViolation: Unless exactly N offspring, ids 0..N-1,
                were placed.
        """
        with self._lock:
            if not self._complete:
                if self._n_placed != self.n:
                    raise ConsistencyViolation(
                        f"generation {self.generation}: {self._n_placed} of "
                        f"{self.n} offspring placed"
                    )
                if self.offspring_strategy == 'bulk':
                    self.offspring.rebuild(self._arena)
                self._complete = True
                if self.stats.n_zero_weight_draws:
                    logger.warning(
                        "generation %d: %d mate choice(s) fell back to uniform "
                        "sampling (zero total fitness in range)",
                        self.generation, self.stats.n_zero_weight_draws,
                    )
                logger.debug(
                    "generation %d complete: %d outcross, %d chance self, %d forced self",
                    self.generation, self.stats.n_outcross,
                    self.stats.n_chance_self, self.stats.n_forced_self,
                )
            return self._arena.copy()

    # ── Read-only views ──────────────────────────────────────────────

    @property
    def parental_records(self) -> np.ndarray:
        """Parental population records, ordered by id."""
        return self._parental_records

    @property
    def n_placed(self) -> int:
        return self._n_placed
