"""Seeded randomness for reproducible landscape simulations.

Uses NumPy's SeedSequence → PCG64 hierarchy to guarantee:
  - Statistical independence between named streams
  - Bit-exact replay with the same master seed
  - Per-offspring-slot streams that do not depend on how many worker
    threads share a generation

All randomness consumed by the mating rule goes through a RandomContext
passed explicitly into each hook; there is no module-level generator.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict

import numpy as np

if TYPE_CHECKING:
    from wflandscape.sampler import WeightedSampler


STREAM_NAMES = ('init', 'map', 'mating', 'sampling')


class RandomContext:
    """Random capabilities handed to the mating rule and the engine.

    Wraps one ``np.random.Generator``. ``uniform`` returns a draw in
    [0, 1); ``gaussian`` a normal deviate; ``discrete`` one index from a
    prebuilt weighted sampler using a single uniform draw.
    """

    def __init__(self, generator: np.random.Generator):
        self.generator = generator

    @classmethod
    def from_seed(cls, seed: int) -> 'RandomContext':
        return cls(np.random.Generator(np.random.PCG64(np.random.SeedSequence(seed))))

    def uniform(self) -> float:
        return float(self.generator.random())

    def gaussian(self, mean: float, sd: float) -> float:
        return float(self.generator.normal(mean, sd))

    def discrete(self, sampler: 'WeightedSampler') -> int:
        return sampler.sample(self.uniform())

    def snapshot(self) -> dict:
        """Capture the bit-generator state (for checkpointing)."""
        return self.generator.bit_generator.state

    def restore(self, state: dict) -> None:
        self.generator.bit_generator.state = state


def create_rng_hierarchy(master_seed: int) -> Dict[str, np.random.Generator]:
    """Create independent RNG streams for each phase of a run.

    Streams created:
      - 'init':     initial positions and genotypes
      - 'map':      locus positions and selected-locus choice
      - 'mating':   serial generation loop (picks, dispersal, meiosis)
      - 'sampling': output sampling (ms-style subsamples)

    Args:
        master_seed: Master RNG seed (non-negative integer).

    Returns:
        Dictionary mapping stream names to numpy Generator instances.

    Example:
        >>> rngs = create_rng_hierarchy(42)
        >>> rngs['mating'].random()  # reproducible
    """
    ss = np.random.SeedSequence(master_seed)
    child_seeds = ss.spawn(len(STREAM_NAMES))
    return {
        name: np.random.Generator(np.random.PCG64(child))
        for name, child in zip(STREAM_NAMES, child_seeds)
    }


def slot_context(master_seed: int, generation: int, slot: int) -> RandomContext:
    """RandomContext for one offspring slot of one generation.

    The stream depends only on (master_seed, generation, slot), so the
    same slot draws the same numbers regardless of which worker runs it
    or in what order slots are processed.
    """
    ss = np.random.SeedSequence(master_seed, spawn_key=(generation, slot))
    return RandomContext(np.random.Generator(np.random.PCG64(ss)))


def rng_state_snapshot(
    rngs: Dict[str, np.random.Generator],
) -> Dict[str, dict]:
    """Capture full RNG state for checkpointing.

    Args:
        rngs: RNG hierarchy.

    Returns:
        Dictionary mapping stream names to their internal state dicts.
    """
    return {name: rng.bit_generator.state for name, rng in rngs.items()}


def restore_rng_state(
    rngs: Dict[str, np.random.Generator],
    states: Dict[str, dict],
) -> None:
    """Restore RNG state from a checkpoint snapshot.

    Raises:
        KeyError: If a stream in states doesn't exist in rngs.
    """
    for name, state in states.items():
        if name not in rngs:
            raise KeyError(f"Cannot restore RNG state for unknown stream '{name}'")
        rngs[name].bit_generator.state = state
