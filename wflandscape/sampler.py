"""Weighted discrete samplers.

Two constructions over a vector of non-negative weights, both O(n) to
build and both consuming exactly one uniform draw u ∈ [0, 1) per sample:

  - AliasSampler: Walker/Vose alias table, O(1) per draw. Used for the
    generation-wide first-parent draw (the role gsl_ran_discrete plays
    in classic forward simulators).
  - CumulativeSampler: running sum + binary search, O(log n) per draw.
    Tie-break: the first index whose cumulative weight strictly exceeds
    u·Σw wins; the last index is the fallback at the upper boundary.
    Used for the per-query neighbourhood draw, where the candidate set is
    small and rebuilt every time.

Zero total weight: every index is equally likely. Callers that want to
surface this (the mating rule does) check ``uniform_fallback``.
"""

from __future__ import annotations

import logging
from typing import Sequence, Union

import numpy as np

from wflandscape.errors import InvalidWeight

logger = logging.getLogger(__name__)

WeightsLike = Union[Sequence[float], np.ndarray]

SAMPLER_METHODS = ('alias', 'cumulative')


def validate_weights(weights: WeightsLike) -> np.ndarray:
    """Return weights as a float64 array, or raise InvalidWeight."""
    try:
        w = np.asarray(weights, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InvalidWeight(f"weights are not numeric: {exc}") from exc
    if w.ndim != 1:
        raise InvalidWeight(f"weights must be one-dimensional, got shape {w.shape}")
    if w.size == 0:
        raise InvalidWeight("cannot sample from an empty weight vector")
    finite = np.isfinite(w)
    if not finite.all():
        i = int(np.argmin(finite))
        raise InvalidWeight(f"weight {i} is not finite: {w[i]!r}")
    if (w < 0).any():
        i = int(np.argmax(w < 0))
        raise InvalidWeight(f"weight {i} is negative: {w[i]!r}")
    return w


def _check_draw(u: float) -> float:
    if not 0.0 <= u < 1.0:
        raise ValueError(f"uniform draw must lie in [0, 1), got {u!r}")
    return u


class WeightedSampler:
    """Common state for the samplers: size, total, zero-sum fallback."""

    def __init__(self, weights: WeightsLike):
        w = validate_weights(weights)
        self.n = int(w.size)
        self.total = float(w.sum())
        self.uniform_fallback = self.total == 0.0
        if self.uniform_fallback:
            logger.debug("all %d weights are zero; sampling uniformly", self.n)
        self._build(w)

    def __len__(self) -> int:
        return self.n

    def _build(self, w: np.ndarray) -> None:
        raise NotImplementedError

    def _draw(self, u: float) -> int:
        raise NotImplementedError

    def sample(self, u: float) -> int:
        """Map one uniform draw in [0, 1) to an index."""
        u = _check_draw(u)
        if self.uniform_fallback:
            return min(int(u * self.n), self.n - 1)
        return self._draw(u)

    def probabilities(self) -> np.ndarray:
        """Exact sampling probability of each index."""
        raise NotImplementedError


class AliasSampler(WeightedSampler):
    """Vose's alias method: O(n) build, O(1) sample."""

    def _build(self, w: np.ndarray) -> None:
        n = self.n
        self._prob = np.ones(n, dtype=np.float64)
        self._alias = np.arange(n, dtype=np.int64)
        if self.uniform_fallback:
            return

        scaled = w * (n / self.total)
        small = [i for i in range(n) if scaled[i] < 1.0]
        large = [i for i in range(n) if scaled[i] >= 1.0]

        while small and large:
            s = small.pop()
            l = large.pop()
            self._prob[s] = scaled[s]
            self._alias[s] = l
            scaled[l] = (scaled[l] + scaled[s]) - 1.0
            if scaled[l] < 1.0:
                small.append(l)
            else:
                large.append(l)

        # Leftovers are 1.0 up to rounding
        for i in large + small:
            self._prob[i] = 1.0
            self._alias[i] = i

    def _draw(self, u: float) -> int:
        x = u * self.n
        i = int(x)
        if i >= self.n:
            i = self.n - 1
        if x - i < self._prob[i]:
            return i
        return int(self._alias[i])

    def probabilities(self) -> np.ndarray:
        if self.uniform_fallback:
            return np.full(self.n, 1.0 / self.n)
        p = self._prob / self.n
        np.add.at(p, self._alias, (1.0 - self._prob) / self.n)
        return p


class CumulativeSampler(WeightedSampler):
    """Cumulative-sum scan: O(n) build, O(log n) sample."""

    def _build(self, w: np.ndarray) -> None:
        self._cum = np.cumsum(w)
        # Scan against the sequential sum, not the pairwise w.sum()
        self._cum_total = float(self._cum[-1])
        positive = np.flatnonzero(w > 0.0)
        self._last_positive = int(positive[-1]) if len(positive) else self.n - 1

    def _draw(self, u: float) -> int:
        target = u * self._cum_total
        i = int(np.searchsorted(self._cum, target, side='right'))
        return min(i, self._last_positive)

    def probabilities(self) -> np.ndarray:
        if self.uniform_fallback:
            return np.full(self.n, 1.0 / self.n)
        return np.diff(self._cum, prepend=0.0) / self._cum_total


def build_sampler(weights: WeightsLike, method: str = 'alias') -> WeightedSampler:
    """Build a sampler by name ('alias' or 'cumulative')."""
    if method == 'alias':
        return AliasSampler(weights)
    if method == 'cumulative':
        return CumulativeSampler(weights)
    raise ValueError(f"sampler method must be one of {SAMPLER_METHODS}, got {method!r}")
