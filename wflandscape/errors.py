"""Exception taxonomy for the spatial mating rule.

InvalidWeight / InvalidFitness / InvalidPosition are data problems
reported to the caller; none of them is retried. ConsistencyViolation
means the rule's own bookkeeping is broken (an index that does not hold
the population it was built from) and is never recovered.
"""

from __future__ import annotations

from typing import Any


class MatingRuleError(Exception):
    """Base class for all errors raised by the mating rule."""


class InvalidWeight(MatingRuleError, ValueError):
    """A sampler weight was negative, non-finite, or the weights were empty."""


class InvalidFitness(MatingRuleError, ValueError):
    """The fitness function returned a negative, non-finite or non-numeric value."""

    def __init__(self, individual: int, value: Any, reason: str = "") -> None:
        self.individual = individual
        self.value = value
        msg = f"fitness of individual {individual} is invalid: {value!r}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class InvalidPosition(MatingRuleError, ValueError):
    """A coordinate was NaN/inf (or outside the unit square where that is required)."""


class ConsistencyViolation(MatingRuleError, RuntimeError):
    """Internal bookkeeping no longer matches the population."""
