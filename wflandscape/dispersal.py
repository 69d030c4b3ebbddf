"""Offspring dispersal on the unit square.

An offspring is placed at the midpoint of its parents plus an independent
Normal(0, σ) offset on each axis; each coordinate is then clamped into
[0, 1] on its own (x < 0 → 0, x > 1 → 1). With σ = 0 the offspring lands
exactly on the midpoint and no random numbers are consumed.

Non-finite parent coordinates are rejected rather than clamped.
"""

from __future__ import annotations

import math
from typing import Tuple

from wflandscape.errors import InvalidPosition
from wflandscape.rng import RandomContext
from wflandscape.types import DOMAIN_MAX, DOMAIN_MIN

Point = Tuple[float, float]


def clamp_unit(v: float) -> float:
    """Clamp one coordinate into [0, 1]."""
    if v < DOMAIN_MIN:
        return DOMAIN_MIN
    if v > DOMAIN_MAX:
        return DOMAIN_MAX
    return v


def check_position(pos: Point, label: str = "position") -> Point:
    """Return ``pos`` as a float pair, raising InvalidPosition if non-finite."""
    x, y = float(pos[0]), float(pos[1])
    if not (math.isfinite(x) and math.isfinite(y)):
        raise InvalidPosition(f"{label} has non-finite coordinates ({x}, {y})")
    return x, y


class DispersalModel:
    """Clamped Gaussian dispersal around the parental midpoint.

    Args:
        sd: Per-axis standard deviation of the dispersal offset (>= 0).
    """

    def __init__(self, sd: float):
        sd = float(sd)
        if not (sd >= 0.0 and math.isfinite(sd)):
            raise ValueError(f"dispersal standard deviation must be finite and >= 0, got {sd!r}")
        self.sd = sd

    @staticmethod
    def midpoint(pos1: Point, pos2: Point) -> Point:
        x1, y1 = check_position(pos1, "parent 1")
        x2, y2 = check_position(pos2, "parent 2")
        return (x1 + x2) / 2.0, (y1 + y2) / 2.0

    def place(self, pos1: Point, pos2: Point, rng: RandomContext) -> Point:
        """Offspring position for parents at ``pos1`` and ``pos2``.

        The x offset is drawn before the y offset.
        """
        x, y = self.midpoint(pos1, pos2)
        if self.sd > 0.0:
            x += rng.gaussian(0.0, self.sd)
            y += rng.gaussian(0.0, self.sd)
        return clamp_unit(x), clamp_unit(y)
