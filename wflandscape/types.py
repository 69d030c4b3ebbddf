"""Core data types for wflandscape.

This module is the single source of truth for:
  - RECORD_DTYPE: NumPy structured dtype for (x, y, id) position records
  - PositionRecord: scalar view of one record
  - Located: structural contract for anything the rule can place in space
  - MatingKind: how a second parent was obtained
  - FitnessContext: what the fitness function is told about an individual

Positions live on the unit square [0, 1] x [0, 1]. Ids are dense
(0..N-1) and unique within a generation.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, NamedTuple, Protocol, Tuple, Union, runtime_checkable

import numpy as np

from wflandscape.errors import InvalidPosition


# ═══════════════════════════════════════════════════════════════════════
# DOMAIN
# ═══════════════════════════════════════════════════════════════════════

DOMAIN_MIN = 0.0
DOMAIN_MAX = 1.0


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class MatingKind(IntEnum):
    """Outcome of a second-parent pick.

    FORCED_SELF is only produced when parent 1 is alone within the mating
    radius; CHANCE_SELF is a weighted draw that happened to return
    parent 1 from a neighbourhood that had other candidates.
    """
    OUTCROSS    = 0
    CHANCE_SELF = 1
    FORCED_SELF = 2


# ═══════════════════════════════════════════════════════════════════════
# RECORD_DTYPE: canonical (position, id) storage
# ═══════════════════════════════════════════════════════════════════════

RECORD_DTYPE = np.dtype([
    ('x',  np.float64),   # position on the unit square
    ('y',  np.float64),
    ('id', np.int64),     # index into the generation's population
])


class PositionRecord(NamedTuple):
    """One (position, id) pair."""
    x: float
    y: float
    id: int

    @property
    def position(self) -> Tuple[float, float]:
        return (self.x, self.y)


@runtime_checkable
class Located(Protocol):
    """Anything exposing a 2-D ``position`` and an integer ``id``.

    Engine-side individual types satisfy this structurally; no base class
    or marker type is required.
    """

    @property
    def position(self) -> Tuple[float, float]: ...

    @property
    def id(self) -> int: ...


@dataclass(frozen=True)
class FitnessContext:
    """Per-individual context handed to the fitness function."""
    id: int
    x: float
    y: float
    generation: int

    @property
    def position(self) -> Tuple[float, float]:
        return (self.x, self.y)


RecordLike = Union[np.ndarray, Iterable]


def allocate_records(n: int) -> np.ndarray:
    """Allocate a zeroed record array of length n."""
    return np.zeros(n, dtype=RECORD_DTYPE)


def records_from_positions(xy: np.ndarray) -> np.ndarray:
    """Build records from an (n, 2) coordinate array; ids are 0..n-1."""
    xy = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
    records = allocate_records(len(xy))
    records['x'] = xy[:, 0]
    records['y'] = xy[:, 1]
    records['id'] = np.arange(len(xy))
    return records


def as_records(items: RecordLike) -> np.ndarray:
    """Coerce records, Located objects or (x, y, id) tuples to RECORD_DTYPE.

    A structured array that already has RECORD_DTYPE is returned as-is
    (no copy); everything else is copied into a fresh array.
    """
    if isinstance(items, np.ndarray) and items.dtype == RECORD_DTYPE:
        return items

    rows = []
    for item in items:
        if isinstance(item, Located) and not isinstance(item, tuple):
            x, y = item.position
            rows.append((float(x), float(y), int(item.id)))
        else:
            x, y, ident = item
            rows.append((float(x), float(y), int(ident)))
    return np.array(rows, dtype=RECORD_DTYPE)


def check_records_finite(records: np.ndarray) -> None:
    """Raise InvalidPosition if any coordinate is NaN or infinite."""
    bad = ~(np.isfinite(records['x']) & np.isfinite(records['y']))
    if bad.any():
        first = int(records['id'][np.argmax(bad)])
        raise InvalidPosition(
            f"{int(bad.sum())} record(s) have non-finite coordinates "
            f"(first: id {first})"
        )
