"""Packed uniform-grid index over (position, id) records.

The unit square is divided into nc × nc cells. Records are stored in one
contiguous array ordered by cell key (cx * nc + cy), with a CSR-style
offsets array, so all cells of one grid column that overlap a query box
form a single slice.

Construction is a bulk pass: bin, count, stable-sort the uint16 cell keys
(numpy runs a radix sort for 16-bit keys, so the pass is linear) and
scatter. Records added with ``insert`` go to per-cell overflow buckets
that queries read alongside the packed slices; ``pack`` folds them in.

Radius queries narrow candidates with the axis-aligned box of side
2·radius, then apply the exact Euclidean test d <= radius, which alone
decides membership. Results are sorted by id so they never depend on how
the index was filled.

Points outside the unit square are binned into the nearest edge cell;
cell indices are clipped monotonically, so box queries stay exact.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from wflandscape.errors import ConsistencyViolation, InvalidPosition
from wflandscape.types import (
    RECORD_DTYPE,
    RecordLike,
    allocate_records,
    as_records,
    check_records_finite,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# GRID RESOLUTION
# ═══════════════════════════════════════════════════════════════════════

MAX_CELLS_PER_AXIS = 256   # 256² keys fit in uint16
TARGET_OCCUPANCY = 4.0     # mean records per cell for automatic sizing


def auto_cell_size(n: int) -> float:
    """Cell side length giving roughly TARGET_OCCUPANCY records per cell."""
    nc = int(math.sqrt(max(n, 1) / TARGET_OCCUPANCY))
    nc = min(max(nc, 1), MAX_CELLS_PER_AXIS)
    return 1.0 / nc


def _cells_per_axis(cell_size: float) -> int:
    if not (cell_size > 0.0 and math.isfinite(cell_size)):
        raise ValueError(f"cell_size must be positive and finite, got {cell_size!r}")
    return min(max(int(math.ceil(1.0 / cell_size - 1e-9)), 1), MAX_CELLS_PER_AXIS)


# ═══════════════════════════════════════════════════════════════════════
# INDEX
# ═══════════════════════════════════════════════════════════════════════

class SpatialIndex:
    """Rebuildable grid index supporting bulk build, insert and range queries.

    Args:
        records: Optional initial contents (anything ``as_records`` accepts).
        cell_size: Cell side length on the unit square. None sizes the
            grid from the number of records at each ``rebuild``.
    """

    def __init__(self, records: Optional[RecordLike] = None,
                 cell_size: Optional[float] = None):
        self._fixed_cell_size = cell_size
        self._nc = _cells_per_axis(cell_size) if cell_size is not None else 1
        self._packed = allocate_records(0)
        self._offsets = np.zeros(self._nc * self._nc + 1, dtype=np.int64)
        self._overflow: Dict[int, List[Tuple[float, float, int]]] = {}
        self._n_overflow = 0
        self._pos_by_id: Dict[int, Tuple[float, float]] = {}
        if records is not None:
            self.rebuild(records)

    # ── Introspection ────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._packed) + self._n_overflow

    @property
    def cells_per_axis(self) -> int:
        return self._nc

    @property
    def cell_size(self) -> float:
        return 1.0 / self._nc

    @property
    def n_overflow(self) -> int:
        """Records inserted since the last bulk build."""
        return self._n_overflow

    def records(self) -> np.ndarray:
        """All contained records, sorted by id."""
        parts = [self._packed]
        if self._n_overflow:
            parts.append(self._overflow_array(list(self._overflow)))
        allrec = np.concatenate(parts) if len(parts) > 1 else self._packed.copy()
        return allrec[np.argsort(allrec['id'], kind='stable')]

    # ── Construction ─────────────────────────────────────────────────

    def _cell_coords(self, x: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        nc = self._nc
        cx = np.clip(np.floor(np.asarray(x) * nc), 0, nc - 1).astype(np.int64)
        cy = np.clip(np.floor(np.asarray(y) * nc), 0, nc - 1).astype(np.int64)
        return cx, cy

    def rebuild(self, records: RecordLike) -> None:
        """Replace all contents with ``records`` in a single bulk pass."""
        recs = as_records(records)
        check_records_finite(recs)
        n = len(recs)

        if self._fixed_cell_size is None:
            self._nc = _cells_per_axis(auto_cell_size(n))
        nc = self._nc

        cx, cy = self._cell_coords(recs['x'], recs['y'])
        keys = (cx * nc + cy).astype(np.uint16 if nc * nc <= 65536 else np.int64)
        counts = np.bincount(keys, minlength=nc * nc)

        offsets = np.zeros(nc * nc + 1, dtype=np.int64)
        np.cumsum(counts, out=offsets[1:])
        order = np.argsort(keys, kind='stable')

        self._packed = recs[order]
        self._offsets = offsets
        self._overflow = {}
        self._n_overflow = 0
        self._pos_by_id = {
            int(i): (float(px), float(py))
            for px, py, i in zip(recs['x'], recs['y'], recs['id'])
        }
        logger.debug("rebuilt index: %d records on a %dx%d grid", n, nc, nc)

    def insert(self, record) -> None:
        """Add one record without rebuilding the packed storage."""
        if isinstance(record, np.void):
            x, y, ident = float(record['x']), float(record['y']), int(record['id'])
        else:
            x, y, ident = (float(v) for v in record)
            ident = int(ident)
        if not (math.isfinite(x) and math.isfinite(y)):
            raise InvalidPosition(f"cannot insert non-finite position ({x}, {y}) for id {ident}")
        cx, cy = self._cell_coords(x, y)
        key = int(cx) * self._nc + int(cy)
        self._overflow.setdefault(key, []).append((x, y, ident))
        self._n_overflow += 1
        self._pos_by_id[ident] = (x, y)

    def pack(self) -> None:
        """Fold overflow buckets into the packed array."""
        if self._n_overflow:
            self.rebuild(self.records())

    # ── Queries ──────────────────────────────────────────────────────

    def position_of(self, ident: int) -> Tuple[float, float]:
        """Position of the record with the given id.

        Raises:
            KeyError: If no record has that id.
        """
        try:
            return self._pos_by_id[int(ident)]
        except KeyError:
            raise KeyError(f"id {ident} is not in the index") from None

    def _overflow_array(self, keys: Sequence[int]) -> np.ndarray:
        rows = [row for k in keys for row in self._overflow.get(k, ())]
        if not rows:
            return allocate_records(0)
        return np.array(rows, dtype=RECORD_DTYPE)

    def _box_candidates(self, xlo: float, ylo: float, xhi: float, yhi: float) -> np.ndarray:
        nc = self._nc
        cx0, cy0 = self._cell_coords(xlo, ylo)
        cx1, cy1 = self._cell_coords(xhi, yhi)
        cx0, cy0, cx1, cy1 = int(cx0), int(cy0), int(cx1), int(cy1)

        parts = []
        for cx in range(cx0, cx1 + 1):
            start = self._offsets[cx * nc + cy0]
            stop = self._offsets[cx * nc + cy1 + 1]
            if stop > start:
                parts.append(self._packed[start:stop])
        if self._n_overflow:
            keys = [cx * nc + cy
                    for cx in range(cx0, cx1 + 1)
                    for cy in range(cy0, cy1 + 1)]
            extra = self._overflow_array(keys)
            if len(extra):
                parts.append(extra)

        if not parts:
            return allocate_records(0)
        cand = np.concatenate(parts) if len(parts) > 1 else parts[0]
        inside = ((cand['x'] >= xlo) & (cand['x'] <= xhi)
                  & (cand['y'] >= ylo) & (cand['y'] <= yhi))
        return cand[inside]

    def query_box(self, lo: Tuple[float, float], hi: Tuple[float, float]) -> np.ndarray:
        """Records inside the closed box [lo, hi], sorted by id."""
        xlo, ylo = float(lo[0]), float(lo[1])
        xhi, yhi = float(hi[0]), float(hi[1])
        if not all(math.isfinite(v) for v in (xlo, ylo, xhi, yhi)):
            raise InvalidPosition(f"box corners must be finite, got {lo}, {hi}")
        if xlo > xhi or ylo > yhi:
            return allocate_records(0)
        hits = self._box_candidates(xlo, ylo, xhi, yhi)
        return hits[np.argsort(hits['id'], kind='stable')]

    def query_radius(self, center: Tuple[float, float], radius: float) -> np.ndarray:
        """Records whose Euclidean distance to ``center`` is <= ``radius``.

        Returns:
            RECORD_DTYPE array sorted by id. A query centred on a
            contained point always includes that point.
        """
        cxf, cyf = float(center[0]), float(center[1])
        if not (math.isfinite(cxf) and math.isfinite(cyf)):
            raise InvalidPosition(f"query centre must be finite, got {center}")
        radius = float(radius)
        if not radius >= 0.0:
            raise ValueError(f"radius must be non-negative, got {radius!r}")

        # Box corners round independently of the offsets below; pad by a few
        # ulps so the pre-filter never drops a point the distance test keeps.
        pad = (np.nextafter(radius, np.inf)
               + 4 * np.finfo(np.float64).eps * max(1.0, abs(cxf), abs(cyf)))
        cand = self._box_candidates(cxf - pad, cyf - pad, cxf + pad, cyf + pad)
        dist = np.hypot(cand['x'] - cxf, cand['y'] - cyf)
        hits = cand[dist <= radius]
        return hits[np.argsort(hits['id'], kind='stable')]

    # ── Consistency ──────────────────────────────────────────────────

    def verify_population(self, expected: RecordLike) -> None:
        """Check every expected record is present exactly once, in place.

        Raises:
            ConsistencyViolation: On a missing, duplicated, extra or
                displaced record.
        """
        exp = as_records(expected)
        if len(self) != len(exp):
            raise ConsistencyViolation(
                f"index holds {len(self)} records, population has {len(exp)}"
            )
        ids = self.records()['id']
        dup = ids[1:][ids[1:] == ids[:-1]]
        if len(dup):
            raise ConsistencyViolation(f"id {int(dup[0])} appears more than once in the index")
        for x, y, ident in zip(exp['x'], exp['y'], exp['id']):
            try:
                px, py = self.position_of(int(ident))
            except KeyError:
                raise ConsistencyViolation(f"individual {int(ident)} is missing from the index") from None
            if px != x or py != y:
                raise ConsistencyViolation(
                    f"individual {int(ident)} is indexed at ({px}, {py}), "
                    f"expected ({x}, {y})"
                )
