"""Optional per-generation snapshot recording.

Records (x, y, fitness) for every individual at configurable generation
intervals, for landscape animations and post-hoc spatial statistics.

Usage:
    recorder = SnapshotRecorder(enabled=True, interval=10)

    # In the generation loop (after w() has cached fitness):
    recorder.capture(generation, rules.parental_records, rules.fitness[:n])

    # After simulation:
    recorder.save("snapshots.npz")
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np


@dataclass
class GenerationSnapshot:
    """Positions and fitness of the whole population at one generation."""
    generation: int
    # Parallel arrays, ordered by id
    x: np.ndarray           # float64
    y: np.ndarray           # float64
    fitness: np.ndarray     # float64

    @property
    def n(self) -> int:
        return len(self.x)


class SnapshotRecorder:
    """Records population snapshots every ``interval`` generations.

    When enabled=False, all methods are no-ops.
    """

    def __init__(
        self,
        enabled: bool = False,
        interval: int = 10,
        start: int = 0,
        end: Optional[int] = None,
    ):
        """
        Args:
            enabled: Master switch. False = no-ops everywhere.
            interval: Capture every N generations.
            start: First generation to record.
            end: Last generation to record (None = no limit).
        """
        if interval < 1:
            raise ValueError(f"interval must be >= 1, got {interval}")
        self.enabled = enabled
        self.interval = interval
        self.start = start
        self.end = end
        self.snapshots: Dict[int, GenerationSnapshot] = {}

    def should_capture(self, generation: int) -> bool:
        if not self.enabled:
            return False
        if generation < self.start or (self.end is not None and generation > self.end):
            return False
        return (generation - self.start) % self.interval == 0

    def capture(self, generation: int, records: np.ndarray, fitness: np.ndarray) -> None:
        """Store a snapshot if ``generation`` falls on the recording schedule.

        Args:
            generation: Generation index.
            records: RECORD_DTYPE array ordered by id.
            fitness: (N,) fitness values, same order.
        """
        if not self.should_capture(generation):
            return
        self.snapshots[generation] = GenerationSnapshot(
            generation=generation,
            x=records['x'].copy(),
            y=records['y'].copy(),
            fitness=np.asarray(fitness, dtype=np.float64).copy(),
        )

    def get_generations(self) -> List[int]:
        return sorted(self.snapshots)

    def get_snapshot(self, generation: int) -> Optional[GenerationSnapshot]:
        return self.snapshots.get(generation)

    def save(self, path: str) -> None:
        """Save all snapshots to a compressed npz file.

        Arrays are named g{generation}_x, g{generation}_y, g{generation}_w,
        plus a ``meta_generations`` index.
        """
        if not self.snapshots:
            return
        arrays = {}
        for gen, snap in sorted(self.snapshots.items()):
            arrays[f"g{gen}_x"] = snap.x
            arrays[f"g{gen}_y"] = snap.y
            arrays[f"g{gen}_w"] = snap.fitness
        arrays['meta_generations'] = np.array(sorted(self.snapshots), dtype=np.int64)

        Path(path).parent.mkdir(parents=True, exist_ok=True)
        np.savez_compressed(path, **arrays)

    @classmethod
    def load(cls, path: str) -> 'SnapshotRecorder':
        """Load snapshots from an npz file."""
        recorder = cls(enabled=False)
        with np.load(path) as data:
            for gen in data['meta_generations']:
                g = int(gen)
                recorder.snapshots[g] = GenerationSnapshot(
                    generation=g,
                    x=data[f"g{g}_x"],
                    y=data[f"g{g}_y"],
                    fitness=data[f"g{g}_w"],
                )
        return recorder
