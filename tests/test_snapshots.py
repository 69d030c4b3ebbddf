"""Tests for wflandscape.snapshots — per-generation position/fitness recording."""

import numpy as np
import pytest

from wflandscape.snapshots import SnapshotRecorder
from wflandscape.types import records_from_positions


def make_records(n=5, seed=0):
    return records_from_positions(np.random.default_rng(seed).random((n, 2)))


class TestSnapshotRecorder:
    def test_disabled_is_noop(self):
        rec = SnapshotRecorder(enabled=False)
        rec.capture(0, make_records(), np.ones(5))
        assert rec.snapshots == {}

    def test_schedule(self):
        rec = SnapshotRecorder(enabled=True, interval=5, start=2, end=20)
        captured = [g for g in range(30) if rec.should_capture(g)]
        assert captured == [2, 7, 12, 17]

    def test_bad_interval(self):
        with pytest.raises(ValueError):
            SnapshotRecorder(enabled=True, interval=0)

    def test_capture_copies(self):
        rec = SnapshotRecorder(enabled=True, interval=1)
        records = make_records()
        fitness = np.arange(5, dtype=float)
        rec.capture(0, records, fitness)
        records['x'][:] = -1.0
        fitness[:] = -1.0
        snap = rec.get_snapshot(0)
        assert np.all(snap.x >= 0.0)
        np.testing.assert_array_equal(snap.fitness, np.arange(5))

    def test_save_and_load(self, tmp_path):
        rec = SnapshotRecorder(enabled=True, interval=2)
        for gen in range(6):
            rec.capture(gen, make_records(seed=gen), np.full(5, float(gen)))
        path = tmp_path / "nested" / "snaps.npz"
        rec.save(str(path))

        loaded = SnapshotRecorder.load(str(path))
        assert loaded.get_generations() == [0, 2, 4]
        for gen in (0, 2, 4):
            a, b = rec.get_snapshot(gen), loaded.get_snapshot(gen)
            np.testing.assert_array_equal(a.x, b.x)
            np.testing.assert_array_equal(a.y, b.y)
            np.testing.assert_array_equal(b.fitness, float(gen))

    def test_save_empty_writes_nothing(self, tmp_path):
        path = tmp_path / "snaps.npz"
        SnapshotRecorder(enabled=True).save(str(path))
        assert not path.exists()
