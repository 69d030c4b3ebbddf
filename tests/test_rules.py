"""Tests for wflandscape.rules — the spatial mating rule lifecycle.

Covers:
  - Constructor validation and accepted record forms
  - Call-order enforcement (hooks before w)
  - Fitness refresh: wbar, InvalidFitness, context contents, zero-sum warning
  - pick1: uniform under equal fitness (chi-square), proportional otherwise
  - pick2: radius law, two-cluster scenario, radius=0 forced selfing,
    coincident positions, zero-weight neighbourhoods
  - update: midpoint placement with zero dispersal, id counter, slots,
    overfilling
  - complete_generation: arena completeness, promotion to parental
  - Bulk and incremental offspring strategies agree
  - Determinism under a fixed seed; threaded slot mode equals serial
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np
import pytest
from scipy import stats

from wflandscape.errors import ConsistencyViolation, InvalidFitness, InvalidPosition
from wflandscape.rng import RandomContext, slot_context
from wflandscape.rules import GenerationStats, SpatialMatingRules
from wflandscape.types import MatingKind, PositionRecord, records_from_positions


# ─── Helpers ──────────────────────────────────────────────────────────

CLUSTERS = [[0.0, 0.0], [0.0, 0.01], [1.0, 1.0], [1.0, 0.99]]


def unit_fitness(payload, ctx):
    return 1.0


def make_rules(positions, radius=0.1, dispersal=0.0, **kwargs):
    return SpatialMatingRules(records_from_positions(positions), radius, dispersal, **kwargs)


def make_random_positions(n, seed=0):
    return np.random.default_rng(seed).random((n, 2))


def run_generation(rules, rng, fitness_fn=unit_fitness):
    """One full generation; returns the (p1, p2, x, y) tuples."""
    rules.w([None] * rules.n, fitness_fn)
    triples = []
    for _ in range(rules.n):
        p1 = rules.pick1(rng)
        p2 = rules.pick2(rng, p1)
        rec = rules.update(rng, p1, p2)
        triples.append((p1, p2, rec.x, rec.y))
    rules.complete_generation()
    return triples


@dataclass
class Individual:
    x: float
    y: float
    ident: int

    @property
    def position(self):
        return (self.x, self.y)

    @property
    def id(self):
        return self.ident


# ─── Construction ──────────────────────────────────────────────────────

class TestConstruction:
    def test_negative_radius(self):
        with pytest.raises(ValueError, match="radius"):
            make_rules(CLUSTERS, radius=-0.1)

    def test_negative_dispersal(self):
        with pytest.raises(ValueError, match="dispersal"):
            make_rules(CLUSTERS, dispersal=-1.0)

    def test_nan_position(self):
        with pytest.raises(InvalidPosition):
            make_rules([[0.1, 0.2], [np.nan, 0.5]])

    def test_position_outside_square(self):
        with pytest.raises(InvalidPosition, match="outside the unit square"):
            make_rules([[0.1, 0.2], [1.5, 0.5]])

    def test_ids_must_be_dense(self):
        recs = records_from_positions(CLUSTERS)
        recs['id'][3] = 7
        with pytest.raises(ConsistencyViolation):
            SpatialMatingRules(recs, 0.1, 0.0)

    def test_empty_population(self):
        with pytest.raises(ValueError, match="empty"):
            SpatialMatingRules(np.zeros(0, dtype=records_from_positions(CLUSTERS).dtype), 0.1, 0.0)

    def test_unknown_strategy_and_sampler(self):
        with pytest.raises(ValueError, match="offspring_strategy"):
            make_rules(CLUSTERS, offspring_strategy='lazy')
        with pytest.raises(ValueError, match="sampler"):
            make_rules(CLUSTERS, sampler='urn')

    def test_accepts_located_objects_in_any_order(self):
        people = [Individual(1.0, 0.99, 3), Individual(0.0, 0.0, 0),
                  Individual(1.0, 1.0, 2), Individual(0.0, 0.01, 1)]
        rules = SpatialMatingRules(people, 0.1, 0.0)
        rules.w([None] * 4, unit_fitness)
        np.testing.assert_array_equal(rules.parental_records['id'], np.arange(4))
        assert rules.parental_records['y'][1] == 0.01

    def test_accepts_position_records(self):
        rules = SpatialMatingRules([PositionRecord(0.2, 0.3, 0), PositionRecord(0.4, 0.5, 1)],
                                   0.1, 0.0)
        assert rules.n == 2


# ─── Call order ────────────────────────────────────────────────────────

class TestCallOrder:
    def test_pick1_before_w(self):
        rules = make_rules(CLUSTERS)
        with pytest.raises(RuntimeError, match="w\\(\\)"):
            rules.pick1(RandomContext.from_seed(0))

    def test_pick2_and_update_before_w(self):
        rules = make_rules(CLUSTERS)
        rng = RandomContext.from_seed(0)
        with pytest.raises(RuntimeError):
            rules.pick2(rng, 0)
        with pytest.raises(RuntimeError):
            rules.update(rng, 0, 1)


# ─── Fitness refresh ───────────────────────────────────────────────────

class TestFitnessRefresh:
    def test_returns_mean_fitness(self):
        rules = make_rules(CLUSTERS)
        wbar = rules.w([1.0, 2.0, 3.0, 6.0], lambda payload, ctx: payload)
        assert wbar == pytest.approx(3.0)
        np.testing.assert_array_equal(rules.fitness[:4], [1.0, 2.0, 3.0, 6.0])

    @pytest.mark.parametrize("bad", [-0.5, np.nan, np.inf, "abc", None])
    def test_invalid_fitness(self, bad):
        rules = make_rules(CLUSTERS)
        with pytest.raises(InvalidFitness) as excinfo:
            rules.w([1.0, bad, 1.0, 1.0], lambda payload, ctx: payload)
        assert excinfo.value.individual == 1

    def test_invalid_fitness_leaves_rule_unchanged(self):
        rules = make_rules(CLUSTERS)
        with pytest.raises(InvalidFitness):
            rules.w([1.0, 1.0, -1.0, 1.0], lambda payload, ctx: payload)
        assert rules.generation == -1
        with pytest.raises(RuntimeError):
            rules.pick1(RandomContext.from_seed(0))
        assert rules.w([None] * 4, unit_fitness) == 1.0
        assert rules.generation == 0

    def test_context_carries_position_and_generation(self):
        seen = []
        rules = make_rules(CLUSTERS)

        def record(payload, ctx):
            seen.append((ctx.id, ctx.position, ctx.generation))
            return 1.0

        rules.w([None] * 4, record)
        assert seen[1] == (1, (0.0, 0.01), 0)
        assert seen[3] == (3, (1.0, 0.99), 0)

    def test_generation_counter_advances(self):
        rules = make_rules(CLUSTERS)
        rng = RandomContext.from_seed(1)
        run_generation(rules, rng)
        run_generation(rules, rng)
        assert rules.generation == 1
        assert rules.stats.generation == 1

    def test_payload_count_mismatch(self):
        rules = make_rules(CLUSTERS)
        with pytest.raises(ConsistencyViolation, match="3 individuals"):
            rules.w([None] * 3, unit_fitness)

    def test_all_zero_fitness_warns_and_draws_uniformly(self, caplog):
        rules = make_rules(CLUSTERS)
        with caplog.at_level(logging.WARNING, logger="wflandscape.rules"):
            wbar = rules.w([None] * 4, lambda payload, ctx: 0.0)
        assert wbar == 0.0
        assert any("zero fitness" in rec.message for rec in caplog.records)
        rng = RandomContext.from_seed(2)
        picks = {rules.pick1(rng) for _ in range(200)}
        assert picks == {0, 1, 2, 3}

    def test_incomplete_generation_blocks_next_w(self):
        rules = make_rules(CLUSTERS)
        rng = RandomContext.from_seed(3)
        rules.w([None] * 4, unit_fitness)
        rules.update(rng, 0, 1)
        with pytest.raises(ConsistencyViolation, match="1 of 4"):
            rules.w([None] * 4, unit_fitness)


# ─── First parent ──────────────────────────────────────────────────────

class TestPick1:
    def test_uniform_under_equal_fitness(self):
        rules = make_rules([[0.1, 0.1], [0.9, 0.1], [0.1, 0.9], [0.9, 0.9]])
        rules.w([None] * 4, unit_fitness)
        rng = RandomContext.from_seed(4)
        n_draws = 40000
        counts = np.bincount([rules.pick1(rng) for _ in range(n_draws)], minlength=4)
        _, p = stats.chisquare(counts)
        assert p > 0.001

    def test_proportional_to_fitness(self):
        rules = make_rules(CLUSTERS)
        rules.w([0.0, 1.0, 0.0, 3.0], lambda payload, ctx: payload)
        rng = RandomContext.from_seed(5)
        counts = np.bincount([rules.pick1(rng) for _ in range(8000)], minlength=4)
        assert counts[0] == counts[2] == 0
        assert counts[3] / counts[1] == pytest.approx(3.0, rel=0.1)

    @pytest.mark.parametrize("sampler", ['alias', 'cumulative'])
    def test_either_global_sampler(self, sampler):
        rules = make_rules(CLUSTERS, sampler=sampler)
        rules.w([None] * 4, unit_fitness)
        rng = RandomContext.from_seed(6)
        assert {rules.pick1(rng) for _ in range(200)} == {0, 1, 2, 3}


# ─── Second parent ─────────────────────────────────────────────────────

class TestPick2:
    def test_two_cluster_scenario(self):
        rules = make_rules(CLUSTERS, radius=0.1, dispersal=0.0)
        rules.w([None] * 4, unit_fitness)
        rng = RandomContext.from_seed(7)
        for p1 in (0, 1):
            assert {rules.pick2(rng, p1) for _ in range(200)} <= {0, 1}
        for p1 in (2, 3):
            assert {rules.pick2(rng, p1) for _ in range(200)} <= {2, 3}

    def test_two_cluster_offspring_at_midpoint(self):
        rules = make_rules(CLUSTERS, radius=0.1, dispersal=0.0)
        rules.w([None] * 4, unit_fitness)
        rng = RandomContext.from_seed(8)
        for p1 in (0, 1, 2, 3):
            p2 = rules.pick2(rng, p1)
            rec = rules.update(rng, p1, p2)
            x1, y1 = CLUSTERS[p1]
            x2, y2 = CLUSTERS[p2]
            assert (rec.x, rec.y) == pytest.approx(((x1 + x2) / 2, (y1 + y2) / 2))

    @pytest.mark.parametrize("radius", [0.0, 0.02, 0.08, 0.3])
    def test_radius_law(self, radius):
        pos = make_random_positions(150, seed=9)
        rules = make_rules(pos, radius=radius)
        rules.w([None] * 150, unit_fitness)
        rng = RandomContext.from_seed(10)
        for _ in range(600):
            p1 = rules.pick1(rng)
            p2 = rules.pick2(rng, p1)
            assert np.hypot(*(pos[p1] - pos[p2])) <= radius

    def test_radius_zero_forces_selfing(self):
        rules = make_rules(make_random_positions(50, seed=11), radius=0.0)
        rng = RandomContext.from_seed(12)
        run_generation(rules, rng)
        assert rules.stats.n_forced_self == 50
        assert rules.stats.n_outcross == 0
        assert rules.stats.selfing_rate == 1.0

    def test_forced_selfing_consumes_no_randomness(self):
        rules = make_rules(CLUSTERS, radius=0.0)
        rules.w([None] * 4, unit_fitness)
        rng = RandomContext.from_seed(13)
        state = rng.snapshot()
        assert rules.pick2(rng, 2) == 2
        assert rng.snapshot() == state

    def test_coincident_positions_can_outcross(self):
        rules = make_rules([[0.3, 0.3], [0.3, 0.3], [0.8, 0.8]], radius=0.0)
        rules.w([None] * 3, unit_fitness)
        rng = RandomContext.from_seed(14)
        assert {rules.pick2(rng, 0) for _ in range(100)} == {0, 1}
        assert rules.stats.n_outcross > 0
        assert rules.stats.n_chance_self > 0
        assert rules.stats.n_forced_self == 0

    def test_weighted_by_neighbour_fitness(self):
        rules = make_rules([[0.5, 0.5], [0.52, 0.5], [0.5, 0.52]], radius=0.1)
        rules.w([1.0, 0.0, 4.0], lambda payload, ctx: payload)
        rng = RandomContext.from_seed(15)
        counts = np.bincount([rules.pick2(rng, 0) for _ in range(5000)], minlength=3)
        assert counts[1] == 0
        assert counts[2] / counts[0] == pytest.approx(4.0, rel=0.1)

    def test_zero_weight_neighbourhood_falls_back(self, caplog):
        pos = [[0.1, 0.1], [0.12, 0.1], [0.9, 0.9]]
        rules = make_rules(pos, radius=0.1)
        rules.w([None] * 3, lambda payload, ctx: 0.0 if ctx.id < 2 else 1.0)
        rng = RandomContext.from_seed(16)
        assert rules.pick2(rng, 0) in (0, 1)
        assert rules.stats.n_zero_weight_draws == 1
        for p1 in (2, 2, 2):
            rules.update(rng, p1, rules.pick2(rng, p1))
        with caplog.at_level(logging.WARNING, logger="wflandscape.rules"):
            rules.complete_generation()
        assert any("fell back to uniform" in rec.message for rec in caplog.records)

    def test_mating_kinds_tally(self):
        rules = make_rules(make_random_positions(80, seed=17), radius=0.15)
        run_generation(rules, RandomContext.from_seed(18))
        s = rules.stats
        assert s.n_matings == 80
        assert s.n_outcross > 0


# ─── Offspring placement ───────────────────────────────────────────────

class TestUpdate:
    def test_ids_count_up_from_zero(self):
        rules = make_rules(CLUSTERS)
        rules.w([None] * 4, unit_fitness)
        rng = RandomContext.from_seed(19)
        ids = [rules.update(rng, 0, 1).id for _ in range(4)]
        assert ids == [0, 1, 2, 3]

    def test_overfilling_raises(self):
        rules = make_rules(CLUSTERS)
        rules.w([None] * 4, unit_fitness)
        rng = RandomContext.from_seed(20)
        for _ in range(4):
            rules.update(rng, 2, 3)
        with pytest.raises(ConsistencyViolation, match="outside 0..3"):
            rules.update(rng, 2, 3)

    def test_slots(self):
        rules = make_rules(CLUSTERS)
        rules.w([None] * 4, unit_fitness)
        rng = RandomContext.from_seed(21)
        assert rules.update(rng, 0, 0, slot=2).id == 2
        with pytest.raises(ConsistencyViolation, match="already filled"):
            rules.update(rng, 0, 0, slot=2)
        with pytest.raises(ConsistencyViolation):
            rules.update(rng, 0, 0, slot=9)

    def test_clamping_law(self):
        rules = make_rules(CLUSTERS, radius=2.0, dispersal=5.0)
        rng = RandomContext.from_seed(22)
        for _ in range(5):
            for _, _, x, y in run_generation(rules, rng):
                assert 0.0 <= x <= 1.0 and 0.0 <= y <= 1.0

    def test_unknown_parent(self):
        rules = make_rules(CLUSTERS)
        rules.w([None] * 4, unit_fitness)
        with pytest.raises(IndexError):
            rules.update(RandomContext.from_seed(0), 0, 4)


# ─── Generation end ────────────────────────────────────────────────────

class TestCompleteGeneration:
    def test_requires_all_offspring(self):
        rules = make_rules(CLUSTERS)
        rules.w([None] * 4, unit_fitness)
        with pytest.raises(ConsistencyViolation, match="0 of 4"):
            rules.complete_generation()

    def test_arena_complete_and_promoted(self):
        rules = make_rules(make_random_positions(60, seed=23), radius=0.2, dispersal=0.05)
        rng = RandomContext.from_seed(24)
        for _ in range(3):
            rules.w([None] * 60, unit_fitness)
            for _ in range(60):
                p1 = rules.pick1(rng)
                rules.update(rng, p1, rules.pick2(rng, p1))
            offspring = rules.complete_generation()
            np.testing.assert_array_equal(offspring['id'], np.arange(60))
            rules.w([None] * 60, unit_fitness)
            np.testing.assert_array_equal(rules.parental_records, offspring)
            rules.parental.verify_population(offspring)
            # finish the generation opened above
            for _ in range(60):
                p1 = rules.pick1(rng)
                rules.update(rng, p1, rules.pick2(rng, p1))
            rules.complete_generation()

    def test_idempotent(self):
        rules = make_rules(CLUSTERS)
        run_generation(rules, RandomContext.from_seed(25))
        a = rules.complete_generation()
        b = rules.complete_generation()
        np.testing.assert_array_equal(a, b)

    def test_w_completes_implicitly(self):
        rules = make_rules(CLUSTERS, dispersal=0.0)
        rules.w([None] * 4, unit_fitness)
        rng = RandomContext.from_seed(26)
        for p1 in range(4):
            rules.update(rng, p1, p1)
        rules.w([None] * 4, unit_fitness)
        np.testing.assert_allclose(rules.parental_records['y'], [0.0, 0.01, 1.0, 0.99])

    def test_consistency_checking_passes(self):
        rules = make_rules(make_random_positions(40, seed=27), radius=0.2,
                           dispersal=0.1, check_consistency=True)
        rng = RandomContext.from_seed(28)
        for _ in range(4):
            run_generation(rules, rng)


# ─── Strategies & determinism ──────────────────────────────────────────

class TestDeterminism:
    def test_same_seed_same_triples(self):
        pos = make_random_positions(70, seed=29)
        runs = []
        for _ in range(2):
            rules = make_rules(pos, radius=0.1, dispersal=0.03)
            rng = RandomContext.from_seed(30)
            runs.append([run_generation(rules, rng) for _ in range(3)])
        assert runs[0] == runs[1]

    def test_bulk_and_incremental_agree(self):
        pos = make_random_positions(70, seed=31)
        runs = []
        for strategy in ('bulk', 'incremental'):
            rules = make_rules(pos, radius=0.12, dispersal=0.03,
                               offspring_strategy=strategy)
            rng = RandomContext.from_seed(32)
            runs.append([run_generation(rules, rng) for _ in range(4)])
        assert runs[0] == runs[1]

    def test_cell_size_does_not_change_results(self):
        pos = make_random_positions(70, seed=33)
        runs = []
        for cell_size in (None, 0.03, 1.0):
            rules = make_rules(pos, radius=0.12, dispersal=0.03, cell_size=cell_size)
            runs.append(run_generation(rules, RandomContext.from_seed(34)))
        assert runs[0] == runs[1] == runs[2]

    def test_threaded_slots_match_serial(self):
        pos = make_random_positions(120, seed=35)

        def slot_generation(rules, workers):
            rules.w([None] * rules.n, unit_fitness)
            gen = rules.generation

            def one(slot):
                rng = slot_context(99, gen, slot)
                p1 = rules.pick1(rng)
                p2 = rules.pick2(rng, p1)
                rules.update(rng, p1, p2, slot=slot)

            if workers > 1:
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    list(pool.map(one, range(rules.n)))
            else:
                for slot in range(rules.n):
                    one(slot)
            return rules.complete_generation()

        serial = make_rules(pos, radius=0.1, dispersal=0.02)
        threaded = make_rules(pos, radius=0.1, dispersal=0.02)
        for _ in range(3):
            a = slot_generation(serial, 1)
            b = slot_generation(threaded, 4)
            np.testing.assert_array_equal(a, b)
        assert serial.stats == threaded.stats


class TestGenerationStats:
    def test_record_and_rate(self):
        s = GenerationStats()
        for kind in (MatingKind.OUTCROSS, MatingKind.OUTCROSS,
                     MatingKind.CHANCE_SELF, MatingKind.FORCED_SELF):
            s.record(kind)
        assert s.n_matings == 4
        assert s.selfing_rate == 0.5

    def test_empty_rate(self):
        assert GenerationStats().selfing_rate == 0.0
