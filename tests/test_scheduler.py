"""Tests for evoibs.scheduler — stepping, clocks, species coordination."""

import warnings

import numpy as np
import pytest

from evoibs.config import config_from_dict
from evoibs.perf import PerfMonitor
from evoibs.scheduler import RunResult, Simulation, run_simulation
from evoibs.snapshots import TrajectoryRecorder
from evoibs.types import ConfigurationError, Event, PopulationUpdateType, SpeciesUpdateType

SNOWDRIFT = [[0.7, 0.4], [1.0, 0.0]]


def _species(**kwargs):
    entry = {'size': 50}
    entry.update(kwargs)
    return entry


def _config(species, **simulation):
    return config_from_dict({'simulation': simulation, 'species': species})


def _simulation(species, perf=None, **simulation):
    return Simulation.from_config(_config(species, **simulation), perf=perf)


def _empty_species(name):
    """Ecological species whose slots are all vacant."""
    return _species(name=name, traits=['a', 'x'], static_scores=[1.0, 0.0], vacant=1,
                    init='mono', init_args=[1], population_update='ecology')


# ── convergence and halting ──────────────────────────────────────────

class TestConvergence:
    def test_identical_population_converged_on_first_step(self):
        sim = _simulation([_species(size=100, init='mono', init_args=[0])])
        elapsed = sim.step()
        assert elapsed < 0
        assert -elapsed == pytest.approx(sim.slack)
        assert sim.step() < 0
        assert sim.time == 0.0

    def test_neutral_drift_absorbs(self):
        sim = _simulation([_species(size=20)], seed=3)
        elapsed = 1.0
        for _ in range(1000):
            elapsed = sim.step(10.0)
            if elapsed <= 0.0:
                break
        assert elapsed < 0
        assert -elapsed >= sim.slack
        assert sim.converged
        assert sim.populations[0].is_monomorphic()

    def test_mutation_prevents_convergence(self):
        sim = _simulation([_species(init='mono', init_args=[0], mutation_probability=0.01)])
        assert sim.step(2.0) > 0

    def test_halting_time(self):
        sim = _simulation([_species(mutation_probability=0.01)], max_time=5.0)
        elapsed = sim.step(100.0)
        assert elapsed == pytest.approx(5.0, abs=sim.slack)
        assert sim.step() == 0.0
        assert sim.time <= 5.0 + 1e-9


# ── clocks ───────────────────────────────────────────────────────────

class TestClocks:
    def test_async_time_per_event(self):
        sim = _simulation([_species(mutation_probability=0.01)])
        sim.step(1.0)
        assert sim.time == pytest.approx(sim.n_events / 50)

    def test_rate_weighted_time_increment(self):
        sim = _simulation([_species(size=30, mutation_probability=0.01),
                           _species(size=70, update_rate=2.0, mutation_probability=0.01)])
        assert sim._time_increment() == pytest.approx(1.0 / (30 + 140))
        assert sim.slack == pytest.approx(0.01)

    def test_realtime_tracks_total_fitness(self):
        # every slot has fitness 1: one unit of realtime per generation
        sim = _simulation([_species(mutation_probability=0.01)])
        sim.step(100.0)
        assert np.isfinite(sim.realtime)
        assert sim.realtime == pytest.approx(sim.time, rel=0.05)

    def test_realtime_undefined_for_negative_fitness(self):
        sim = _simulation([_species(payoffs=[[1.0, -1.0], [0.0, 0.0]],
                                    mutation_probability=0.01)])
        sim.step(1.0)
        assert sim.realtime == np.inf

    def test_sync_generation_per_sweep(self):
        sim = _simulation([_species(size=25, geometry='square', payoffs=SNOWDRIFT,
                                    population_update='sync', mutation_probability=0.01)])
        assert sim.is_sync
        elapsed = sim.step(10.0)
        assert elapsed == pytest.approx(10.0)
        assert sim.n_events == 250
        assert sim.event_counts[Event.REPLICATION] == 250
        assert sim.check_consistency() == []

    def test_partial_sweep_advances_by_fraction(self):
        sim = _simulation([_species(size=20, geometry='ring', payoffs=SNOWDRIFT,
                                    population_update='sync', sync_fraction=0.25,
                                    mutation_probability=0.01)])
        # five of twenty slots per sweep
        assert sim._step_increment() == pytest.approx(0.25)
        elapsed = sim.step(1.0)
        assert elapsed == pytest.approx(1.0)
        assert sim.n_events == 20

    def test_step_ends_within_half_an_event(self):
        sim = _simulation([_species(size=3, mutation_probability=0.1)])
        # a second event would overshoot by more than the remainder
        assert sim.step(0.4) == pytest.approx(1.0 / 3.0)
        assert sim.n_events == 1
        other = _simulation([_species(size=3, mutation_probability=0.1)])
        assert other.step(0.6) == pytest.approx(2.0 / 3.0)
        assert other.n_events == 2

    def test_short_step_runs_one_event(self):
        sim = _simulation([_species(mutation_probability=0.01)])
        assert sim.step(0.001) == pytest.approx(1.0 / 50)
        assert sim.n_events == 1
        sync = _simulation([_species(size=25, geometry='square', population_update='sync',
                                     mutation_probability=0.01)])
        assert sync.step(0.1) == pytest.approx(1.0)
        assert sync.n_events == 25

    @pytest.mark.parametrize("dt", [0.0, -1.0])
    def test_non_positive_step_rejected(self, dt):
        sim = _simulation([_species(mutation_probability=0.01)])
        with pytest.raises(ValueError, match="must be positive"):
            sim.step(dt)


# ── event selection ──────────────────────────────────────────────────

class TestEvents:
    def test_no_migration_without_probability(self):
        sim = _simulation([_species(size=100, geometry='square', migration='diffusion',
                                    migration_probability=0.0, mutation_probability=0.01)])
        sim.step(100.0)
        assert sim.n_events == pytest.approx(10000, abs=1)
        assert sim.populations[0].migration_events == 0
        assert sim.event_counts[Event.MIGRATION] == 0

    def test_migration_events_counted(self):
        sim = _simulation([_species(size=100, geometry='square', migration='diffusion',
                                    migration_probability=0.2, mutation_probability=0.01)])
        sim.step(20.0)
        n_mig = sim.event_counts[Event.MIGRATION]
        assert n_mig == sim.populations[0].migration_events
        assert n_mig / sim.n_events == pytest.approx(0.2, abs=0.03)

    def test_separate_mutation_events(self):
        sim = _simulation([_species(mutation_probability=0.1, mutation_temperature=False)])
        sim.step(40.0)
        frac = sim.event_counts[Event.MUTATION] / sim.n_events
        assert frac == pytest.approx(0.1, abs=0.03)

    def test_sync_separate_mutations(self):
        sim = _simulation([_species(size=25, geometry='square', population_update='sync',
                                    mutation_probability=0.2, mutation_temperature=False)])
        sim.step(10.0)
        assert sim.event_counts[Event.MUTATION] > 0
        assert sim.check_consistency() == []

    def test_mixed_disciplines_forced_sync(self):
        with pytest.warns(UserWarning, match="forcing synchronous"):
            sim = _simulation([_species(name='a', population_update='sync'),
                               _species(name='b', population_update='async')])
        assert sim.is_sync
        assert all(p.population_update == PopulationUpdateType.SYNC for p in sim.populations)


# ── species coordinator ──────────────────────────────────────────────

def _pick_fraction(sim, n=20000):
    first = sim.populations[0]
    return sum(sim.pick_species() is first for _ in range(n)) / n


class TestSpeciesSelection:
    def test_size_weighted(self):
        sim = _simulation([_species(size=30), _species(size=70)])
        assert _pick_fraction(sim) == pytest.approx(0.3, abs=0.015)

    def test_rate_weighted(self):
        sim = _simulation([_species(size=30), _species(size=70, update_rate=3.0)],
                          species_update='rate')
        assert _pick_fraction(sim) == pytest.approx(0.25, abs=0.015)

    def test_uniform(self):
        sim = _simulation([_species(size=30), _species(size=70)], species_update='uniform')
        assert _pick_fraction(sim) == pytest.approx(0.5, abs=0.015)

    def test_fitness_weighted(self):
        sim = _simulation([_species(static_scores=[2.0, 2.0]),
                           _species(static_scores=[1.0, 1.0])],
                          species_update='fitness')
        assert sim.species_update == SpeciesUpdateType.FITNESS
        assert _pick_fraction(sim) == pytest.approx(2.0 / 3.0, abs=0.015)

    def test_fitness_falls_back_to_rate(self):
        sim = _simulation([_species(size=30, payoffs=SNOWDRIFT),
                           _species(size=70, update_rate=3.0)],
                          species_update='fitness')
        with pytest.warns(UserWarning, match="falling back to rate-based"):
            sim.pick_species()
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            assert _pick_fraction(sim) == pytest.approx(0.25, abs=0.015)

    def test_turns(self):
        sim = _simulation([_species(), _species(), _species()], species_update='turns')
        picks = [sim.populations.index(sim.pick_species()) for _ in range(6)]
        assert picks == [0, 1, 2, 0, 1, 2]

    def test_empty_species_never_picked(self):
        for scheme in ('size', 'rate', 'turns', 'uniform'):
            sim = _simulation([_empty_species('empty'), _species(name='full')],
                              species_update=scheme)
            assert _pick_fraction(sim, n=200) == 0.0

    def test_all_empty(self):
        sim = _simulation([_empty_species('a'), _empty_species('b')], species_update='turns')
        assert sim.pick_species() is None
        assert sim.check_convergence()

    def test_multi_species_status(self):
        sim = _simulation([_species(name='hosts', init='mono', init_args=[0]),
                           _species(name='guests', init='mono', init_args=[1])])
        assert sim.get_status() == ("hosts: A: 100.00%, B: 0.00%; "
                                    "guests: A: 0.00%, B: 100.00%")
        np.testing.assert_allclose(sim.get_mean_trait(species=1), [0.0, 1.0])

    def test_multi_species_run(self):
        sim = _simulation([_species(name='a', geometry='ring', payoffs=SNOWDRIFT,
                                    mutation_probability=0.01),
                           _species(name='b', size=25, geometry='square',
                                    mutation_probability=0.01)])
        sim.step(20.0)
        assert sim.check_consistency() == []
        assert sim.event_counts[Event.REPLICATION] == sim.n_events


# ── reproducibility ──────────────────────────────────────────────────

def _ring_species():
    return _species(size=60, geometry='ring', payoffs=SNOWDRIFT, player_update='thermal',
                    noise=0.1, scoring='reset_always', mutation_probability=0.001)


def _event_log(seed, n_events=10000):
    """Focal slot and committed trait changes of every replication event."""
    sim = _simulation([_ring_species()], seed=seed)
    pop = sim.populations[0]
    replicate = pop.replicate
    log = []

    def recording_replicate():
        before = pop.traits.copy()
        me = replicate()
        changed = np.flatnonzero(pop.traits != before)
        log.append((me, tuple(changed.tolist()), tuple(pop.traits[changed].tolist())))
        return me

    pop.replicate = recording_replicate
    while sim.n_events < n_events:
        sim.async_event()
    return log


class TestDeterminism:
    def test_same_seed_same_run(self):
        runs = []
        for _ in range(2):
            sim = _simulation([_ring_species()], seed=7, optimize_homo=True)
            sim.step(200.0)
            runs.append(sim)
        a, b = runs
        assert a.n_events >= 10000
        assert a.n_events == b.n_events
        assert a.time == b.time
        assert a.realtime == b.realtime
        np.testing.assert_array_equal(a.populations[0].traits, b.populations[0].traits)
        np.testing.assert_array_equal(a.populations[0].ledger.scores,
                                      b.populations[0].ledger.scores)

    def test_reset_replays(self):
        sim = _simulation([_ring_species()], seed=8)
        sim.step(50.0)
        traits = sim.populations[0].traits.copy()
        time, realtime = sim.time, sim.realtime
        sim.reset()
        sim.init()
        sim.step(50.0)
        np.testing.assert_array_equal(sim.populations[0].traits, traits)
        assert sim.time == time
        assert sim.realtime == realtime

    def test_different_seeds_differ(self):
        a = _simulation([_ring_species()], seed=1)
        b = _simulation([_ring_species()], seed=2)
        assert not np.array_equal(a.populations[0].traits, b.populations[0].traits)

    def test_same_seed_same_event_sequence(self):
        first = _event_log(seed=9)
        assert len(first) == 10000
        assert any(changed for _, changed, _ in first)
        assert _event_log(seed=9) == first
        assert _event_log(seed=10) != first


class TestState:
    def test_resume_from_state(self):
        sim = _simulation([_species(size=25, geometry='square', payoffs=SNOWDRIFT,
                                    mutation_probability=0.01)], seed=5)
        sim.step(5.0)
        state = sim.get_state()
        sim.step(5.0)
        traits = sim.populations[0].traits.copy()
        time, realtime, n_events = sim.time, sim.realtime, sim.n_events

        sim.set_state(state)
        assert sim.time == state.time
        sim.step(5.0)
        np.testing.assert_array_equal(sim.populations[0].traits, traits)
        assert (sim.time, sim.realtime, sim.n_events) == (time, realtime, n_events)

    def test_resume_mid_once_pass(self):
        sim = _simulation([_species(size=10, geometry='ring', payoffs=SNOWDRIFT,
                                    population_update='once', mutation_probability=0.05)],
                          seed=6)
        sim.step(0.5)
        state = sim.get_state()
        assert len(state.populations[0].remain) == 5
        log = []
        for _ in range(3):
            sim.step(1.0)
            log.append(sim.populations[0].traits.copy())

        sim.set_state(state)
        for expected in log:
            sim.step(1.0)
            np.testing.assert_array_equal(sim.populations[0].traits, expected)

    def test_state_needs_every_species(self):
        sim = _simulation([_species(name='a'), _species(name='b')])
        other = _simulation([_species(name='a')])
        with pytest.raises(ValueError, match=r"\['b'\]"):
            sim.set_state(other.get_state())


# ── interacting species ──────────────────────────────────────────────

HOST_PAYOFFS = [[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]]
PARASITE_PAYOFFS = [[0.5, 1.5], [2.5, 3.5], [4.5, 5.5]]


def _host(**kwargs):
    return _species(name='host', traits=['h0', 'h1'], payoffs=HOST_PAYOFFS,
                    opponent='parasite', **kwargs)


def _parasite(**kwargs):
    return _species(name='parasite', traits=['p0', 'p1', 'p2'], payoffs=PARASITE_PAYOFFS,
                    opponent='host', **kwargs)


class TestInteractingSpecies:
    def test_opponents_linked(self):
        sim = _simulation([_host(size=10), _parasite(size=6)])
        host, parasite = sim.populations
        assert host.opponent is parasite
        assert parasite.opponent is host
        assert host.coupled and parasite.coupled

    def test_initial_scores_from_both_sides(self):
        sim = _simulation([_host(size=10, init='mono', init_args=[0]),
                           _parasite(size=6, init='mono', init_args=[2])])
        host, parasite = sim.populations
        # every host meets all six parasites twice: once per side
        np.testing.assert_allclose(host.ledger.scores, 3.0)
        np.testing.assert_array_equal(host.ledger.interactions, [12] * 10)
        np.testing.assert_allclose(parasite.ledger.scores, 4.5)
        np.testing.assert_array_equal(parasite.ledger.interactions, [20] * 6)
        assert sim.check_consistency() == []

    def test_async_run_keeps_accounting(self):
        sim = _simulation([_host(size=20, geometry='ring', mutation_probability=0.02),
                           _parasite(size=20, geometry='ring', mutation_probability=0.02)],
                          seed=12)
        sim.step(10.0)
        assert sim.check_consistency() == []
        sim.update_scores()
        assert sim.check_consistency() == []

    def test_sync_run_rescored_together(self):
        sim = _simulation([_host(size=25, geometry='square', population_update='sync',
                                 mutation_probability=0.02),
                           _parasite(size=25, geometry='square', population_update='sync',
                                     mutation_probability=0.02)],
                          seed=13)
        sim.step(5.0)
        host, parasite = sim.populations
        # four neighbours plus the same slot, from both sides
        np.testing.assert_array_equal(host.ledger.interactions, [10] * 25)
        np.testing.assert_array_equal(parasite.ledger.interactions, [10] * 25)
        assert sim.check_consistency() == []

    def test_partner_matrix_must_match(self):
        # parasites playing among themselves cannot be credited against hosts
        lonely = _species(name='parasite', traits=['p0', 'p1', 'p2'], size=6,
                          payoffs=np.ones((3, 3)).tolist())
        with pytest.raises(ConfigurationError, match="same interaction"):
            _simulation([_host(size=10), lonely])


# ── homogeneous-state skipping ───────────────────────────────────────

class TestOptimizeHomo:
    def test_skips_monomorphic_states(self):
        perf = PerfMonitor(enabled=True)
        sim = _simulation([_species(size=100, init='mono', init_args=[0],
                                    mutation_probability=0.0005)],
                          perf=perf, optimize_homo=True, seed=4)
        elapsed = sim.step(100.0)
        assert elapsed == pytest.approx(100.0, abs=sim.slack)
        assert perf.get_stats()['homo_skips'].calls > 0
        assert sim.n_events == pytest.approx(10000, abs=2)
        assert sim.check_consistency() == []

    def test_skip_lands_on_target(self):
        sim = _simulation([_species(size=100, init='mono', init_args=[0],
                                    mutation_probability=1e-9)],
                          optimize_homo=True)
        assert sim.step(7.0) == pytest.approx(7.0)
        assert sim.event_counts[Event.MUTATION] == 0

    def test_disabled_for_ecology(self):
        with pytest.warns(UserWarning, match="optimization disabled"):
            sim = _simulation([_species(traits=['a', 'x'], static_scores=[1.0, 0.0], vacant=1,
                                        population_update='ecology',
                                        mutation_probability=0.01)],
                              optimize_homo=True)
        assert not sim.optimize_homo


# ── batch run ────────────────────────────────────────────────────────

class TestRunSimulation:
    def test_runs_to_halting_time(self):
        config = _config([_species(mutation_probability=0.01)], max_time=10.0, monitor_perf=True)
        recorder = TrajectoryRecorder()
        result = run_simulation(config, recorder=recorder)
        assert isinstance(result, RunResult)
        assert result.final_time == pytest.approx(10.0, abs=0.05)
        assert not result.converged
        assert result.n_events > 0
        assert 'wall_s' in result.timings
        assert 'async_events' in result.timings
        assert 'species:' in result.config_yaml
        assert len(recorder) >= 11
        assert result.mean_traits.shape == (len(recorder), 2)
        np.testing.assert_allclose(result.mean_traits.sum(axis=1), 1.0)

    def test_stops_on_convergence(self):
        config = _config([_species(size=20)], max_time=10000.0, seed=3)
        result = run_simulation(config)
        assert result.converged
        assert result.final_time < 10000.0
        assert result.times is None

    def test_requires_max_time(self):
        with pytest.raises(ValueError, match="max_time"):
            run_simulation(_config([_species()]))
