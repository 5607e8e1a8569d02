"""Tests for evoibs.continuous — real-valued traits and the continuous snowdrift."""

import numpy as np
import pytest

from evoibs.config import config_from_dict
from evoibs.continuous import ContinuousPopulation
from evoibs.network import ring, square_lattice, well_mixed
from evoibs.population import DiscretePopulation, build_population
from evoibs.rng import create_rng
from evoibs.traits import ContinuousSnowdrift, MatrixGame
from evoibs.types import ConfigurationError, InitType, PlayerUpdateType, ScoringType
from evoibs.update_rules import PlayerUpdate


def _make_population(model=None, network=None, seed=0, **kwargs):
    """Build, check, reset and initialise a continuous population."""
    pop = ContinuousPopulation(
        'investors',
        model if model is not None else ContinuousSnowdrift(),
        network if network is not None else ring(10),
        create_rng(seed),
        **kwargs,
    )
    pop.check()
    pop.reset()
    pop.init()
    return pop


def _set_traits(pop, traits):
    pop.traits[:] = np.asarray(traits, dtype=np.float64).reshape(pop.traits.shape)
    pop.traits_next[:] = pop.traits
    pop.update_scores()


class TestInit:
    def test_uniform_within_bounds(self):
        pop = _make_population(network=well_mixed(200))
        assert pop.traits.shape == (200, 1)
        assert pop.traits.min() >= 0.0
        assert pop.traits.max() <= 1.0
        assert pop.traits.std() > 0.1

    def test_mono(self):
        pop = _make_population(init_type=InitType.MONO, init_args=[0.3])
        np.testing.assert_allclose(pop.traits, 0.3)
        assert pop.is_monomorphic()

    def test_mono_outside_bounds(self):
        with pytest.raises(ConfigurationError, match="outside"):
            _make_population(init_type=InitType.MONO, init_args=[1.5])

    def test_mutant(self):
        pop = _make_population(init_type=InitType.MUTANT, init_args=[0.2, 0.6])
        assert np.sum(np.isclose(pop.traits[:, 0], 0.2)) == 9
        assert np.sum(np.isclose(pop.traits[:, 0], 0.6)) == 1

    def test_gaussian_clipped(self):
        pop = _make_population(network=well_mixed(500), init_type=InitType.GAUSSIAN,
                               init_args=[0.1, 0.2])
        assert pop.traits.min() == 0.0
        # mean of N(0.1, 0.2) clipped at zero
        assert pop.traits.mean() == pytest.approx(0.14, abs=0.03)

    def test_frequencies_rejected(self):
        with pytest.raises(ConfigurationError, match="discrete traits"):
            _make_population(init_type=InitType.FREQUENCY, init_args=[0.5])

    def test_several_dimensions(self):
        model = ContinuousSnowdrift(['x', 'y'], trait_max=[1.0, 2.0])
        pop = _make_population(model=model, init_type=InitType.MONO, init_args=[0.5, 1.5])
        assert pop.traits.shape == (10, 2)
        np.testing.assert_allclose(pop.traits[4], [0.5, 1.5])


class TestCheck:
    def test_best_response_rejected(self):
        with pytest.raises(ConfigurationError, match="best-response"):
            _make_population(player_update=PlayerUpdate(PlayerUpdateType.BEST_RESPONSE))

    def test_no_other_species(self):
        pop = ContinuousPopulation('a', ContinuousSnowdrift(), ring(10), create_rng(0))
        other = ContinuousPopulation('b', ContinuousSnowdrift(), ring(10), create_rng(0))
        pop.set_opponent(other)
        with pytest.raises(ConfigurationError, match="within the species"):
            pop.check()

    def test_discrete_species_rejects_continuous_opponent(self):
        pop = DiscretePopulation('d', MatrixGame(['a', 'b'], np.ones((2, 2))),
                                 ring(10), create_rng(0))
        pop.set_opponent(ContinuousPopulation('c', ContinuousSnowdrift(), ring(10),
                                              create_rng(0)))
        with pytest.raises(ConfigurationError, match="discrete traits"):
            pop.check()

    def test_no_payoff_table_shortcuts(self):
        pop = _make_population(network=well_mixed(20), scoring=ScoringType.RESET_ALWAYS)
        assert not pop.lookup_table
        assert not pop.adjust_scores


class TestMutation:
    def test_stays_within_bounds(self):
        pop = _make_population(mutation_sdev=0.5)
        for _ in range(200):
            mutant = pop.mutate(np.array([0.95]))
            assert 0.0 <= mutant[0] <= 1.0

    def test_spread(self):
        pop = _make_population(mutation_sdev=0.01)
        draws = np.array([pop.mutate(np.array([0.5]))[0] for _ in range(2000)])
        assert draws.mean() == pytest.approx(0.5, abs=0.002)
        assert draws.std() == pytest.approx(0.01, rel=0.1)

    def test_zero_sdev_keeps_trait(self):
        pop = _make_population(mutation_sdev=0.0)
        np.testing.assert_array_equal(pop.mutate(np.array([0.4])), [0.4])

    def test_negative_sdev(self):
        with pytest.raises(ValueError, match="mutation_sdev"):
            ContinuousPopulation('a', ContinuousSnowdrift(), ring(10), create_rng(0),
                                 mutation_sdev=-0.1)

    def test_mutate_at_changes_trait(self):
        pop = _make_population(init_type=InitType.MONO, init_args=[0.5], mutation_sdev=0.05)
        assert pop.mutate_at(3)
        assert not pop.is_monomorphic()
        assert pop.check_consistency() == []


class TestScoring:
    def test_pairwise_scores(self):
        pop = _make_population()
        _set_traits(pop, [0.0, 1.0] * 5)
        model = pop.model
        # free riders meet two full investors, investors two free riders
        assert pop.ledger.scores[0] == pytest.approx(model.payoff(np.array([0.0]), np.array([1.0])))
        assert pop.ledger.scores[1] == pytest.approx(model.payoff(np.array([1.0]), np.array([0.0])))
        np.testing.assert_array_equal(pop.ledger.interactions, [4] * 10)

    def test_updates_keep_accounting(self):
        pop = _make_population(network=square_lattice(25), mutation_probability=0.1,
                               mutation_sdev=0.05, seed=4)
        for _ in range(2000):
            pop.step()
        assert pop.check_consistency() == []

    def test_ephemeral_scores(self):
        pop = _make_population(scoring=ScoringType.EPHEMERAL, mutation_probability=0.1, seed=5)
        for _ in range(500):
            pop.step()
        assert pop.check_consistency() == []

    def test_imitation_copies_vectors(self):
        pop = _make_population(player_update=PlayerUpdate(PlayerUpdateType.BEST), seed=6)
        _set_traits(pop, [0.2] * 5 + [0.8] * 5)
        for _ in range(500):
            pop.step()
        values = set(np.round(pop.traits[:, 0], 12))
        assert values <= {0.2, 0.8}


class TestQueries:
    def test_mean_trait_interleaves_mean_and_sdev(self):
        model = ContinuousSnowdrift(['x', 'y'])
        pop = _make_population(model=model)
        _set_traits(pop, [[0.2, 0.5], [0.4, 0.5]] * 5)
        np.testing.assert_allclose(pop.get_mean_trait(), [0.3, 0.1, 0.5, 0.0])

    def test_mean_fitness(self):
        pop = _make_population(init_type=InitType.MONO, init_args=[0.5])
        mean, sdev = pop.get_mean_fitness()
        assert mean == pytest.approx(pop.model.payoff(np.array([0.5]), np.array([0.5])))
        assert sdev == pytest.approx(0.0)

    def test_status(self):
        pop = _make_population(init_type=InitType.MONO, init_args=[0.25])
        assert pop.get_status() == "investment: 0.25 ± 0"

    def test_convergence(self):
        pop = _make_population(init_type=InitType.MONO, init_args=[0.25])
        assert pop.check_convergence()
        pop.mutation_probability = 0.1
        assert not pop.check_convergence()


class TestState:
    def test_roundtrip(self):
        pop = _make_population(mutation_probability=0.2, seed=7)
        for _ in range(100):
            pop.step()
        state = pop.get_state()
        for _ in range(100):
            pop.step()
        pop.set_state(state)
        np.testing.assert_array_equal(pop.traits, state.traits)
        assert pop.check_consistency() == []


class TestBuildPopulation:
    def test_from_config(self):
        config = config_from_dict({
            'species': {
                'traits': ['investment'],
                'size': 16,
                'continuous': {'trait_min': 0.0, 'trait_max': 2.0},
                'mutation_sdev': 0.05,
            },
        })
        pop = build_population(config.species[0], create_rng(0))
        assert isinstance(pop, ContinuousPopulation)
        assert pop.mutation_sdev == 0.05
        np.testing.assert_array_equal(pop.trait_max, [2.0])
