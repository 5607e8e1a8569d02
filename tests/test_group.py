"""Tests for evoibs.group — reference and interaction group sampling."""

import numpy as np
import pytest

from evoibs.group import GroupSampler
from evoibs.network import directed_ring, from_edges, ring, square_lattice, well_mixed
from evoibs.rng import create_rng
from evoibs.types import SamplingType


class TestSamplingAll:
    def test_all_neighbours(self):
        g = GroupSampler(SamplingType.ALL)
        members = g.sample_at(4, square_lattice(9), create_rng(0))
        assert sorted(members.tolist()) == [1, 3, 5, 7]
        assert g.size == 4
        assert g.focal == 4

    def test_well_mixed_excludes_focal(self):
        g = GroupSampler(SamplingType.ALL)
        members = g.sample_at(2, well_mixed(5), create_rng(0))
        np.testing.assert_array_equal(members, [0, 1, 3, 4])

    def test_directed_in_and_out(self):
        g = GroupSampler(SamplingType.ALL)
        net = directed_ring(6)
        np.testing.assert_array_equal(g.sample_at(2, net, create_rng(0)), [3])
        np.testing.assert_array_equal(g.sample_at(2, net, create_rng(0), out=False), [1])

    def test_include_self(self):
        g = GroupSampler(SamplingType.ALL)
        members = g.sample_at(0, ring(5), create_rng(0), include_self=True)
        assert sorted(members.tolist()) == [0, 1, 4]
        assert g.size == 3

    def test_include_self_well_mixed_takes_everyone(self):
        g = GroupSampler(SamplingType.ALL)
        members = g.sample_at(2, well_mixed(4), create_rng(0), include_self=True)
        np.testing.assert_array_equal(members, [0, 1, 2, 3])

    def test_include_self_focal_beyond_population(self):
        # focal index of a larger species sampling a smaller one
        g = GroupSampler(SamplingType.ALL)
        members = g.sample_at(7, well_mixed(3), create_rng(0), include_self=True)
        np.testing.assert_array_equal(members, [0, 1, 2])


class TestSamplingRandom:
    def test_single_draw_is_a_neighbour(self):
        g = GroupSampler(SamplingType.RANDOM, 1)
        rng = create_rng(1)
        net = ring(10)
        seen = set()
        for _ in range(200):
            members = g.sample_at(5, net, rng)
            assert len(members) == 1
            seen.add(int(members[0]))
        assert seen == {4, 6}

    def test_without_replacement(self):
        g = GroupSampler(SamplingType.RANDOM, 3)
        rng = create_rng(2)
        net = square_lattice(16)
        for _ in range(200):
            members = g.sample_at(0, net, rng)
            assert len(set(members.tolist())) == 3
            assert set(members.tolist()) <= set(net.neighbors_out(0).tolist())

    def test_degree_below_sample_size_takes_all(self):
        g = GroupSampler(SamplingType.RANDOM, 5)
        members = g.sample_at(0, ring(8), create_rng(0))
        assert sorted(members.tolist()) == [1, 7]

    def test_well_mixed_random_never_focal(self):
        g = GroupSampler(SamplingType.RANDOM, 2)
        rng = create_rng(3)
        counts = np.zeros(6)
        for _ in range(3000):
            members = g.sample_at(3, well_mixed(6), rng)
            assert 3 not in members
            assert len(set(members.tolist())) == 2
            counts[members] += 1
        # every other slot equally likely
        np.testing.assert_allclose(np.delete(counts, 3) / 3000, np.full(5, 0.4), atol=0.03)

    def test_include_self_random_can_pick_focal_slot(self):
        g = GroupSampler(SamplingType.RANDOM, 1)
        rng = create_rng(4)
        seen = set()
        for _ in range(300):
            members = g.sample_at(5, ring(10), rng, include_self=True)
            assert len(members) == 1
            seen.add(int(members[0]))
        assert seen == {4, 5, 6}

    def test_invalid_sample_size(self):
        with pytest.raises(ValueError, match="n_samples"):
            GroupSampler(SamplingType.RANDOM, 0)


class TestSamplingNone:
    def test_empty_group(self):
        g = GroupSampler(SamplingType.NONE)
        assert len(g.sample_at(0, ring(5), create_rng(0))) == 0
        assert g.max_size(ring(5)) == 0


class TestMaxSize:
    def test_bounds(self):
        net = from_edges(4, [(0, 1), (0, 2), (0, 3)])
        assert GroupSampler(SamplingType.ALL).max_size(net) == 3
        assert GroupSampler(SamplingType.RANDOM, 2).max_size(net) == 2

    def test_include_self_adds_one(self):
        net = ring(6)
        assert GroupSampler(SamplingType.ALL).max_size(net, include_self=True) == 3
        assert GroupSampler(SamplingType.RANDOM, 3).max_size(net, include_self=True) == 3
