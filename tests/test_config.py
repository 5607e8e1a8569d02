"""Tests for evoibs.config — configuration loading and validation."""

from pathlib import Path

import pytest
import yaml

from evoibs.config import (
    OutputSection,
    SimulationConfig,
    SimulationSection,
    SpeciesSection,
    config_from_dict,
    config_to_yaml,
    deep_merge,
    default_config,
    load_config,
    validate_config,
)

CONFIGS = Path(__file__).parent.parent / "configs"


# ── deep_merge tests ──────────────────────────────────────────────────

class TestDeepMerge:
    def test_simple_override(self):
        assert deep_merge({'a': 1, 'b': 2}, {'b': 3}) == {'a': 1, 'b': 3}

    def test_nested_merge(self):
        base = {'x': {'a': 1, 'b': 2}, 'y': 10}
        result = deep_merge(base, {'x': {'b': 3, 'c': 4}})
        assert result == {'x': {'a': 1, 'b': 3, 'c': 4}, 'y': 10}

    def test_species_list_replaced(self):
        base = {'species': [{'name': 'a'}, {'name': 'b'}]}
        result = deep_merge(base, {'species': [{'name': 'c'}]})
        assert result == {'species': [{'name': 'c'}]}

    def test_override_values_are_copied(self):
        override = {'a': {'nested': [1, 2]}}
        result = deep_merge({}, override)
        result['a']['nested'].append(3)
        assert override['a']['nested'] == [1, 2]


# ── default_config tests ─────────────────────────────────────────────

class TestDefaultConfig:
    def test_creates_valid_config(self):
        config = default_config()
        assert isinstance(config, SimulationConfig)
        assert isinstance(config.simulation, SimulationSection)
        assert isinstance(config.output, OutputSection)

    def test_default_values(self):
        config = default_config()
        assert config.simulation.seed == 42
        assert config.simulation.species_update == 'size'
        assert len(config.species) == 1
        sp = config.species[0]
        assert sp.traits == ['A', 'B']
        assert sp.player_update == 'imitate'
        assert sp.population_update == 'async'
        assert sp.mutation_probability == 0.0

    def test_sections_do_not_share_lists(self):
        a, b = SpeciesSection(), SpeciesSection()
        a.traits.append('C')
        assert b.traits == ['A', 'B']


# ── YAML loading tests ───────────────────────────────────────────────

class TestLoadConfig:
    def test_load_from_yaml(self, tmp_path):
        data = {
            'simulation': {'seed': 99, 'max_time': 50.0},
            'species': {'name': 'solo', 'size': 30, 'traits': ['X', 'Y', 'Z']},
        }
        path = tmp_path / "test.yaml"
        path.write_text(yaml.dump(data))
        config = load_config(path)
        assert config.simulation.seed == 99
        assert config.simulation.max_time == 50.0
        assert config.species[0].name == 'solo'
        assert config.species[0].traits == ['X', 'Y', 'Z']
        # unspecified fields get defaults
        assert config.species[0].geometry == 'well_mixed'
        assert config.output.directory == 'results/'

    def test_species_list_gets_default_names(self, tmp_path):
        data = {'species': [{'size': 10}, {'size': 20}]}
        path = tmp_path / "two.yaml"
        path.write_text(yaml.dump(data))
        config = load_config(path)
        assert [sp.name for sp in config.species] == ['species_0', 'species_1']

    def test_unknown_keys_ignored(self, tmp_path):
        data = {'simulation': {'seed': 1, 'colour': 'blue'}}
        path = tmp_path / "extra.yaml"
        path.write_text(yaml.dump(data))
        assert load_config(path).simulation.seed == 1

    def test_scenario_override(self, tmp_path):
        base = {'simulation': {'seed': 42, 'time_step': 1.0}}
        scenario = {'simulation': {'time_step': 0.5}}
        base_path = tmp_path / "base.yaml"
        scen_path = tmp_path / "scenario.yaml"
        base_path.write_text(yaml.dump(base))
        scen_path.write_text(yaml.dump(scenario))
        config = load_config(base_path, scenario_path=scen_path)
        assert config.simulation.time_step == 0.5
        assert config.simulation.seed == 42

    def test_sweep_overrides_applied_last(self, tmp_path):
        base_path = tmp_path / "base.yaml"
        base_path.write_text(yaml.dump({'simulation': {'seed': 42}}))
        config = load_config(base_path, sweep_overrides={'simulation': {'seed': 123}})
        assert config.simulation.seed == 123

    def test_file_not_found(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nonexistent.yaml")

    def test_load_project_default_yaml(self):
        config = load_config(CONFIGS / "default.yaml")
        assert config.simulation.seed == 42
        assert config.species[0].name == 'players'
        assert config.species[0].payoffs == [[1.0, 1.0], [1.0, 1.0]]

    def test_load_project_scenarios(self):
        for scenario in sorted((CONFIGS / "scenarios").glob("*.yaml")):
            config = load_config(CONFIGS / "default.yaml", scenario_path=scenario)
            assert config.simulation.max_time is not None

    def test_roundtrip_through_yaml_text(self):
        config = default_config()
        config.simulation.seed = 7
        again = config_from_dict(yaml.safe_load(config_to_yaml(config)))
        assert again == config


# ── Validation tests ──────────────────────────────────────────────────

class TestValidation:
    def test_negative_seed(self):
        config = default_config()
        config.simulation.seed = -3
        with pytest.raises(ValueError, match="simulation.seed"):
            validate_config(config)

    def test_time_step_positive(self):
        config = default_config()
        config.simulation.time_step = 0.0
        with pytest.raises(ValueError, match="time_step"):
            validate_config(config)

    def test_unknown_species_update(self):
        config = default_config()
        config.simulation.species_update = 'lottery'
        with pytest.raises(ValueError, match="simulation.species_update"):
            validate_config(config)

    def test_unknown_player_update(self):
        config = default_config()
        config.species[0].player_update = 'copycat'
        with pytest.raises(ValueError, match=r"species\[0\].player_update"):
            validate_config(config)

    def test_duplicate_species_names(self):
        config = default_config()
        config.species = [SpeciesSection(name='a'), SpeciesSection(name='a')]
        with pytest.raises(ValueError, match="unique"):
            validate_config(config)

    def test_payoff_shape(self):
        config = default_config()
        config.species[0].payoffs = [[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]]
        with pytest.raises(ValueError, match="2x2"):
            validate_config(config)

    def test_payoffs_and_static_scores_exclusive(self):
        config = default_config()
        config.species[0].payoffs = [[1.0, 0.0], [0.0, 1.0]]
        config.species[0].static_scores = [1.0, 2.0]
        with pytest.raises(ValueError, match="only one of"):
            validate_config(config)

    def test_vacant_index_in_range(self):
        config = default_config()
        config.species[0].vacant = 2
        with pytest.raises(ValueError, match="vacant"):
            validate_config(config)

    def test_probability_range(self):
        config = default_config()
        config.species[0].mutation_probability = 1.5
        with pytest.raises(ValueError, match="mutation_probability"):
            validate_config(config)

    def test_error_range(self):
        config = default_config()
        config.species[0].error = 0.5
        with pytest.raises(ValueError, match="error"):
            validate_config(config)

    def test_unknown_geometry(self):
        config = default_config()
        config.species[0].geometry = 'torus'
        with pytest.raises(ValueError, match="geometry"):
            validate_config(config)

    def test_valid_multi_species(self):
        config = default_config()
        config.species = [
            SpeciesSection(name='hosts', size=50, population_update='sync'),
            SpeciesSection(name='parasites', size=20, traits=['p', 'q', 'r']),
        ]
        validate_config(config)  # should not raise

    def test_opponent_must_exist(self):
        config = default_config()
        config.species[0].opponent = 'nobody'
        with pytest.raises(ValueError, match="opponent 'nobody'"):
            validate_config(config)

    def test_payoff_columns_follow_opponent(self):
        config = default_config()
        config.species = [
            SpeciesSection(name='hosts', opponent='parasites',
                           payoffs=[[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]]),
            SpeciesSection(name='parasites', traits=['p', 'q', 'r'], opponent='hosts',
                           payoffs=[[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]]),
        ]
        validate_config(config)
        config.species[1].payoffs = [[1.0, 2.0, 3.0]] * 3
        with pytest.raises(ValueError, match=r"species[1].payoffs must be a 3x2"):
            validate_config(config)

    def test_public_goods_traits(self):
        config = default_config()
        config.species[0].traits = ['C', 'D', 'L', 'X']
        config.species[0].public_goods = {'group_size': 5}
        with pytest.raises(ValueError, match="2 or 3 traits"):
            validate_config(config)

    def test_public_goods_group_size(self):
        config = default_config()
        config.species[0].public_goods = {'group_size': 1}
        with pytest.raises(ValueError, match="group_size"):
            validate_config(config)

    def test_public_goods_without_vacancy(self):
        config = default_config()
        config.species[0].traits = ['C', 'D', 'empty']
        config.species[0].public_goods = {}
        config.species[0].vacant = 2
        with pytest.raises(ValueError, match="vacant"):
            validate_config(config)

    def test_one_kind_of_game(self):
        config = default_config()
        config.species[0].payoffs = [[1.0, 0.0], [0.0, 1.0]]
        config.species[0].continuous = {}
        with pytest.raises(ValueError, match="only one of"):
            validate_config(config)

    def test_continuous_bounds(self):
        config = default_config()
        config.species[0].continuous = {'trait_min': [0.0, 1.0], 'trait_max': 1.0}
        with pytest.raises(ValueError, match="trait_min"):
            validate_config(config)

    def test_mutation_sdev_non_negative(self):
        config = default_config()
        config.species[0].continuous = {}
        config.species[0].mutation_sdev = -0.5
        with pytest.raises(ValueError, match="mutation_sdev"):
            validate_config(config)
