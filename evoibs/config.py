"""Configuration system for evoibs.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → sweep overrides

Top-level keys map to dataclass sections:
  simulation: run control (seed, step size, halting time, species update)
  species:    list of per-species sections (population, rules, scoring)
  output:     output directory and trajectory recording

Settings without a safe default are rejected by validate_config() with a
ValueError; inconsistent combinations that do have one are corrected later,
with a warning, when the populations are checked.
"""

from __future__ import annotations

import copy
import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from evoibs.types import (
    FitnessMapType,
    InitType,
    MigrationType,
    PlayerUpdateType,
    PopulationUpdateType,
    SamplingType,
    ScoringType,
    SpeciesUpdateType,
    enum_from_name,
)


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationSection:
    """Top-level run control."""
    seed: int = 42
    time_step: float = 1.0             # generations advanced per step()
    max_time: Optional[float] = None   # halting time (None = unbounded)
    optimize_homo: bool = False        # skip waiting time in homogeneous states
    species_update: str = 'size'       # 'size', 'fitness', 'rate', 'turns', 'uniform'
    monitor_perf: bool = False


@dataclass
class SpeciesSection:
    """One population: traits, network, update rules and scoring."""
    name: str = 'species'
    size: int = 100
    geometry: str = 'well_mixed'       # 'well_mixed', 'ring', 'directed_ring', 'square'
    traits: List[str] = field(default_factory=lambda: ['A', 'B'])
    payoffs: Optional[List[List[float]]] = None    # pairwise payoff matrix
    static_scores: Optional[List[float]] = None    # constant per-trait scores
    vacant: Optional[int] = None       # trait index marking empty slots
    dependent: Optional[int] = None    # trait absorbing remaining frequency
    death_rate: float = 1.0            # ecology only
    opponent: Optional[str] = None     # species interaction partners come from

    # Group and continuous games (instead of payoffs / static_scores)
    public_goods: Optional[Dict[str, float]] = None  # interest, cost, loner_payoff, group_size
    continuous: Optional[Dict[str, Any]] = None      # trait_min, trait_max, benefit, cost
    mutation_sdev: float = 0.01        # continuous traits only

    # Initial configuration
    init: str = 'uniform'              # 'uniform', 'frequency', 'mono', 'mutant', 'gaussian'
    init_args: List[float] = field(default_factory=list)

    # Individual update
    player_update: str = 'imitate'     # 'best_response', 'best', 'best_random', 'proportional',
                                       # 'imitate_better', 'imitate', 'thermal'
    noise: float = 1.0
    error: float = 0.0

    # Population update
    population_update: str = 'async'   # 'sync', 'once', 'async', 'moran_birthdeath',
                                       # 'moran_deathbirth', 'moran_imitate', 'ecology'
    sync_fraction: float = 1.0
    update_rate: float = 1.0

    # Groups
    interaction_sampling: str = 'all'  # 'all', 'random', 'none'
    interaction_samples: int = 1
    reference_sampling: str = 'random'
    reference_samples: int = 1

    # Scoring
    scoring: str = 'reset_on_change'   # 'reset_always', 'reset_on_change', 'ephemeral'
    accumulated_scores: bool = False
    fitness_map: str = 'none'          # 'none', 'static', 'convex', 'exponential'
    map_baseline: float = 1.0
    map_selection: float = 1.0

    # Mutation
    mutation_probability: float = 0.0
    mutation_temperature: bool = True  # tied to updates (True) or separate events
    mono_stop: bool = False            # stop on monomorphic states despite vacancies

    # Migration
    migration: str = 'none'            # 'none', 'diffusion', 'birth_death', 'death_birth'
    migration_probability: float = 0.0


@dataclass
class OutputSection:
    """Output control."""
    directory: str = "results/"
    trajectory: bool = False
    snapshot_interval: float = 1.0     # generations between trajectory samples


@dataclass
class SimulationConfig:
    """Complete simulation configuration.

    Load from YAML via `load_config()`. Sections map 1:1 to YAML top-level keys.
    """
    simulation: SimulationSection = field(default_factory=SimulationSection)
    species: List[SpeciesSection] = field(default_factory=lambda: [SpeciesSection()])
    output: OutputSection = field(default_factory=OutputSection)


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values (including species lists) are replaced
    - Keys in override but not base are added

    Args:
        base: Base dictionary (modified in place).
        override: Override dictionary.

    Returns:
        The merged base dictionary.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)
    return base


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


def _yaml_to_config(data: Dict) -> SimulationConfig:
    """Convert a merged YAML dict to a SimulationConfig."""
    simulation = SimulationSection()
    if isinstance(data.get('simulation'), dict):
        simulation = _dict_to_section(SimulationSection, data['simulation'])
    output = OutputSection()
    if isinstance(data.get('output'), dict):
        output = _dict_to_section(OutputSection, data['output'])

    # species: a single dict or a list of dicts
    raw = data.get('species')
    if isinstance(raw, dict):
        raw = [raw]
    species = []
    if isinstance(raw, list):
        for i, entry in enumerate(raw):
            if isinstance(entry, dict):
                entry = dict(entry)
                entry.setdefault('name', f'species_{i}')
                species.append(_dict_to_section(SpeciesSection, entry))
    if not species:
        species = [SpeciesSection()]

    return SimulationConfig(simulation=simulation, species=species, output=output)


def _check_enum(enum_cls, value: str, label: str) -> None:
    try:
        enum_from_name(enum_cls, value)
    except ValueError as exc:
        raise ValueError(f"{label}: {exc}") from None


def _as_list(value, n: int) -> List[float]:
    if isinstance(value, (list, tuple)):
        return [float(v) for v in value]
    return [float(value)] * n


def validate_config(config: SimulationConfig) -> None:
    """Validate configuration constraints. Raises ValueError on failure.

    Checks:
      - Enumerated settings name a known variant
      - Sizes, rates and probabilities are in range
      - Exactly one kind of game; payoff matrices and static scores match
        the trait list (and the opponent's, between species)
      - Species names are unique and opponents exist
    """
    sim = config.simulation
    if sim.seed < 0:
        raise ValueError("simulation.seed must be non-negative")
    if sim.time_step <= 0:
        raise ValueError(
            f"simulation.time_step must be positive, got {sim.time_step}"
        )
    if sim.max_time is not None and sim.max_time <= 0:
        raise ValueError(
            f"simulation.max_time must be positive or null, got {sim.max_time}"
        )
    _check_enum(SpeciesUpdateType, sim.species_update, "simulation.species_update")

    if not config.species:
        raise ValueError("at least one species is required")
    names = [sp.name for sp in config.species]
    if len(set(names)) != len(names):
        raise ValueError(f"species names must be unique, got {names}")
    by_name = {sp.name: sp for sp in config.species}

    valid_geometries = {'well_mixed', 'ring', 'directed_ring', 'square'}
    for i, sp in enumerate(config.species):
        label = f"species[{i}]"
        if sp.size < 1:
            raise ValueError(f"{label}.size must be >= 1, got {sp.size}")
        if sp.geometry not in valid_geometries:
            raise ValueError(
                f"{label}.geometry must be one of {valid_geometries}, "
                f"got '{sp.geometry}'"
            )
        n_traits = len(sp.traits)
        if n_traits < 1:
            raise ValueError(f"{label}.traits must name at least one trait")
        kinds = [key for key in ('payoffs', 'static_scores', 'public_goods', 'continuous')
                 if getattr(sp, key) is not None]
        if len(kinds) > 1:
            raise ValueError(f"{label}: give only one of {kinds}")
        if sp.opponent is not None and sp.opponent not in by_name:
            raise ValueError(f"{label}.opponent '{sp.opponent}' is not a species name")
        n_cols = n_traits
        if sp.opponent is not None:
            n_cols = len(by_name[sp.opponent].traits)
        if sp.payoffs is not None:
            if (len(sp.payoffs) != n_traits
                    or any(len(row) != n_cols for row in sp.payoffs)):
                raise ValueError(
                    f"{label}.payoffs must be a {n_traits}x{n_cols} matrix"
                )
        if sp.public_goods is not None:
            if n_traits not in (2, 3):
                raise ValueError(
                    f"{label}: public goods games take 2 or 3 traits "
                    f"(cooperate, defect, loner), got {n_traits}"
                )
            if int(sp.public_goods.get('group_size', 5)) < 2:
                raise ValueError(f"{label}.public_goods.group_size must be >= 2")
            if sp.vacant is not None:
                raise ValueError(f"{label}: public goods games do not support a vacant trait")
        if sp.continuous is not None:
            if sp.vacant is not None:
                raise ValueError(f"{label}: continuous traits do not support a vacant trait")
            lo = sp.continuous.get('trait_min', 0.0)
            hi = sp.continuous.get('trait_max', 1.0)
            if any(a >= b for a, b in zip(_as_list(lo, n_traits), _as_list(hi, n_traits))):
                raise ValueError(
                    f"{label}.continuous: trait_min {lo} must lie below trait_max {hi}"
                )
            if sp.mutation_sdev < 0:
                raise ValueError(
                    f"{label}.mutation_sdev must be >= 0, got {sp.mutation_sdev}"
                )
        if sp.static_scores is not None and len(sp.static_scores) != n_traits:
            raise ValueError(
                f"{label}.static_scores must have {n_traits} entries, "
                f"got {len(sp.static_scores)}"
            )
        for key in ('vacant', 'dependent'):
            idx = getattr(sp, key)
            if idx is not None and not 0 <= idx < n_traits:
                raise ValueError(
                    f"{label}.{key} must index a trait (0..{n_traits - 1}), got {idx}"
                )

        _check_enum(InitType, sp.init, f"{label}.init")
        _check_enum(PlayerUpdateType, sp.player_update, f"{label}.player_update")
        _check_enum(PopulationUpdateType, sp.population_update, f"{label}.population_update")
        _check_enum(SamplingType, sp.interaction_sampling, f"{label}.interaction_sampling")
        _check_enum(SamplingType, sp.reference_sampling, f"{label}.reference_sampling")
        _check_enum(ScoringType, sp.scoring, f"{label}.scoring")
        _check_enum(FitnessMapType, sp.fitness_map, f"{label}.fitness_map")
        _check_enum(MigrationType, sp.migration, f"{label}.migration")

        if sp.noise < 0:
            raise ValueError(f"{label}.noise must be >= 0, got {sp.noise}")
        if not 0.0 <= sp.error < 0.5:
            raise ValueError(f"{label}.error must be in [0, 0.5), got {sp.error}")
        for key in ('mutation_probability', 'migration_probability'):
            p = getattr(sp, key)
            if not 0.0 <= p <= 1.0:
                raise ValueError(f"{label}.{key} must be in [0, 1], got {p}")
        if sp.update_rate <= 0:
            raise ValueError(f"{label}.update_rate must be positive, got {sp.update_rate}")
        if sp.death_rate < 0:
            raise ValueError(f"{label}.death_rate must be >= 0, got {sp.death_rate}")
        if sp.map_selection < 0:
            raise ValueError(
                f"{label}.map_selection must be >= 0, got {sp.map_selection}"
            )
        if sp.interaction_samples < 1 or sp.reference_samples < 1:
            raise ValueError(f"{label}: sample sizes must be >= 1")


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    sweep_overrides: Optional[Dict] = None,
) -> SimulationConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → sweep overrides.
    Each layer overrides only the fields it specifies.

    Args:
        base_path: Path to base configuration YAML.
        scenario_path: Optional scenario override YAML.
        sweep_overrides: Optional dict of parameter sweep overrides.

    Returns:
        Validated SimulationConfig.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ValueError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if scenario_path.exists():
            with open(scenario_path) as f:
                scenario = yaml.safe_load(f) or {}
            deep_merge(config_dict, scenario)

    if sweep_overrides is not None:
        deep_merge(config_dict, sweep_overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def config_from_dict(data: Dict) -> SimulationConfig:
    """Build and validate a config from an in-memory dict."""
    config = _yaml_to_config(copy.deepcopy(data))
    validate_config(config)
    return config


def config_to_yaml(config: SimulationConfig) -> str:
    """Serialize a config back to YAML text (used for run provenance)."""
    return yaml.safe_dump(dataclasses.asdict(config), sort_keys=True)


def default_config() -> SimulationConfig:
    """Return a SimulationConfig with all default values."""
    config = SimulationConfig()
    validate_config(config)
    return config
