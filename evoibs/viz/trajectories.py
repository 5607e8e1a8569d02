"""Trait frequency and fitness trajectories.

Every function:
  - Accepts a TrajectoryRecorder (live or loaded from npz)
  - Returns a matplotlib Figure
  - Has an optional ``save_path`` parameter (saves PNG when given)
  - Uses the shared dark theme from ``evoibs.viz.style``
"""

from __future__ import annotations

from typing import Optional, Sequence, TYPE_CHECKING

import matplotlib.pyplot as plt
import numpy as np

from evoibs.viz.style import (
    TEXT_COLOR,
    dark_figure,
    legend_style,
    save_figure,
    trait_color,
)

if TYPE_CHECKING:
    from evoibs.snapshots import TrajectoryRecorder


def _series(recorder: 'TrajectoryRecorder', store: dict, species: int) -> np.ndarray:
    if species not in store:
        raise KeyError(f"no trajectory recorded for species {species}")
    return np.array(store[species], dtype=np.float64)


def _time_axis(recorder: 'TrajectoryRecorder', realtime: bool) -> np.ndarray:
    return np.array(recorder.realtimes if realtime else recorder.times, dtype=np.float64)


def _labels(names: Optional[Sequence[str]], n: int) -> list:
    if names is None:
        return [f"trait {i}" for i in range(n)]
    if len(names) != n:
        raise ValueError(f"expected {n} trait names, got {len(names)}")
    return list(names)


def _legend(ax) -> None:
    ax.legend(**legend_style())


# ═══════════════════════════════════════════════════════════════════════
# TRAIT FREQUENCIES
# ═══════════════════════════════════════════════════════════════════════

def plot_trait_frequencies(
    recorder: 'TrajectoryRecorder',
    species: int = 0,
    trait_names: Optional[Sequence[str]] = None,
    realtime: bool = False,
    stacked: bool = False,
    save_path: Optional[str] = None,
    ax=None,
) -> plt.Figure:
    """Trait frequencies of one species over time.

    Args:
        recorder: Recorder with at least one capture.
        species: Species index.
        trait_names: Legend labels, one per trait.
        realtime: Plot against realtime instead of generations.
        stacked: Stacked areas instead of lines.
        save_path: Optional path to save the figure.
        ax: Draw into an existing Axes instead of a new figure.

    Returns:
        matplotlib Figure.
    """
    freqs = _series(recorder, recorder.mean_traits, species)
    t = _time_axis(recorder, realtime)
    labels = _labels(trait_names, freqs.shape[1])
    if ax is None:
        fig, ax = dark_figure()
    else:
        fig = ax.figure

    colors = [trait_color(i) for i in range(freqs.shape[1])]
    if stacked:
        ax.stackplot(t, freqs.T, labels=labels, colors=colors, alpha=0.85)
    else:
        for i, label in enumerate(labels):
            ax.plot(t, freqs[:, i], color=colors[i], linewidth=2, label=label)

    ax.set_xlabel('Realtime' if realtime else 'Generations', fontsize=12)
    ax.set_ylabel('Frequency', fontsize=12)
    ax.set_title(f'Trait Frequencies (species {species})', fontsize=14, fontweight='bold')
    ax.set_ylim(0.0, 1.0)
    _legend(ax)

    if save_path:
        save_figure(fig, save_path)
    return fig


# ═══════════════════════════════════════════════════════════════════════
# MEAN FITNESS
# ═══════════════════════════════════════════════════════════════════════

def plot_mean_fitness(
    recorder: 'TrajectoryRecorder',
    species: int = 0,
    trait_names: Optional[Sequence[str]] = None,
    realtime: bool = False,
    save_path: Optional[str] = None,
    ax=None,
) -> plt.Figure:
    """Mean fitness per trait (thin) and population mean (dashed).

    Traits absent at a capture are NaN and leave gaps in their line.
    """
    fitness = _series(recorder, recorder.mean_fitness, species)
    t = _time_axis(recorder, realtime)
    n_traits = fitness.shape[1] - 1
    labels = _labels(trait_names, n_traits)
    if ax is None:
        fig, ax = dark_figure()
    else:
        fig = ax.figure

    for i, label in enumerate(labels):
        if np.all(np.isnan(fitness[:, i])):
            continue
        ax.plot(t, fitness[:, i], color=trait_color(i), linewidth=1.5, label=label)
    ax.plot(t, fitness[:, n_traits], color=TEXT_COLOR, linewidth=2.5,
            linestyle='--', label='population mean')

    ax.set_xlabel('Realtime' if realtime else 'Generations', fontsize=12)
    ax.set_ylabel('Mean fitness', fontsize=12)
    ax.set_title(f'Mean Fitness (species {species})', fontsize=14, fontweight='bold')
    _legend(ax)

    if save_path:
        save_figure(fig, save_path)
    return fig


# ═══════════════════════════════════════════════════════════════════════
# OVERVIEW
# ═══════════════════════════════════════════════════════════════════════

def plot_species_overview(
    recorder: 'TrajectoryRecorder',
    trait_names: Optional[Sequence[Sequence[str]]] = None,
    realtime: bool = False,
    save_path: Optional[str] = None,
) -> plt.Figure:
    """One row per species: frequencies on the left, fitness on the right."""
    species = sorted(recorder.mean_traits)
    if not species:
        raise ValueError("recorder holds no captures")
    fig, axes = dark_figure(nrows=len(species), ncols=2, squeeze=False)
    for row, s in enumerate(species):
        names = trait_names[row] if trait_names is not None else None
        plot_trait_frequencies(recorder, s, names, realtime, ax=axes[row, 0])
        plot_mean_fitness(recorder, s, names, realtime, ax=axes[row, 1])

    if save_path:
        save_figure(fig, save_path)
    return fig
