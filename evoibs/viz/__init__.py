"""evoibs visualization helpers.

Modules:
  - style: Dark theme colours and helpers
  - trajectories: Trait frequency and mean fitness time series
"""

from evoibs.viz.style import (  # noqa: F401
    ACCENT_COLORS,
    DARK_BG,
    DARK_PANEL,
    GRID_COLOR,
    TEXT_COLOR,
    apply_dark_theme,
    dark_figure,
    save_figure,
)

from evoibs.viz.trajectories import (  # noqa: F401
    plot_mean_fitness,
    plot_trait_frequencies,
    plot_species_overview,
)
