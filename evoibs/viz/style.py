"""Dark theme shared by the evoibs trajectory plots.

Importing this module forces the non-interactive Agg backend.
"""

import matplotlib
matplotlib.use('Agg')

import matplotlib.pyplot as plt
import numpy as np

# ═══════════════════════════════════════════════════════════════════════
# COLOR PALETTE
# ═══════════════════════════════════════════════════════════════════════

DARK_BG = '#15171f'
DARK_PANEL = '#1d2130'
TEXT_COLOR = '#d8dce6'
GRID_COLOR = '#30364a'

# trait colours, cycled when a model has more traits
ACCENT_COLORS = [
    '#4fc3f7',
    '#ff8a65',
    '#aed581',
    '#ba68c8',
    '#ffd54f',
    '#4db6ac',
    '#f06292',
    '#90a4ae',
]


def trait_color(index: int) -> str:
    return ACCENT_COLORS[index % len(ACCENT_COLORS)]


def legend_style() -> dict:
    """Keyword arguments for Axes.legend() matching the theme."""
    return {
        'facecolor': DARK_PANEL,
        'edgecolor': GRID_COLOR,
        'labelcolor': TEXT_COLOR,
        'fontsize': 10,
    }


# ═══════════════════════════════════════════════════════════════════════
# THEME HELPERS
# ═══════════════════════════════════════════════════════════════════════

def apply_dark_theme(fig=None, ax=None):
    """Colour a Figure background and/or one Axes."""
    if fig is not None:
        fig.patch.set_facecolor(DARK_BG)
    if ax is None:
        return
    ax.set_facecolor(DARK_PANEL)
    ax.tick_params(colors=TEXT_COLOR, labelsize=10)
    for label in (ax.xaxis.label, ax.yaxis.label, ax.title):
        label.set_color(TEXT_COLOR)
    for spine in ax.spines.values():
        spine.set_color(GRID_COLOR)
    ax.grid(True, color=GRID_COLOR, alpha=0.4, linewidth=0.5)


def dark_figure(nrows=1, ncols=1, figsize=None, **kwargs):
    """Themed figure with an nrows x ncols grid of Axes.

    Returns (fig, axes) as plt.subplots() does.
    """
    if figsize is None:
        figsize = (9.0 * ncols, 5.0 * nrows)
    fig, axes = plt.subplots(nrows, ncols, figsize=figsize, **kwargs)
    apply_dark_theme(fig=fig)
    for ax in np.atleast_1d(axes).flat:
        apply_dark_theme(ax=ax)
    return fig, axes


def save_figure(fig, save_path, dpi=150):
    """Write a PNG on the theme background and release the figure."""
    fig.tight_layout()
    fig.savefig(save_path, dpi=dpi, facecolor=fig.get_facecolor(),
                edgecolor='none', bbox_inches='tight')
    plt.close(fig)
