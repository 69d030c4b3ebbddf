"""wflandscape visualization library.

Modules:
  - style: Dark theme colours and helpers
  - landscape: Positions on the unit square, mean fitness, mating
    composition and allele-frequency trajectories
"""

from wflandscape.viz.style import (  # noqa: F401
    ACCENT_COLORS,
    DARK_BG,
    DARK_PANEL,
    GRID_COLOR,
    MATING_COLORS,
    TEXT_COLOR,
    apply_dark_theme,
    dark_figure,
    save_figure,
)

from wflandscape.viz.landscape import (  # noqa: F401
    plot_allele_frequencies,
    plot_fitness_trajectory,
    plot_landscape,
)
