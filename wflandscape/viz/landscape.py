"""Landscape and trajectory plots for wflandscape.

Every function:
  - Takes a SimulationResult (or plain arrays) as input
  - Returns a matplotlib Figure
  - Has an optional ``save_path`` parameter (saves PNG when given)
  - Uses the shared dark theme from ``wflandscape.viz.style``
"""

from __future__ import annotations

import matplotlib
matplotlib.use('Agg')

from typing import TYPE_CHECKING, Optional

import matplotlib.patches as mpatches
import matplotlib.pyplot as plt
import numpy as np

from wflandscape.viz.style import (
    ACCENT_COLORS,
    MATING_COLORS,
    SINK_QUADRANT_COLOR,
    TEXT_COLOR,
    dark_figure,
    save_figure,
)

if TYPE_CHECKING:
    from wflandscape.model import SimulationResult


# ═══════════════════════════════════════════════════════════════════════
# 1. POPULATION ON THE LANDSCAPE
# ═══════════════════════════════════════════════════════════════════════

def plot_landscape(
    records: np.ndarray,
    fitness: Optional[np.ndarray] = None,
    radius: Optional[float] = None,
    title: str = 'Population on the landscape',
    save_path: Optional[str] = None,
) -> plt.Figure:
    """Scatter of individual positions on the unit square.

    Args:
        records: RECORD_DTYPE array.
        fitness: Optional (N,) values used to colour the points.
        radius: If given, draw a mating-radius circle in the corner for scale.
        title: Axes title.
        save_path: Optional path to save the figure.

    Returns:
        matplotlib Figure.
    """
    fig, ax = dark_figure()

    # Quadrant where selected alleles are deleterious
    ax.add_patch(mpatches.Rectangle((0.0, 0.0), 0.5, 0.5, color=SINK_QUADRANT_COLOR,
                                    alpha=0.08, zorder=0))

    if fitness is not None:
        sc = ax.scatter(records['x'], records['y'], c=fitness, cmap='viridis',
                        s=6, alpha=0.8, linewidths=0)
        cbar = fig.colorbar(sc, ax=ax, pad=0.02)
        cbar.set_label('Fitness', color=TEXT_COLOR, fontsize=10)
        cbar.ax.yaxis.set_tick_params(color=TEXT_COLOR)
        plt.setp(cbar.ax.yaxis.get_ticklabels(), color=TEXT_COLOR)
    else:
        ax.scatter(records['x'], records['y'], color=ACCENT_COLORS[1],
                   s=6, alpha=0.8, linewidths=0)

    if radius is not None and radius > 0:
        ax.add_patch(mpatches.Circle((0.95 - radius, 0.95 - radius), radius,
                                     fill=False, edgecolor=ACCENT_COLORS[2],
                                     linewidth=1.2, linestyle='--'))

    ax.set_xlim(0.0, 1.0)
    ax.set_ylim(0.0, 1.0)
    ax.set_aspect('equal')
    ax.set_xlabel('x', fontsize=12)
    ax.set_ylabel('y', fontsize=12)
    ax.set_title(f'{title} (N={len(records)})', fontsize=13, fontweight='bold')

    if save_path:
        save_figure(fig, save_path)
    return fig


# ═══════════════════════════════════════════════════════════════════════
# 2. MEAN FITNESS & MATING COMPOSITION
# ═══════════════════════════════════════════════════════════════════════

def plot_fitness_trajectory(
    result: 'SimulationResult',
    save_path: Optional[str] = None,
) -> plt.Figure:
    """Mean fitness per generation (top) and mating composition (bottom)."""
    gens = np.arange(result.n_generations)
    fig, (ax_w, ax_m) = dark_figure(nrows=2, ncols=1, figsize=(10, 8), sharex=True)

    ax_w.plot(gens, result.wbar, color=ACCENT_COLORS[0], linewidth=1.5)
    ax_w.set_ylabel('Mean fitness (w̄)', fontsize=12)
    ax_w.set_title('Mean fitness', fontsize=13, fontweight='bold')

    n = np.maximum(result.n_outcross + result.n_chance_self + result.n_forced_self, 1)
    ax_m.stackplot(
        gens,
        result.n_outcross / n,
        result.n_chance_self / n,
        result.n_forced_self / n,
        colors=[MATING_COLORS['outcross'], MATING_COLORS['chance_self'],
                MATING_COLORS['forced_self']],
        labels=['outcross', 'chance selfing', 'forced selfing'],
        alpha=0.85,
    )
    ax_m.set_ylim(0.0, 1.0)
    ax_m.set_xlabel('Generation', fontsize=12)
    ax_m.set_ylabel('Fraction of matings', fontsize=12)
    ax_m.legend(loc='upper right', fontsize=9, facecolor='#16213e',
                labelcolor=TEXT_COLOR, framealpha=0.8)

    if save_path:
        save_figure(fig, save_path)
    return fig


# ═══════════════════════════════════════════════════════════════════════
# 3. ALLELE FREQUENCIES
# ═══════════════════════════════════════════════════════════════════════

def plot_allele_frequencies(
    result: 'SimulationResult',
    save_path: Optional[str] = None,
) -> plt.Figure:
    """Per-locus derived allele frequency; selected loci drawn on top."""
    gens = np.arange(result.n_generations)
    selected = result.genetic_map.selected
    fig, ax = dark_figure(figsize=(10, 6))

    for locus in np.flatnonzero(~selected):
        ax.plot(gens, result.allele_freq[:, locus], color=ACCENT_COLORS[3],
                alpha=0.25, linewidth=0.7)
    for locus in np.flatnonzero(selected):
        ax.plot(gens, result.allele_freq[:, locus], color=ACCENT_COLORS[0],
                alpha=0.9, linewidth=1.5)

    ax.set_ylim(0.0, 1.0)
    ax.set_xlabel('Generation', fontsize=12)
    ax.set_ylabel('Derived allele frequency', fontsize=12)
    ax.set_title(f'Allele frequencies ({int(selected.sum())} selected loci in red)',
                 fontsize=13, fontweight='bold')

    if save_path:
        save_figure(fig, save_path)
    return fig
