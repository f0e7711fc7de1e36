"""
LOD curve and SNP association plots
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from typing import Optional, Dict, List, Tuple

from ..utils.data_types import ScanResults, SnpScanResults, MarkerMap, natural_sort_key

DEFAULT_COLORS = ['darkslateblue', 'violetred']

# Space between chromosomes, in map units
CHROMOSOME_GAP = 25.0


def plot_scan1(ax, results: ScanResults, map_data: MarkerMap,
               column: Optional[str] = None,
               chr: Optional[List[str]] = None,
               color: str = DEFAULT_COLORS[0],
               linewidth: float = 1.5,
               gap: Optional[float] = None,
               label: Optional[str] = None) -> Dict[str, float]:
    """Draw LOD curves with chromosomes laid end to end

    Args:
        ax: matplotlib Axes
        results: Genome scan results
        map_data: Marker map the positions are taken from
        column: Phenotype column (default: first)
        chr: Chromosomes to draw (default: all, natural order)
        color: Line color
        linewidth: Line width
        gap: Space between chromosomes in map units
        label: Legend label

    Returns:
        Dict of chromosome -> x offset used
    """
    if column is None:
        column = results.phenotypes[0]
    if gap is None:
        gap = CHROMOSOME_GAP

    pos_lookup = map_data.data.drop_duplicates(subset=['marker']).set_index('marker')['pos']
    lod = results.lod[column]
    chromosomes = sorted(pd.unique(results.chromosomes), key=natural_sort_key)
    if chr is not None:
        wanted = {str(c) for c in chr}
        chromosomes = [c for c in chromosomes if c in wanted]
        if not chromosomes:
            raise KeyError(f"None of chromosomes {sorted(wanted)} are in the scan results")

    offsets: Dict[str, float] = {}
    tick_positions = []
    tick_labels = []
    current = 0.0
    for i, chrom in enumerate(chromosomes):
        mask = results.chromosomes == chrom
        markers = lod.index[mask].astype(str)
        positions = pos_lookup.reindex(markers).to_numpy(dtype=np.float64)
        values = lod.to_numpy()[mask]
        order = np.argsort(positions, kind='mergesort')
        positions, values = positions[order], values[order]

        start = np.nanmin(positions)
        x = current + positions - start
        ax.plot(x, values, color=color, linewidth=linewidth,
                label=label if i == 0 else None)

        offsets[chrom] = current - start
        length = np.nanmax(positions) - start
        tick_positions.append(current + length / 2)
        tick_labels.append(chrom)
        current += length + gap

    if len(chromosomes) > 1:
        ax.set_xticks(tick_positions)
        ax.set_xticklabels(tick_labels)
        ax.set_xlabel('Chromosome', fontsize=12)
    else:
        unit = f" ({map_data.units})" if map_data.units else ""
        ax.set_xlabel(f"Chr {chromosomes[0]} position{unit}", fontsize=12)
    ax.set_ylabel('LOD score', fontsize=12)
    ax.set_ylim(bottom=0)
    return offsets


def create_stacked_scan_plot(results_dict: Dict[str, ScanResults],
                             maps_dict: Dict[str, MarkerMap],
                             column: Optional[str] = None,
                             chr: Optional[List[str]] = None,
                             colors: Optional[List[str]] = None,
                             figsize: Optional[Tuple[float, float]] = None) -> plt.Figure:
    """Stack one LOD-curve panel per probability source with a shared y range

    Args:
        results_dict: Source name -> ScanResults
        maps_dict: Source name -> MarkerMap used for that source
        column: Phenotype column
        chr: Chromosomes to draw
        colors: One color per panel
        figsize: Figure size (width, height)

    Returns:
        matplotlib Figure object
    """
    n_panels = len(results_dict)
    if n_panels == 0:
        raise ValueError("No scan results to plot")
    if colors is None:
        colors = DEFAULT_COLORS
    if figsize is None:
        figsize = (12, 3.5 * n_panels)

    sns.set_style('ticks')
    fig, axes = plt.subplots(n_panels, 1, figsize=figsize)
    if n_panels == 1:
        axes = [axes]

    ymax = 0.0
    for i, (name, results) in enumerate(results_dict.items()):
        if name not in maps_dict:
            raise KeyError(f"No map supplied for '{name}'")
        ax = axes[i]
        plot_scan1(ax, results, maps_dict[name], column=column, chr=chr,
                   color=colors[i % len(colors)])
        col = column if column is not None else results.phenotypes[0]
        ymax = max(ymax, float(np.nanmax(results.lod[col].to_numpy())))
        ax.set_title(name, fontsize=12)
        sns.despine(ax=ax)

    for ax in axes:
        ax.set_ylim(0, ymax * 1.05 if ymax > 0 else 1.0)

    plt.tight_layout()
    return fig


def plot_snpasso(ax, results: SnpScanResults,
                 column: Optional[str] = None,
                 drop_hilit: float = 1.5,
                 point_size: float = 12.0,
                 color: str = 'darkslateblue',
                 hilit_color: str = 'violetred') -> None:
    """Draw SNP LOD scores against physical position (Mbp)

    SNPs with LOD within ``drop_hilit`` of the maximum are highlighted.
    """
    if column is None:
        column = results.lod.columns[0]
    pos = results.snpinfo['pos'].to_numpy(dtype=np.float64)
    lod = results.lod[column].to_numpy()

    if len(lod) == 0:
        ax.text(0.5, 0.5, 'No SNPs in region', ha='center', va='center', transform=ax.transAxes)
        return

    hilit = lod >= np.nanmax(lod) - drop_hilit if drop_hilit is not None else np.zeros(len(lod), dtype=bool)
    ax.scatter(pos[~hilit], lod[~hilit], s=point_size, c=color, alpha=0.7, edgecolors='none')
    if hilit.any():
        ax.scatter(pos[hilit], lod[hilit], s=point_size * 1.5, c=hilit_color,
                   alpha=0.9, edgecolors='none', zorder=5)

    chroms = pd.unique(results.snpinfo['chr'].astype(str))
    ax.set_xlabel(f"Chr {chroms[0]} position (Mbp)" if len(chroms) == 1 else "Position (Mbp)", fontsize=12)
    ax.set_ylabel('LOD score', fontsize=12)
    ax.set_ylim(bottom=0)


def create_stacked_snpasso_plot(results_dict: Dict[str, SnpScanResults],
                                column: Optional[str] = None,
                                drop_hilit: float = 1.5,
                                figsize: Optional[Tuple[float, float]] = None) -> plt.Figure:
    """Stack one SNP association panel per probability source

    Returns:
        matplotlib Figure object
    """
    n_panels = len(results_dict)
    if n_panels == 0:
        raise ValueError("No SNP scan results to plot")
    if figsize is None:
        figsize = (10, 3.5 * n_panels)

    sns.set_style('ticks')
    fig, axes = plt.subplots(n_panels, 1, figsize=figsize, sharex=True)
    if n_panels == 1:
        axes = [axes]

    ymax = 0.0
    for ax, (name, results) in zip(axes, results_dict.items()):
        plot_snpasso(ax, results, column=column, drop_hilit=drop_hilit)
        col = column if column is not None else results.lod.columns[0]
        if results.n_snps:
            ymax = max(ymax, float(np.nanmax(results.lod[col].to_numpy())))
        ax.set_title(name, fontsize=12)
        sns.despine(ax=ax)

    for ax in axes:
        ax.set_ylim(0, ymax * 1.05 if ymax > 0 else 1.0)

    plt.tight_layout()
    return fig
