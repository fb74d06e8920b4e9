#!/usr/bin/env python3
"""
PMDI Consensus Maps
===================

This script performs the following workflow:
1. Loads PMDI output and discards burn-in / thins the iterations
2. Computes a posterior similarity matrix (PSM) per dataset plus the overall
   consensus matrix
3. Orders observations by average-linkage clustering of one reference matrix
4. Draws one heatmap per matrix, side by side, with ticks separating the
   requested number of clusters
5. Saves the cluster assignments (and optionally the matrices) as CSV

Example usage:
    python pmdi_consensus_map.py \\
        --pmdi_output output.csv \\
        --burnin 1000 --thin 10 \\
        --nclust 4 \\
        --output_prefix pmdi_consensus
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path

import numpy as np

import matplotlib
matplotlib.use('Agg')  # non-interactive backend (clusters/servers)
import matplotlib.pyplot as plt
from matplotlib.colors import LinearSegmentedColormap
import seaborn as sns

from pmdi_consensus_order import ConsensusOrdering, cluster_assignments, order_observations
from pmdi_errors import PMDIError
from pmdi_psm import PosteriorSimilarityMatrix, generate_psm, save_psm_matrices, summarise_psm
from pmdi_trace_loader import log_message

# ------------------------------- config knobs ------------------------------- #
PSM_GRADIENT = ["#2A186C", "#3B9287", "#FDEF9A"]
PSM_CMAP = LinearSegmentedColormap.from_list("pmdi_psm", PSM_GRADIENT)
PANEL_SIZE = 4.0
DPI = 300


@dataclass(frozen=True)
class ConsensusPanel:
    """One heatmap: a PSM reordered on both axes, its name and the cluster ticks."""

    name: str
    matrix: np.ndarray
    ticks: np.ndarray
    vmin: float = 0.0
    vmax: float = 1.0


def consensus_map(psm: PosteriorSimilarityMatrix, nclust: int, orderby: int = 0) -> list[ConsensusPanel]:
    """
    Build the consensus map panels for a posterior similarity matrix.

    Parameters:
    -----------
    psm : PosteriorSimilarityMatrix
        Output of generate_psm
    nclust : int
        Number of clusters to highlight in the data
    orderby : int
        Observations in every panel are ordered to separate clusters as well as
        possible; orderby picks the matrix (1-based) that informs the ordering.
        orderby = 0 lets the overall consensus dictate the ordering.

    Returns:
    --------
    list[ConsensusPanel] : one panel per matrix, in the order of psm.names
    """
    ordering = order_observations(psm, nclust, orderby)
    return panels_from_ordering(psm, ordering)


def panels_from_ordering(psm: PosteriorSimilarityMatrix, ordering: ConsensusOrdering) -> list[ConsensusPanel]:
    """Apply one ordering to every matrix of the PSM."""
    idx = np.ix_(ordering.order, ordering.order)
    return [
        ConsensusPanel(name=name, matrix=matrix[idx], ticks=ordering.ticks)
        for name, matrix in psm
    ]


def plot_consensus_map(panels: list[ConsensusPanel], output_file, panel_size: float = PANEL_SIZE,
                       dpi: int = DPI) -> Path:
    """
    Draw the panels side by side and save the figure.

    Each panel is a square heatmap with observation 1 at the top-left, colours
    fixed to [vmin, vmax], tick marks (without labels) half a cell after the
    first leaf of each cluster and the dataset name underneath.
    """
    output_file = Path(output_file)
    log_message(f"Creating consensus map ({len(panels)} panels) …")

    fig, axes = plt.subplots(1, len(panels), figsize=(panel_size * len(panels), panel_size),
                             squeeze=False)

    for ax, panel in zip(axes[0], panels):
        sns.heatmap(
            panel.matrix,
            ax=ax,
            cmap=PSM_CMAP,
            vmin=panel.vmin, vmax=panel.vmax,
            square=True,
            cbar=False,
            xticklabels=False,
            yticklabels=False,
            rasterized=True,
        )
        # ticks count cells centred on p; seaborn draws cell p on [p, p + 1]
        boundaries = np.asarray(panel.ticks) + 0.5
        ax.set_xticks(boundaries)
        ax.set_yticks(boundaries)
        ax.set_xticklabels([])
        ax.set_yticklabels([])
        ax.set_xlabel(panel.name, fontsize=12, fontweight='bold')
        ax.set_ylabel("")

    plt.tight_layout()
    output_file.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(output_file, dpi=dpi, bbox_inches='tight')
    plt.close(fig)
    log_message(f"✓ Consensus map saved: {output_file}")
    return output_file


# ------------------------------- CLI parsing -------------------------------- #
def parse_arguments(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Posterior similarity matrices and consensus maps from PMDI output',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--pmdi_output', type=str, required=True,
                        help='PMDI output file (comma-delimited, header on the first line)')
    parser.add_argument('--nclust', type=int, required=True,
                        help='Number of clusters to highlight in the consensus maps')
    parser.add_argument('--burnin', type=int, default=0,
                        help='Number of initial iterations to discard (default: 0)')
    parser.add_argument('--thin', type=int, default=1,
                        help='Keep every thin-th iteration (default: 1)')
    parser.add_argument('--orderby', type=int, default=0,
                        help='Dataset (1-based) that informs the ordering; 0 uses the overall '
                             'consensus (default: 0)')
    parser.add_argument('--output_prefix', type=str, default='pmdi_consensus',
                        help='Prefix for output files (default: pmdi_consensus)')
    parser.add_argument('--save_matrices', action='store_true',
                        help='If set, also write each posterior similarity matrix as CSV')
    return parser.parse_args(argv)


# ---------------------------------- main ------------------------------------ #
def main(argv=None) -> None:
    args = parse_arguments(argv)

    log_message("=" * 66)
    log_message("PMDI POSTERIOR SIMILARITY AND CONSENSUS MAPS")
    log_message("=" * 66)
    log_message(f"PMDI output: {args.pmdi_output}")
    log_message(f"Burn-in: {args.burnin}")
    log_message(f"Thin: {args.thin}")
    log_message(f"Clusters: {args.nclust}")
    log_message(f"Order by: {args.orderby if args.orderby else 'overall consensus'}")
    log_message(f"Output prefix: {args.output_prefix}")

    if not Path(args.pmdi_output).is_file():
        log_message(f"ERROR: PMDI output not found: {args.pmdi_output}")
        sys.exit(1)

    try:
        log_message("\n" + "-" * 66)
        log_message("STEP 1: Posterior similarity matrices")
        log_message("-" * 66)
        psm = generate_psm(args.pmdi_output, burnin=args.burnin, thin=args.thin)

        summary = summarise_psm(psm)
        for row in summary.itertuples(index=False):
            log_message(f" {row.Dataset}: mean {row.mean:.4f}, median {row.median:.4f}, "
                        f"range [{row.min:.4f}, {row.max:.4f}]")

        log_message("\n" + "-" * 66)
        log_message("STEP 2: Ordering observations")
        log_message("-" * 66)
        ordering = order_observations(psm, args.nclust, args.orderby)
        log_message(f" Ordered by: {psm.names[ordering.orderby]}")
        log_message(f" First leaf position of each cluster: {(ordering.ticks - 0.5).astype(int).tolist()}")
    except (PMDIError, ValueError) as e:
        log_message(f"ERROR: {e}")
        sys.exit(1)

    log_message("\n" + "-" * 66)
    log_message("STEP 3: Writing outputs")
    log_message("-" * 66)
    panels = panels_from_ordering(psm, ordering)
    map_file = plot_consensus_map(panels, f"{args.output_prefix}_consensus_map.png")

    cluster_file = Path(f"{args.output_prefix}_cluster_assignments.csv")
    cluster_assignments(ordering).to_csv(cluster_file, index=False)
    log_message(f"✓ Cluster assignments saved: {cluster_file}")

    if args.save_matrices:
        save_psm_matrices(psm, args.output_prefix)

    log_message("\n" + "=" * 66)
    log_message("ANALYSIS COMPLETE!")
    log_message("=" * 66)
    log_message(f"  1. {map_file} - Consensus maps")
    log_message(f"  2. {cluster_file} - Cluster assignments in leaf order")
    if args.save_matrices:
        log_message(f"  3. {args.output_prefix}_<dataset>_psm.csv - Posterior similarity matrices")


if __name__ == '__main__':
    main()
