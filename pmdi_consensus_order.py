#!/usr/bin/env python3
"""
Consensus Ordering of Observations
==================================

Orders observations so that clusters appear as contiguous blocks in every
consensus heatmap:

1. Picks the reference matrix (the overall consensus by default)
2. Converts similarity to dissimilarity: distance = 1 - similarity
3. Runs average-linkage (UPGMA) agglomerative clustering
4. Reads the dendrogram's leaf order and cuts the tree into nclust clusters
5. Places one tick half a cell after each cluster's first leaf

Ties in the agglomeration are broken deterministically: clusters are known by
their lowest observation index and, among equally close pairs, the pair with
the lowest indices merges first.
"""

from __future__ import annotations

from dataclasses import dataclass
from numbers import Integral

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import cut_tree, is_valid_linkage, leaves_list
from scipy.spatial.distance import squareform

from pmdi_errors import InvalidClusterCountError, InvalidIndexError
from pmdi_psm import PosteriorSimilarityMatrix

# ------------------------------- config knobs ------------------------------- #
TIE_TOLERANCE = 1e-12
TICK_OFFSET = 0.5  # tick sits half a cell after the first leaf of each cluster


@dataclass(frozen=True)
class ConsensusOrdering:
    """
    linkage  : scipy-format linkage matrix, (n_obs - 1) × 4
    order    : leaf order, order[p] is the observation drawn at position p
    ranks    : inverse of order, ranks[i] is the position of observation i
    clusters : flat cluster of each observation (0-based, nclust distinct values)
    ticks    : ascending first leaf-order position of each cluster, plus 0.5
    nclust   : requested number of clusters
    orderby  : 0-based index of the matrix the ordering was derived from
    """

    linkage: np.ndarray
    order: np.ndarray
    ranks: np.ndarray
    clusters: np.ndarray
    ticks: np.ndarray
    nclust: int
    orderby: int


def resolve_orderby(psm: PosteriorSimilarityMatrix, orderby: int) -> int:
    """Map the 1-based orderby argument (0 = last matrix) to a 0-based index."""
    n_matrices = len(psm)
    if isinstance(orderby, bool) or not isinstance(orderby, Integral):
        raise InvalidIndexError(f"orderby must be an integer, got {orderby!r}")
    if not 0 <= orderby <= n_matrices:
        raise InvalidIndexError(
            f"orderby must be between 0 and {n_matrices} for {n_matrices} matrices, got {orderby}"
        )
    if orderby == 0:
        return n_matrices - 1
    return int(orderby) - 1


def validate_nclust(nclust: int, n_obs: int) -> int:
    if isinstance(nclust, bool) or not isinstance(nclust, Integral):
        raise InvalidClusterCountError(f"nclust must be an integer, got {nclust!r}")
    if not 1 <= nclust <= n_obs:
        raise InvalidClusterCountError(
            f"nclust must be between 1 and {n_obs} (number of observations), got {nclust}"
        )
    return int(nclust)


def dissimilarity_matrix(similarity: np.ndarray) -> np.ndarray:
    """1 - similarity, kept symmetric with a zero diagonal."""
    distance = 1.0 - np.asarray(similarity, dtype=float)
    distance = np.clip(distance, 0.0, 1.0)
    distance = (distance + distance.T) / 2.0
    np.fill_diagonal(distance, 0.0)
    return distance


def average_linkage(dissimilarity: np.ndarray) -> np.ndarray:
    """
    Average-linkage agglomerative clustering with a fixed tie-break.

    Parameters:
    -----------
    dissimilarity : np.ndarray
        Square, symmetric dissimilarity matrix (see dissimilarity_matrix)

    Returns:
    --------
    np.ndarray : Linkage matrix in scipy format. Row s merges nodes Z[s, 0] and
                 Z[s, 1] at height Z[s, 2] into node n_obs + s of size Z[s, 3].
                 Z[s, 0] is the side holding the lower observation index, so
                 it is drawn on the left.
    """
    D = np.array(dissimilarity, dtype=float, copy=True)
    if D.ndim == 1:
        D = squareform(D)  # condensed form, as accepted by scipy's linkage
    if D.ndim != 2 or D.shape[0] != D.shape[1]:
        raise ValueError(f"Dissimilarity matrix must be square, got shape {D.shape}")
    n_obs = D.shape[0]
    Z = np.zeros((max(n_obs - 1, 0), 4), dtype=float)
    if n_obs < 2:
        return Z

    # Slot i holds the cluster whose lowest observation index is i
    np.fill_diagonal(D, np.inf)
    sizes = np.ones(n_obs, dtype=float)
    node_ids = np.arange(n_obs)

    # Nearest later slot of every slot: row_min[k] = min(D[k, k+1:]), row_nn[k] its lowest argmin
    row_min = np.full(n_obs, np.inf)
    row_nn = np.full(n_obs, -1, dtype=int)
    for k in range(n_obs - 1):
        row_min[k], row_nn[k] = _nearest_after(D, k)

    for step in range(n_obs - 1):
        threshold = row_min.min() + TIE_TOLERANCE
        i = int(np.flatnonzero(row_min <= threshold)[0])
        j = i + 1 + int(np.flatnonzero(D[i, i + 1:] <= threshold)[0])  # lowest i, then lowest j

        height = D[i, j]
        if step > 0:
            height = max(height, Z[step - 1, 2])  # rounding in the averages must not invert heights

        Z[step] = [node_ids[i], node_ids[j], height, sizes[i] + sizes[j]]

        merged = (sizes[i] * D[i] + sizes[j] * D[j]) / (sizes[i] + sizes[j])
        D[i, :] = merged
        D[:, i] = merged
        D[i, i] = np.inf
        D[j, :] = np.inf
        D[:, j] = np.inf

        sizes[i] += sizes[j]
        node_ids[i] = n_obs + step

        # Only slots whose nearest neighbour was i or j need a full rescan
        stale = np.flatnonzero((row_nn == i) | (row_nn == j))
        row_min[j], row_nn[j] = np.inf, -1
        for k in np.union1d(stale, [i]):
            row_min[k], row_nn[k] = _nearest_after(D, k)

        # Earlier slots may now be closest to the merged cluster
        to_merged = D[:i, i]
        closer = (to_merged < row_min[:i]) | ((to_merged == row_min[:i]) & (i < row_nn[:i]))
        row_min[:i][closer] = to_merged[closer]
        row_nn[:i][closer] = i

    is_valid_linkage(Z, throw=True, name="average_linkage")
    return Z


def _nearest_after(D: np.ndarray, k: int) -> tuple[float, int]:
    """Smallest dissimilarity from slot k to a later slot, and the lowest slot attaining it."""
    row = D[k, k + 1:]
    if row.size == 0:
        return np.inf, -1
    offset = int(np.argmin(row))
    if not np.isfinite(row[offset]):
        return np.inf, -1
    return float(row[offset]), k + 1 + offset


def cluster_boundaries(clusters_in_order: np.ndarray) -> np.ndarray:
    """Ticks at the first leaf of each flat cluster plus TICK_OFFSET, ascending."""
    _, first_positions = np.unique(clusters_in_order, return_index=True)
    return np.sort(first_positions).astype(float) + TICK_OFFSET


def order_observations(psm: PosteriorSimilarityMatrix, nclust: int, orderby: int = 0) -> ConsensusOrdering:
    """
    Derive the observation order used by all consensus maps.

    Args:
        psm (PosteriorSimilarityMatrix): Output of generate_psm
        nclust (int): Number of clusters to separate with ticks (1 <= nclust <= n_obs)
        orderby (int): Matrix that informs the ordering, 1-based; 0 uses the
            last matrix (the overall consensus when there are several datasets)

    Returns:
        ConsensusOrdering: linkage, leaf order, its inverse, flat clusters and ticks

    Raises:
        InvalidClusterCountError: If nclust is outside [1, n_obs]
        InvalidIndexError: If orderby is outside [0, number of matrices]
    """
    index = resolve_orderby(psm, orderby)
    nclust = validate_nclust(nclust, psm.n_obs)

    n_obs = psm.n_obs
    distance = dissimilarity_matrix(psm[index])
    Z = average_linkage(distance)

    if n_obs == 1:
        order = np.zeros(1, dtype=int)
        clusters = np.zeros(1, dtype=int)
    else:
        order = leaves_list(Z)
        clusters = cut_tree(Z, n_clusters=nclust).ravel()

    ranks = np.empty(n_obs, dtype=int)
    ranks[order] = np.arange(n_obs)

    return ConsensusOrdering(
        linkage=Z,
        order=np.asarray(order, dtype=int),
        ranks=ranks,
        clusters=np.asarray(clusters, dtype=int),
        ticks=cluster_boundaries(clusters[order]),
        nclust=nclust,
        orderby=index,
    )


def cluster_assignments(ordering: ConsensusOrdering) -> pd.DataFrame:
    """Observation, leaf-order position and flat cluster, sorted by position."""
    return pd.DataFrame({
        "observation": ordering.order,
        "position": np.arange(len(ordering.order)),
        "cluster": ordering.clusters[ordering.order],
    })
