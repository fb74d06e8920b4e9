#!/usr/bin/env python3
"""
Posterior Similarity Matrices from PMDI Output
==============================================

For each dataset, entry (i, j) of the posterior similarity matrix (PSM) is the
fraction of retained MCMC iterations in which observations i and j carry the
same cluster label. With more than one dataset an "Overall" consensus matrix,
the element-wise mean of the per-dataset matrices, is appended.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from pmdi_errors import ShapeError
from pmdi_trace_loader import TraceTable, load_trace, log_message

OVERALL_NAME = "Overall"


@dataclass(frozen=True)
class PosteriorSimilarityMatrix:
    """
    Per-dataset co-clustering frequencies plus the overall consensus.

    matrices : tuple of (n_obs × n_obs) read-only arrays, symmetric, diagonal 1.0
    names    : dataset names, with "Overall" last when there are several datasets
    n_iterations : number of MCMC iterations the frequencies were computed over
    """

    matrices: tuple[np.ndarray, ...]
    names: tuple[str, ...]
    n_iterations: int

    def __len__(self) -> int:
        return len(self.matrices)

    def __getitem__(self, key) -> np.ndarray:
        if isinstance(key, str):
            try:
                return self.matrices[self.names.index(key)]
            except ValueError:
                raise KeyError(f"No matrix named '{key}'; available: {list(self.names)}") from None
        return self.matrices[key]

    def __iter__(self):
        return iter(zip(self.names, self.matrices))

    @property
    def n_obs(self) -> int:
        return self.matrices[0].shape[0]

    @property
    def n_datasets(self) -> int:
        """Number of sampled datasets (excludes the overall matrix)."""
        return len(self.matrices) - 1 if len(self.matrices) > 1 else 1


def co_clustering_frequencies(labels: np.ndarray) -> np.ndarray:
    """
    Fraction of iterations in which each pair of observations shares a label.

    Parameters:
    -----------
    labels : np.ndarray
        Cluster labels, iterations × observations

    Returns:
    --------
    np.ndarray : Lower-triangular (n_obs × n_obs) matrix; entry [i, j] with
                 i > j holds the frequency, the diagonal and upper triangle are 0
    """
    labels = np.asarray(labels)
    if labels.ndim != 2:
        raise ShapeError(f"Expected a 2-D label block, got shape {labels.shape}")

    n_iter, n_obs = labels.shape
    if n_iter == 0:
        raise ShapeError("Cannot compute co-clustering frequencies from zero iterations")

    counts = np.zeros((n_obs, n_obs), dtype=float)
    for j in range(n_obs - 1):
        counts[j + 1:, j] = np.sum(labels[:, j + 1:] == labels[:, [j]], axis=0)

    return counts / n_iter


class PSMBuilder:
    """
    Accumulates one lower-triangular frequency buffer per dataset, then
    assembles the immutable PosteriorSimilarityMatrix in build().
    """

    def __init__(self, n_obs: int, n_iterations: int | None = None):
        self.n_obs = n_obs
        self.n_iterations = n_iterations
        self._buffers: list[np.ndarray] = []
        self._names: list[str] = []

    def add_dataset(self, name: str, labels: np.ndarray) -> "PSMBuilder":
        labels = np.asarray(labels)
        if labels.ndim != 2 or labels.shape[1] != self.n_obs:
            raise ShapeError(
                f"Dataset '{name}' has label block of shape {labels.shape}, "
                f"expected (iterations, {self.n_obs})"
            )
        if self.n_iterations is None:
            self.n_iterations = labels.shape[0]
        elif labels.shape[0] != self.n_iterations:
            raise ShapeError(
                f"Dataset '{name}' has {labels.shape[0]} iterations, expected {self.n_iterations}"
            )

        self._buffers.append(co_clustering_frequencies(labels))
        self._names.append(name)
        return self

    def build(self) -> PosteriorSimilarityMatrix:
        if not self._buffers:
            raise ShapeError("No datasets were added; nothing to build")

        matrices = []
        for lower in self._buffers:
            full = lower + lower.T
            np.fill_diagonal(full, 1.0)
            matrices.append(full)

        names = list(self._names)
        if len(matrices) > 1:
            overall = np.mean(np.stack(matrices), axis=0)
            np.fill_diagonal(overall, 1.0)
            matrices.append(overall)
            names.append(OVERALL_NAME)

        for matrix in matrices:
            matrix.setflags(write=False)

        return PosteriorSimilarityMatrix(
            matrices=tuple(matrices),
            names=tuple(names),
            n_iterations=self.n_iterations,
        )


def build_psm(trace: TraceTable) -> PosteriorSimilarityMatrix:
    """Compute the PSM of every dataset block of a loaded trace."""
    log_message(f"Computing posterior similarity matrices ({trace.n_obs} × {trace.n_obs}) …")

    builder = PSMBuilder(trace.n_obs, trace.n_iterations)
    for k, name in enumerate(trace.names):
        builder.add_dataset(name, trace.dataset_labels(k))
        log_message(f"  ✓ {name}")

    psm = builder.build()
    if len(psm) > trace.n_datasets:
        log_message(f"  ✓ {OVERALL_NAME} (mean of {trace.n_datasets} datasets)")
    return psm


def generate_psm(path, burnin: int = 0, thin: int = 1) -> PosteriorSimilarityMatrix:
    """
    Generate the posterior similarity matrices from PMDI output.

    Args:
        path (str or Path): Location on disk of the PMDI output file
        burnin (int): Number of initial iterations to discard as burn-in
        thin (int): Thinning rate; thin = 2 discards every second iteration

    Returns:
        PosteriorSimilarityMatrix: K matrices where element (i, j) measures how
        often observations i and j are co-clustered in dataset k, plus the
        overall consensus matrix when K > 1

    Raises:
        ShapeError: If the trace does not split into datasets of equal size
    """
    trace = load_trace(path, burnin=burnin, thin=thin)
    return build_psm(trace)


# ------------------------------ tabular output ------------------------------ #
def summarise_psm(psm: PosteriorSimilarityMatrix) -> pd.DataFrame:
    """Off-diagonal similarity statistics for each matrix."""
    rows = []
    off_diagonal = ~np.eye(psm.n_obs, dtype=bool)
    for name, matrix in psm:
        values = matrix[off_diagonal]
        if values.size == 0:
            values = np.array([np.nan])
        rows.append({
            "Dataset": name,
            "mean": float(np.mean(values)),
            "median": float(np.median(values)),
            "min": float(np.min(values)),
            "max": float(np.max(values)),
        })
    return pd.DataFrame(rows, columns=["Dataset", "mean", "median", "min", "max"])


def psm_long_form(psm: PosteriorSimilarityMatrix, order=None) -> pd.DataFrame:
    """
    One row per matrix cell: Dataset, x, y, ps.

    If a leaf order is given, x and y are the positions of the observations in
    that order instead of the observation indices.
    """
    n_obs = psm.n_obs
    if order is None:
        positions = np.arange(n_obs)
    else:
        positions = np.argsort(np.asarray(order))

    x = np.repeat(positions, n_obs)
    y = np.tile(positions, n_obs)
    frames = [
        pd.DataFrame({"Dataset": name, "x": x, "y": y, "ps": matrix.ravel()})
        for name, matrix in psm
    ]
    return pd.concat(frames, ignore_index=True)


def save_psm_matrices(psm: PosteriorSimilarityMatrix, prefix: str) -> list[Path]:
    """Write each matrix to {prefix}_{name}_psm.csv."""
    outputs = []
    for name, matrix in psm:
        out = Path(f"{prefix}_{name}_psm.csv")
        out.parent.mkdir(parents=True, exist_ok=True)
        pd.DataFrame(matrix).to_csv(out)
        log_message(f"  ✓ PSM saved: {out}")
        outputs.append(out)
    return outputs
