#!/usr/bin/env python3
"""
PMDI Trace Loader
=================

Reads the comma-delimited trace written by the PMDI sampler and keeps only the
block of cluster-label columns:

1. Reads the header row and the numeric body (skipping burn-in rows)
2. Counts the datasets from the mass-parameter columns in the header
3. Locates the first cluster-label column from that count
4. Thins the retained iterations and checks every dataset has the same
   number of observations

Column layout of a PMDI trace (K datasets, n observations each):

    Iteration | MassParameter_1..K | phi_ij (i < j) | [LogLikelihood if K == 1] |
    <dataset1>_1..n | <dataset2>_1..n | ... | <datasetK>_1..n

The single-dataset LogLikelihood column is read opaquely and never used.
"""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass
from datetime import datetime
from math import comb
from pathlib import Path

import numpy as np
import pandas as pd

from pmdi_errors import ShapeError

# ------------------------------- config knobs ------------------------------- #
MASS_PARAMETER_PATTERN = re.compile(r"MassParameter")
N_LEADING_COLUMNS = 1  # iteration index


# --------------------------------- logging ---------------------------------- #
def log_message(message: str) -> None:
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    print(f"[{timestamp}] {message}")
    sys.stdout.flush()


# ------------------------------ layout helpers ------------------------------ #
@dataclass(frozen=True)
class TraceLayout:
    """Column offsets of a PMDI trace, resolved from its header."""

    n_datasets: int
    n_mass_parameters: int
    n_pairwise_parameters: int
    n_extra: int
    label_start: int
    n_columns: int

    @property
    def n_label_columns(self) -> int:
        return self.n_columns - self.label_start

    @property
    def n_obs(self) -> int:
        n_obs, remainder = divmod(self.n_label_columns, self.n_datasets)
        if remainder != 0:
            raise ShapeError(
                f"{self.n_label_columns} cluster-label columns cannot be split into "
                f"{self.n_datasets} datasets: datasets have different numbers of observations"
            )
        return n_obs


def resolve_trace_layout(header: list[str], pattern: re.Pattern = MASS_PARAMETER_PATTERN) -> TraceLayout:
    """
    Work out where the cluster-label block starts.

    Args:
        header (list[str]): Column names of the trace
        pattern (re.Pattern): Regex identifying the per-dataset mass parameters

    Returns:
        TraceLayout: Dataset count and 0-based offset of the first label column

    Purpose: There is one mass parameter per dataset and one mixing parameter
    per pair of datasets. Single-dataset runs carry a LogLikelihood column instead
    of the (empty) pairwise block.
    """
    n_datasets = sum(1 for name in header if pattern.search(name))
    if n_datasets == 0:
        raise ShapeError(f"No columns matching '{pattern.pattern}' in header; cannot count datasets")

    n_pairwise = comb(n_datasets, 2)
    n_extra = 1 if n_datasets == 1 else 0
    label_start = N_LEADING_COLUMNS + n_datasets + n_pairwise + n_extra

    if label_start >= len(header):
        raise ShapeError(
            f"Header has {len(header)} columns but cluster labels should start at column "
            f"{label_start + 1} for {n_datasets} dataset(s)"
        )

    return TraceLayout(
        n_datasets=n_datasets,
        n_mass_parameters=n_datasets,
        n_pairwise_parameters=n_pairwise,
        n_extra=n_extra,
        label_start=label_start,
        n_columns=len(header),
    )


def read_trace_header(path) -> list[str]:
    """Return the comma-separated column names on the first line of the trace."""
    with open(path, encoding="utf-8") as fh:
        first_line = fh.readline()
    return [name.strip() for name in first_line.rstrip("\r\n").split(",")]


def derive_dataset_names(label_header: list[str], n_datasets: int, n_obs: int) -> tuple[str, ...]:
    """
    Dataset names are the prefixes before the first underscore of the label
    columns, in first-seen order. Each block of n_obs columns must belong to
    exactly one dataset.
    """
    prefixes = [name.split("_", 1)[0] for name in label_header]
    names = tuple(dict.fromkeys(prefixes))

    if len(names) != n_datasets:
        raise ShapeError(
            f"Found {len(names)} dataset prefixes {list(names)} in the label columns, "
            f"expected {n_datasets}"
        )

    for k, name in enumerate(names):
        block = prefixes[k * n_obs:(k + 1) * n_obs]
        if any(prefix != name for prefix in block):
            raise ShapeError(
                f"Label columns {k * n_obs + 1}-{(k + 1) * n_obs} should all belong to "
                f"dataset '{name}': datasets have different numbers of observations"
            )

    return names


# ------------------------------- trace table -------------------------------- #
@dataclass(frozen=True)
class TraceTable:
    """Retained cluster labels: rows are iterations, columns are K blocks of n_obs."""

    labels: np.ndarray
    n_datasets: int
    n_obs: int
    names: tuple[str, ...]
    layout: TraceLayout

    @property
    def n_iterations(self) -> int:
        return self.labels.shape[0]

    def dataset_labels(self, k: int) -> np.ndarray:
        """Label block (iterations × observations) of the 0-based dataset k."""
        if not 0 <= k < self.n_datasets:
            raise IndexError(f"Dataset index {k} out of range for {self.n_datasets} dataset(s)")
        return self.labels[:, k * self.n_obs:(k + 1) * self.n_obs]


def load_trace(path, burnin: int = 0, thin: int = 1) -> TraceTable:
    """
    Load the cluster-label block of a PMDI trace.

    Parameters:
    -----------
    path : str or Path
        Location of the PMDI output file
    burnin : int
        Number of initial iterations to discard (default: 0)
    thin : int
        Keep every thin-th iteration after burn-in (default: 1)

    Returns:
    --------
    TraceTable : labels, dataset count, observation count and dataset names
    """
    if burnin < 0:
        raise ValueError(f"burnin must be non-negative, got {burnin}")
    if thin < 1:
        raise ValueError(f"thin must be at least 1, got {thin}")

    path = Path(path)
    log_message(f"Loading PMDI output: {path}")

    header = read_trace_header(path)
    layout = resolve_trace_layout(header)
    n_obs = layout.n_obs
    names = derive_dataset_names(header[layout.label_start:], layout.n_datasets, n_obs)

    try:
        body = pd.read_csv(path, sep=",", header=None, skiprows=burnin + 1)
    except pd.errors.EmptyDataError as e:
        raise ShapeError(f"No iterations left in {path.name} after discarding {burnin} as burn-in") from e

    if body.shape[1] != layout.n_columns:
        raise ShapeError(
            f"Header has {layout.n_columns} columns but the data rows have {body.shape[1]}"
        )

    output = body.to_numpy(dtype=float)
    labels = output[::thin, layout.label_start:]

    log_message(f" Datasets: {layout.n_datasets} ({', '.join(names)})")
    log_message(f" Observations per dataset: {n_obs}")
    log_message(f" Iterations retained: {labels.shape[0]} (burn-in {burnin}, thin {thin})")

    return TraceTable(
        labels=labels,
        n_datasets=layout.n_datasets,
        n_obs=n_obs,
        names=names,
        layout=layout,
    )
