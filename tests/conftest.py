"""
Synthetic PMDI traces for the test suite.

Layout written by write_trace: Iteration, MassParameter_1..K, phi_ij for
i < j (or the LogLikelihood column when K == 1), then K blocks of cluster labels
named <dataset>_<observation>.
"""

from itertools import combinations

import numpy as np
import pytest


def trace_header(names, n_obs):
    K = len(names)
    header = ["Iteration"]
    header += [f"MassParameter_{k + 1}" for k in range(K)]
    if K == 1:
        header += ["LogLikelihood"]
    else:
        header += [f"Phi_{i + 1}{j + 1}" for i, j in combinations(range(K), 2)]
    for name in names:
        header += [f"{name}_{i + 1}" for i in range(n_obs)]
    return header


def write_trace(path, header, label_rows):
    """Write a trace whose label columns are label_rows; other columns get filler values."""
    n_params = len(header) - len(label_rows[0])
    lines = [",".join(header)]
    for it, labels in enumerate(label_rows):
        params = [str(it + 1)] + ["0.5"] * (n_params - 1)
        lines.append(",".join(params + [str(int(v)) for v in labels]))
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def two_dataset_trace(tmp_path):
    """
    Two datasets of four observations, 100 iterations.

    Alpha always places {1,2} and {3,4} together (with changing label values);
    Beta is a uniform random labelling over three clusters.
    """
    rng = np.random.default_rng(7)
    rows = []
    for it in range(100):
        first, second = (1, 2) if it % 2 == 0 else (5, 3)
        alpha = [first, first, second, second]
        beta = rng.integers(1, 4, size=4).tolist()
        rows.append(alpha + beta)
    header = trace_header(["Alpha", "Beta"], 4)
    return write_trace(tmp_path / "two_datasets.csv", header, rows)


@pytest.fixture
def single_dataset_trace(tmp_path):
    """One dataset of five observations: {1,3} always together, 5 always alone."""
    rows = [
        [1, 2, 1, 2, 3],
        [1, 1, 1, 2, 3],
        [4, 2, 4, 4, 3],
        [1, 2, 1, 2, 3],
    ]
    header = trace_header(["Gene"], 5)
    return write_trace(tmp_path / "single_dataset.csv", header, rows)


@pytest.fixture
def iteration_trace(tmp_path):
    """Ten iterations, one dataset of two observations; the label of obs 1 is the row index."""
    rows = [[it, 0] for it in range(10)]
    header = trace_header(["Data"], 2)
    return write_trace(tmp_path / "iterations.csv", header, rows)
