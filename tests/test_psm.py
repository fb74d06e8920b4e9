"""
Tests for posterior similarity matrix construction.
"""

import numpy as np
import pandas as pd
import pytest

from pmdi_errors import ShapeError
from pmdi_psm import (
    OVERALL_NAME,
    PSMBuilder,
    co_clustering_frequencies,
    generate_psm,
    psm_long_form,
    save_psm_matrices,
    summarise_psm,
)


def test_co_clustering_frequencies_lower_triangle():
    """Frequencies fill the strict lower triangle only."""
    labels = np.array([[1, 1, 2],
                       [1, 2, 2]])
    freq = co_clustering_frequencies(labels)

    expected = np.array([[0.0, 0.0, 0.0],
                         [0.5, 0.0, 0.0],
                         [0.0, 0.5, 0.0]])
    np.testing.assert_array_equal(freq, expected)


def test_co_clustering_requires_iterations():
    """An empty label block has no frequencies."""
    with pytest.raises(ShapeError):
        co_clustering_frequencies(np.empty((0, 3)))


def test_single_dataset_psm(single_dataset_trace):
    """One dataset gives one matrix and no overall consensus."""
    psm = generate_psm(single_dataset_trace)

    assert len(psm) == 1
    assert psm.names == ("Gene",)
    assert psm.n_obs == 5
    assert psm.n_datasets == 1
    assert psm.n_iterations == 4
    assert OVERALL_NAME not in psm.names

    m = psm[0]
    assert m[0, 2] == 1.0
    assert m[2, 0] == 1.0
    assert m[0, 1] == 0.25
    assert m[1, 3] == 0.5
    assert m[0, 3] == 0.25
    np.testing.assert_array_equal(m[4, :4], 0.0)


def test_psm_invariants(two_dataset_trace):
    """Every matrix is symmetric, within [0, 1] and has a unit diagonal."""
    psm = generate_psm(two_dataset_trace)

    assert len(psm) == 3
    for name, matrix in psm:
        assert matrix.shape == (4, 4)
        np.testing.assert_array_equal(matrix, matrix.T)
        assert np.all(matrix >= 0.0) and np.all(matrix <= 1.0)
        assert np.all(np.diag(matrix) == 1.0)


def test_overall_is_mean_of_datasets(two_dataset_trace):
    """The overall matrix averages the dataset matrices off the diagonal."""
    psm = generate_psm(two_dataset_trace)

    assert psm.names == ("Alpha", "Beta", OVERALL_NAME)
    assert psm.n_datasets == 2
    expected = (psm["Alpha"] + psm["Beta"]) / 2
    off = ~np.eye(4, dtype=bool)
    np.testing.assert_allclose(psm[OVERALL_NAME][off], expected[off])
    assert np.all(np.diag(psm[OVERALL_NAME]) == 1.0)


def test_end_to_end_example(two_dataset_trace):
    """Fixed pairs are exactly 1.0, never-mixed pairs exactly 0.0."""
    psm = generate_psm(two_dataset_trace)
    alpha = psm["Alpha"]

    assert alpha[0, 1] == 1.0
    assert alpha[2, 3] == 1.0
    assert alpha[0, 2] == 0.0
    assert alpha[1, 3] == 0.0

    overall = psm[OVERALL_NAME][0, 1]
    assert alpha[0, 1] / 2 < overall < 1.0


def test_burnin_and_thin_change_iteration_count(two_dataset_trace):
    """PSM records the number of iterations it was computed over."""
    psm = generate_psm(two_dataset_trace, burnin=10, thin=4)
    assert psm.n_iterations == 23


def test_matrices_are_read_only(two_dataset_trace):
    """The built structure cannot be modified in place."""
    psm = generate_psm(two_dataset_trace)
    with pytest.raises(ValueError):
        psm[0][0, 1] = 0.3


def test_lookup_unknown_name(two_dataset_trace):
    """Unknown dataset names raise KeyError."""
    psm = generate_psm(two_dataset_trace)
    with pytest.raises(KeyError):
        psm["Gamma"]


def test_builder_rejects_wrong_width():
    """A label block with the wrong number of observations is rejected."""
    builder = PSMBuilder(n_obs=3)
    with pytest.raises(ShapeError):
        builder.add_dataset("A", np.ones((5, 4)))


def test_builder_rejects_different_iteration_counts():
    """All datasets must come from the same iterations."""
    builder = PSMBuilder(n_obs=2).add_dataset("A", np.ones((5, 2)))
    with pytest.raises(ShapeError):
        builder.add_dataset("B", np.ones((4, 2)))


def test_builder_without_datasets():
    """Nothing to build without datasets."""
    with pytest.raises(ShapeError):
        PSMBuilder(n_obs=2).build()


def test_builder_three_datasets():
    """Three datasets give four matrices with Overall last."""
    rng = np.random.default_rng(0)
    builder = PSMBuilder(n_obs=6)
    for name in ["A", "B", "C"]:
        builder.add_dataset(name, rng.integers(0, 3, size=(50, 6)))
    psm = builder.build()

    assert psm.names == ("A", "B", "C", OVERALL_NAME)
    off = ~np.eye(6, dtype=bool)
    expected = (psm["A"] + psm["B"] + psm["C"]) / 3
    np.testing.assert_allclose(psm[OVERALL_NAME][off], expected[off])


def test_summarise_psm(single_dataset_trace):
    """One summary row per matrix."""
    psm = generate_psm(single_dataset_trace)
    summary = summarise_psm(psm)

    assert list(summary.columns) == ["Dataset", "mean", "median", "min", "max"]
    assert summary.loc[0, "Dataset"] == "Gene"
    assert summary.loc[0, "max"] == 1.0
    assert summary.loc[0, "min"] == 0.0


def test_psm_long_form(two_dataset_trace):
    """Long form has one row per cell and per matrix."""
    psm = generate_psm(two_dataset_trace)
    long_df = psm_long_form(psm)

    assert len(long_df) == 3 * 16
    row = long_df[(long_df["Dataset"] == "Alpha") & (long_df["x"] == 0) & (long_df["y"] == 1)]
    assert row["ps"].iloc[0] == 1.0


def test_psm_long_form_with_order(two_dataset_trace):
    """With an order, x and y are leaf-order positions."""
    psm = generate_psm(two_dataset_trace)
    order = [3, 2, 1, 0]
    long_df = psm_long_form(psm, order=order)

    alpha = long_df[long_df["Dataset"] == "Alpha"]
    # observation 3 is drawn first, observation 2 second
    cell = alpha[(alpha["x"] == 0) & (alpha["y"] == 1)]
    assert cell["ps"].iloc[0] == psm["Alpha"][3, 2]


def test_save_psm_matrices(tmp_path, single_dataset_trace):
    """Each matrix is written to its own CSV."""
    psm = generate_psm(single_dataset_trace)
    outputs = save_psm_matrices(psm, str(tmp_path / "run"))

    assert [p.name for p in outputs] == ["run_Gene_psm.csv"]
    saved = pd.read_csv(outputs[0], index_col=0)
    np.testing.assert_allclose(saved.values, psm["Gene"])
