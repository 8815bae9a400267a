"""Tests for spike binning, binarization and the artifact format."""

import numpy as np
import pytest

from kpairwise.data import preprocess
from kpairwise.data.preprocess import (
    binarize,
    bin_spike_trains,
    load_artifacts,
    save_artifacts,
    select_most_active,
)


def test_bin_spike_trains_counts():
    counts = bin_spike_trains([0.0, 0.2, 0.6, 1.7], [0, 0, 1, 2], n_units=3, bin_width=0.5,
                              t_start=0.0, t_stop=2.0)

    expected = np.zeros((4, 3), dtype=np.int32)
    expected[0, 0] = 2
    expected[1, 1] = 1
    expected[3, 2] = 1
    np.testing.assert_array_equal(counts, expected)


def test_spikes_outside_window_are_ignored():
    counts = bin_spike_trains([0.0, 0.2, 0.6, 1.7], [0, 0, 1, 2], n_units=3, bin_width=0.5,
                              t_start=0.5, t_stop=1.5)

    assert counts.shape == (2, 3)
    assert counts.sum() == 1
    assert counts[0, 1] == 1


def test_bin_spike_trains_rejects_bad_unit_ids():
    with pytest.raises(ValueError):
        bin_spike_trains([0.1], [5], n_units=3, bin_width=0.5)


def test_binarize_threshold():
    counts = np.array([[0, 1, 3], [2, 0, 0]])

    np.testing.assert_array_equal(binarize(counts), [[0, 1, 1], [1, 0, 0]])
    np.testing.assert_array_equal(binarize(counts, threshold=1), [[0, 0, 1], [1, 0, 0]])
    assert binarize(counts).dtype == np.int8


def test_select_most_active_keeps_column_order():
    X = np.array([[1, 0, 1, 1],
                  [1, 0, 0, 1],
                  [0, 0, 0, 1]], dtype=np.int8)

    kept_X, kept = select_most_active(X, 2)

    np.testing.assert_array_equal(kept, [0, 3])
    np.testing.assert_array_equal(kept_X, X[:, [0, 3]])


def test_artifacts_round_trip(tmp_path):
    X = np.array([[0, 1], [1, 1], [0, 0]], dtype=np.int8)

    save_artifacts(tmp_path, X, {"source": "test"})
    loaded, meta = load_artifacts(tmp_path)

    np.testing.assert_array_equal(loaded, X)
    assert meta["n_units"] == 2
    assert meta["source"] == "test"


def test_main_from_count_raster(tmp_path):
    raster = np.array([[0, 2, 0], [1, 0, 0], [0, 0, 5]])
    np.save(tmp_path / "raster.npy", raster)

    preprocess.main(["--input", str(tmp_path / "raster.npy"), "--outdir", str(tmp_path / "out")])

    X, meta = load_artifacts(tmp_path / "out")
    np.testing.assert_array_equal(X, (raster > 0).astype(np.int8))
    assert meta["units"] == [0, 1, 2]


def test_main_from_spike_times(tmp_path):
    np.savez(tmp_path / "spikes.npz", times=np.array([0.0, 0.01, 0.05]), units=np.array([0, 1, 1]),
             n_units=3)

    preprocess.main(["--input", str(tmp_path / "spikes.npz"), "--outdir", str(tmp_path / "out"),
                     "--bin_width", "0.02"])

    X, meta = load_artifacts(tmp_path / "out")
    assert X.shape[1] == 3
    assert X[:, 2].sum() == 0
    assert meta["bin_width"] == 0.02
