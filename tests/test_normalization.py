from __future__ import annotations

import numpy as np
import pytest
from scipy import sparse

from scrna_explorer import normalization
from scrna_explorer.normalization import (
    library_size_factors,
    log_normalize,
    normalize,
    pooled_size_factors,
    quick_cluster,
    size_factor_divergence,
)

POOL_SIZES = [11, 21, 31, 41, 51]


def test_library_size_factors_centred(clustered_counts):
    sf = library_size_factors(clustered_counts)
    totals = np.asarray(clustered_counts.X.sum(axis=1)).ravel()

    assert sf.mean() == pytest.approx(1.0)
    np.testing.assert_allclose(sf, totals / totals.mean())


def test_quick_cluster_respects_min_size(clustered_counts):
    clusters = quick_cluster(clustered_counts, min_size=50)
    _, sizes = np.unique(clusters, return_counts=True)

    assert len(clusters) == clustered_counts.n_obs
    assert sizes.min() >= 50
    assert len(sizes) >= 2


def test_quick_cluster_single_cluster_for_small_data(clustered_counts):
    clusters = quick_cluster(clustered_counts, min_size=200)
    assert set(clusters) == {"1"}


def test_pooled_size_factors_positive_and_track_library_size(clustered_counts):
    clusters = clustered_counts.obs["group"].to_numpy()
    sf = pooled_size_factors(clustered_counts, clusters, sizes=POOL_SIZES)
    lib = library_size_factors(clustered_counts)

    assert (sf > 0).all()
    assert sf.mean() == pytest.approx(1.0)
    assert np.corrcoef(np.log(sf), np.log(lib))[0, 1] > 0.8


def test_pooled_size_factors_replace_non_positive_estimates(clustered_counts, monkeypatch, capsys):
    def pool_with_negatives(counts, lib_rel, sizes, min_mean):
        estimates = lib_rel.copy()
        estimates[:3] = -lib_rel[:3]
        estimates[3] = 0
        return estimates

    monkeypatch.setattr(normalization, "_pool_cluster", pool_with_negatives)
    clusters = np.array(["a"] * clustered_counts.n_obs)
    sf = pooled_size_factors(clustered_counts, clusters, sizes=POOL_SIZES)

    assert (sf > 0).all()
    np.testing.assert_allclose(sf, library_size_factors(clustered_counts))
    assert "4 non-positive deconvolution estimates" in capsys.readouterr().out


def test_zero_count_cell_gets_zero_factor_and_zero_expression(clustered_counts):
    counts = clustered_counts.X.toarray()
    counts[0] = 0
    clustered_counts.X = sparse.csr_matrix(counts)

    adata = normalize(
        clustered_counts, method="deconvolution", min_cluster_size=50, pool_sizes=POOL_SIZES
    )

    sf = adata.obs["size_factor"].to_numpy()
    assert sf[0] == 0
    assert (sf[1:] > 0).all()
    assert sf[1:].mean() == pytest.approx(1.0)
    assert adata.X[0].nnz == 0
    assert np.isfinite(adata.X.data).all()


def test_pooled_size_factors_rejects_small_cluster(clustered_counts):
    clusters = np.array(["a"] * (clustered_counts.n_obs - 5) + ["b"] * 5)
    with pytest.raises(ValueError, match="smallest pool size"):
        pooled_size_factors(clustered_counts, clusters, sizes=POOL_SIZES)


def test_divergence_zero_for_identical_factors(clustered_counts):
    lib = library_size_factors(clustered_counts)
    groups = clustered_counts.obs["group"].to_numpy()
    assert size_factor_divergence(lib, lib, groups) == pytest.approx(0.0)
    assert size_factor_divergence(lib, lib * 2, groups) == pytest.approx(1.0)


def test_log_normalize_keeps_counts(clustered_counts):
    counts = clustered_counts.X.copy()
    sf = library_size_factors(clustered_counts)
    adata = log_normalize(clustered_counts, sf, pseudo_count=1)

    np.testing.assert_array_equal(adata.layers["counts"].toarray(), counts.toarray())
    expected = np.log2(counts.toarray() / sf[:, None] + 1)
    np.testing.assert_allclose(adata.X.toarray(), expected, rtol=1e-6)
    assert adata.uns["log_normalized"]["base"] == 2


def test_normalize_deconvolution_records_both_estimators(clustered_counts):
    adata = normalize(
        clustered_counts, method="deconvolution", min_cluster_size=50, pool_sizes=POOL_SIZES
    )

    for key in ("size_factor_libsize", "size_factor_deconv", "size_factor", "quick_cluster"):
        assert key in adata.obs
    assert (adata.obs["size_factor"] > 0).all()
    np.testing.assert_allclose(adata.obs["size_factor"], adata.obs["size_factor_deconv"])
    assert adata.uns["log_normalized"]["size_factor_method"] == "deconvolution"


def test_normalize_auto_picks_a_method(clustered_counts):
    adata = normalize(clustered_counts, method="auto", min_cluster_size=50, pool_sizes=POOL_SIZES)
    assert adata.uns["log_normalized"]["size_factor_method"] in ("libsize", "deconvolution")
    assert "size_factor_divergence" in adata.uns


def test_normalize_unknown_method(clustered_counts):
    with pytest.raises(ValueError, match="Unknown normalization method"):
        normalize(clustered_counts, method="tmm")
