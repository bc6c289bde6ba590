from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from scrna_explorer.feature_selection import (
    compare_hvg_sets,
    get_top_hvgs,
    model_gene_cv2,
    model_gene_var,
    select_variable_features,
)

MARKER_GENES = {f"GENE{i}" for i in range(10, 40)}


def test_variance_model_ranks_marker_genes_first(normalized_adata):
    stats = model_gene_var(normalized_adata)

    assert {"mean", "total", "tech", "bio", "p_value", "FDR"} <= set(stats.columns)
    np.testing.assert_allclose(stats["bio"], stats["total"] - stats["tech"])
    top = get_top_hvgs(stats, n_top=30)
    assert len(MARKER_GENES & set(top)) >= 24


def test_cv2_model_ranks_marker_genes_first(normalized_adata):
    stats = model_gene_cv2(normalized_adata)

    assert (stats["trend"].dropna() > 0).all()
    top = get_top_hvgs(stats, n_top=30, var_field="ratio", var_threshold=1)
    assert len(MARKER_GENES & set(top)) >= 24


def test_top_hvgs_exact_sorted_unique(normalized_adata):
    stats = model_gene_var(normalized_adata)
    top = get_top_hvgs(stats, n_top=50)

    assert len(top) == 50
    assert len(set(top)) == 50
    effects = stats.loc[top, "bio"].to_numpy()
    assert (np.diff(effects) <= 0).all()


def test_top_hvgs_fewer_when_threshold_excludes_genes():
    stats = pd.DataFrame(
        {"bio": [1.0, 2.0, 2.0, 0.5, -1.0], "FDR": [0.01, 0.2, 0.01, 0.01, 0.9]},
        index=["b", "c", "a", "d", "e"],
    )
    assert get_top_hvgs(stats, n_top=10) == ["a", "c", "b", "d"]
    assert get_top_hvgs(stats, n_top=2) == ["a", "c"]
    assert get_top_hvgs(stats, n_top=10, fdr_threshold=0.05) == ["a", "b", "d"]


def test_top_hvgs_drops_duplicate_ids():
    stats = pd.DataFrame({"bio": [3.0, 2.0, 1.0]}, index=["x", "x", "y"])
    assert get_top_hvgs(stats, n_top=5) == ["x", "y"]


def test_compare_hvg_sets():
    agreement = compare_hvg_sets(["a", "b", "c"], ["b", "c", "d"])
    assert agreement["n_shared"] == 2
    assert agreement["jaccard"] == pytest.approx(0.5)


def test_select_variable_features_marks_genes(normalized_adata):
    adata = select_variable_features(normalized_adata, method="var", n_top=40)

    assert adata.var["highly_variable"].sum() == 40
    assert adata.uns["hvg"]["n_selected"] == 40
    assert 0 <= adata.uns["hvg"]["agreement"]["jaccard"] <= 1
    assert {"var_bio", "cv2_ratio"} <= set(adata.var.columns)


def test_select_variable_features_requires_normalization(clustered_counts):
    with pytest.raises(ValueError, match="normalized"):
        select_variable_features(clustered_counts)
