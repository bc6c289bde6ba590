from __future__ import annotations

import anndata
import numpy as np
import pandas as pd
import pytest
from scipy import sparse


def _gene_names(n_genes: int, n_mito: int) -> list[str]:
    return [f"MT-{i}" for i in range(n_mito)] + [f"GENE{i}" for i in range(n_mito, n_genes)]


@pytest.fixture
def qc_adata() -> anndata.AnnData:
    """100 cells with identical composition; cell 99 has ~10x the library size"""
    n_cells, n_genes = 100, 50
    base = 1 + (np.arange(n_genes) % 3)
    multipliers = 10 + (np.arange(n_cells) % 10)
    multipliers[-1] = 145
    counts = np.outer(multipliers, base).astype(np.float32)

    adata = anndata.AnnData(
        sparse.csr_matrix(counts),
        obs=pd.DataFrame(index=[f"cell{i}" for i in range(n_cells)]),
        var=pd.DataFrame(index=_gene_names(n_genes, 5)),
    )
    adata.var["mt"] = adata.var_names.str.startswith("MT-")
    return adata


def make_clustered_counts(
    n_per_group: int = 100,
    n_groups: int = 3,
    n_genes: int = 200,
    n_markers: int = 10,
    seed: int = 0,
) -> anndata.AnnData:
    """Poisson counts for well-separated groups

    Each group has n_markers genes expressed at 3x the base rate, while the
    other groups express them at 0.1x.
    """
    rng = np.random.default_rng(seed)
    n_cells = n_per_group * n_groups
    groups = np.repeat(np.arange(n_groups), n_per_group)

    rates = rng.gamma(shape=2.0, scale=1.0, size=n_genes) + 0.2
    profile = np.tile(rates, (n_groups, 1))
    for g in range(n_groups):
        start = 10 + g * n_markers
        profile[:, start : start + n_markers] *= 0.1
        profile[g, start : start + n_markers] *= 30

    library = rng.lognormal(mean=0.0, sigma=0.25, size=n_cells)
    lam = profile[groups] * library[:, None]
    counts = rng.poisson(lam).astype(np.float32)

    adata = anndata.AnnData(
        sparse.csr_matrix(counts),
        obs=pd.DataFrame(
            {"group": pd.Categorical([f"g{g}" for g in groups])},
            index=[f"cell{i}" for i in range(n_cells)],
        ),
        var=pd.DataFrame(index=_gene_names(n_genes, 3)),
    )
    adata.var["mt"] = adata.var_names.str.startswith("MT-")
    return adata


@pytest.fixture
def clustered_counts() -> anndata.AnnData:
    return make_clustered_counts()


@pytest.fixture
def normalized_adata(clustered_counts: anndata.AnnData) -> anndata.AnnData:
    from scrna_explorer.normalization import library_size_factors, log_normalize

    adata = clustered_counts
    return log_normalize(adata, library_size_factors(adata))


def make_reference(n_per_label: int = 30, n_genes: int = 60, seed: int = 1):
    """Log-expression reference with three labels and 15 specific genes per label"""
    rng = np.random.default_rng(seed)
    labels = ["B", "NK", "T"]
    base = rng.uniform(0.5, 1.5, size=n_genes)

    rows, obs_labels = [], []
    for i, label in enumerate(labels):
        profile = base.copy()
        profile[i * 15 : (i + 1) * 15] += 3
        rows.append(profile + rng.normal(0, 0.3, size=(n_per_label, n_genes)))
        obs_labels += [label] * n_per_label

    X = np.clip(np.vstack(rows), 0, None)
    ref = anndata.AnnData(
        X,
        obs=pd.DataFrame(
            {"louvain": obs_labels}, index=[f"ref{i}" for i in range(len(obs_labels))]
        ),
        var=pd.DataFrame(index=[f"GENE{i}" for i in range(n_genes)]),
    )
    return ref


@pytest.fixture
def reference_adata() -> anndata.AnnData:
    return make_reference()
