#!/usr/bin/env python3
"""
Normalization utilities for single-cell RNA-seq analysis
Handles library-size and pooled (deconvolution) size factors and the log transform
"""

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse
from scipy.sparse.linalg import lsqr

from scrna_explorer.clustering import build_snn_graph, cluster_graph
from scrna_explorer.config import NORMALIZATION_PARAMS

# Weight of the per-cell equations that keep the pooled system solvable
REGULARIZATION_WEIGHT = 1e-6


def get_counts(adata):
    """Raw count matrix (cells x genes) as CSR"""
    X = adata.layers["counts"] if "counts" in adata.layers else adata.X
    return sparse.csr_matrix(X, dtype=np.float64)


def library_size_factors(adata):
    """Size factors proportional to total count, centred to unit mean

    Args:
        adata: AnnData object with raw counts

    Returns:
        numpy array of per-cell size factors
    """
    lib_sizes = np.asarray(get_counts(adata).sum(axis=1)).ravel()
    if lib_sizes.mean() <= 0:
        raise ValueError("All cells have zero counts")
    return lib_sizes / lib_sizes.mean()


def _merge_small_clusters(embedding, labels, min_size):
    labels = np.asarray(labels, dtype=object).copy()
    while True:
        ids, counts = np.unique(labels, return_counts=True)
        if len(ids) < 2 or counts.min() >= min_size:
            break
        smallest = ids[np.argmin(counts)]
        centroids = {c: embedding[labels == c].mean(axis=0) for c in ids}
        others = [c for c in ids if c != smallest]
        target = min(
            others, key=lambda c: np.linalg.norm(centroids[c] - centroids[smallest])
        )
        labels[labels == smallest] = target

    ids, first_seen, counts = np.unique(labels, return_index=True, return_counts=True)
    order = np.lexsort((first_seen, -counts))
    mapping = {ids[old]: str(new + 1) for new, old in enumerate(order)}
    return np.array([mapping[c] for c in labels], dtype=object)


def quick_cluster(adata, min_size=None, n_comps=50, k=10, random_state=0):
    """Rough clustering of cells to group similar compositions before pooling

    Log library-size normalized counts -> PCA -> SNN graph -> walktrap;
    clusters smaller than min_size are merged into the nearest cluster.

    Args:
        adata: AnnData object with raw counts
        min_size: Minimum cluster size
        n_comps: Number of principal components
        k: SNN neighborhood size
        random_state: PCA seed

    Returns:
        Array of cluster labels
    """
    min_size = NORMALIZATION_PARAMS["min_cluster_size"] if min_size is None else min_size
    counts = get_counts(adata)
    n_cells = counts.shape[0]

    if n_cells < 2 * min_size:
        print(f"  Only {n_cells} cells - using a single cluster for pooling")
        return np.full(n_cells, "1", dtype=object)

    lib_sf = library_size_factors(adata)
    lib_sf[lib_sf == 0] = 1
    logcounts = sparse.diags(1 / lib_sf) @ counts
    logcounts.data = np.log1p(logcounts.data)

    n_comps = min(n_comps, min(logcounts.shape) - 1)
    pcs = sc.pp.pca(logcounts, n_comps=n_comps, svd_solver="arpack", random_state=random_state)

    labels = cluster_graph(build_snn_graph(pcs, k=k), method="walktrap")
    return _merge_small_clusters(pcs, labels, min_size)


def _ring_order(lib_sizes):
    """Order cells by library size on a ring: ascending odds then descending evens"""
    order = np.argsort(lib_sizes, kind="stable")
    return np.concatenate([order[0::2], order[1::2][::-1]])


def _cluster_pseudo_cell(counts, lib_rel):
    normalized = sparse.diags(1 / lib_rel) @ counts
    return np.asarray(normalized.mean(axis=0)).ravel()


def _pool_cluster(counts, lib_rel, sizes, min_mean):
    """Deconvolve per-cell factors (relative to the cluster pseudo-cell)"""
    n_cells = counts.shape[0]
    normalized = sparse.diags(1 / lib_rel) @ counts
    ave = np.asarray(normalized.mean(axis=0)).ravel()

    keep = ave >= min_mean
    if not keep.any():
        raise ValueError("No genes pass the minimum mean filter for pooling")
    normalized = normalized[:, keep].toarray()
    ave = ave[keep]

    ring = _ring_order(lib_rel)
    cumulative = np.cumsum(normalized[np.concatenate([ring, ring])], axis=0)
    cumulative = np.vstack([np.zeros((1, cumulative.shape[1])), cumulative])

    rows, cols, rhs = [], [], []
    n_rows = 0
    starts = np.arange(n_cells)
    for size in sizes:
        if size > n_cells:
            continue
        pooled = cumulative[starts + size] - cumulative[starts]
        rhs.append(np.median(pooled / ave, axis=1))
        for offset in range(size):
            rows.append(n_rows + starts)
            cols.append(ring[(starts + offset) % n_cells])
        n_rows += n_cells

    # Low-weight anchors towards the library-size estimate
    weight = np.sqrt(REGULARIZATION_WEIGHT)
    rows.append(n_rows + starts)
    cols.append(starts)
    rhs.append(np.full(n_cells, weight))

    rows = np.concatenate(rows)
    cols = np.concatenate(cols)
    values = np.ones(rows.size)
    values[-n_cells:] = weight
    design = sparse.csr_matrix((values, (rows, cols)), shape=(n_rows + n_cells, n_cells))

    solution = lsqr(design, np.concatenate(rhs), atol=1e-12, btol=1e-12)[0]
    return solution * lib_rel


def pooled_size_factors(adata, clusters, sizes=None, min_mean=None):
    """Deconvolution size factors computed from pools of cells

    Within each cluster, cells are arranged on a ring by library size and
    summed in sliding pools; each pool's factor (median ratio to the cluster
    pseudo-cell) is a linear combination of its cells' factors, and the
    system is solved by least squares. Cluster factors are rescaled against
    a reference cluster and the result is centred to unit mean.

    Args:
        adata: AnnData object with raw counts
        clusters: Per-cell cluster labels
        sizes: Pool sizes
        min_mean: Minimum library-size normalized mean for genes used in pooling

    Returns:
        numpy array of per-cell size factors
    """
    sizes = NORMALIZATION_PARAMS["pool_sizes"] if sizes is None else sizes
    min_mean = NORMALIZATION_PARAMS["min_mean"] if min_mean is None else min_mean
    sizes = sorted(set(int(s) for s in sizes))

    counts = get_counts(adata)
    clusters = np.asarray(clusters).astype(str)
    lib_sizes = np.asarray(counts.sum(axis=1)).ravel()
    nonzero = lib_sizes > 0
    if not nonzero.any():
        raise ValueError("All cells have zero counts")
    if not nonzero.all():
        print(f"Warning: {int((~nonzero).sum())} cells with zero counts get a size factor of 0")

    lib_rel = lib_sizes / lib_sizes[nonzero].mean()
    factors = np.zeros(counts.shape[0])
    pseudo_cells = {}

    for cluster in np.unique(clusters):
        cells = np.flatnonzero((clusters == cluster) & nonzero)
        if cells.size < sizes[0]:
            raise ValueError(
                f"Cluster '{cluster}' has {cells.size} cells, fewer than the "
                f"smallest pool size ({sizes[0]})"
            )
        factors[cells] = _pool_cluster(counts[cells], lib_rel[cells], sizes, min_mean)
        pseudo_cells[cluster] = _cluster_pseudo_cell(counts[cells], lib_rel[cells])

    # Rescale clusters against the one with the median pseudo-cell library size
    names = sorted(pseudo_cells)
    totals = np.array([pseudo_cells[c].sum() for c in names])
    reference = names[np.argsort(totals, kind="stable")[(len(names) - 1) // 2]]
    ref_profile = pseudo_cells[reference]
    for cluster in names:
        profile = pseudo_cells[cluster]
        usable = (profile >= min_mean) & (ref_profile >= min_mean)
        if not usable.any():
            raise ValueError(f"No shared genes to rescale cluster '{cluster}'")
        scale = np.median(profile[usable] / ref_profile[usable])
        factors[(clusters == cluster) & nonzero] *= scale

    bad = nonzero & (factors <= 0)
    if bad.any():
        print(
            f"Warning: {int(bad.sum())} non-positive deconvolution estimates "
            "replaced by library-size factors"
        )
        factors[bad] = lib_rel[bad]

    factors[nonzero] /= factors[nonzero].mean()
    return factors


def size_factor_divergence(libsize, deconv, clusters):
    """Largest per-cluster median |log2(deconvolution / library size)|"""
    frame = pd.DataFrame(
        {"libsize": libsize, "deconv": deconv, "cluster": np.asarray(clusters).astype(str)}
    )
    frame = frame[(frame["libsize"] > 0) & (frame["deconv"] > 0)]
    ratio = np.log2(frame["deconv"] / frame["libsize"])
    return float(ratio.groupby(frame["cluster"]).median().abs().max())


def log_normalize(adata, size_factors, pseudo_count=1):
    """Divide counts by size factors and log2-transform with a pseudo-count

    Raw counts are kept in adata.layers["counts"].

    Args:
        adata: AnnData object with raw counts
        size_factors: Per-cell size factors
        pseudo_count: Offset added before the log

    Returns:
        AnnData object with log-expression values in X
    """
    counts = get_counts(adata)
    adata.layers["counts"] = counts.copy()

    size_factors = np.asarray(size_factors, dtype=float)
    inverse = np.divide(1.0, size_factors, out=np.zeros_like(size_factors), where=size_factors > 0)
    scaled = sparse.diags(inverse) @ counts

    if pseudo_count == 1:
        scaled.data = np.log2(scaled.data + 1)
        adata.X = scaled.tocsr()
    else:
        adata.X = np.log2(scaled.toarray() + pseudo_count)

    adata.obs["size_factor"] = size_factors
    adata.uns["log_normalized"] = {"base": 2, "pseudo_count": float(pseudo_count)}
    return adata


def normalize(adata, method=None, pseudo_count=None, min_cluster_size=None, pool_sizes=None):
    """Compute size factors and log-normalize

    Args:
        adata: AnnData object with raw counts (QC-filtered)
        method: "libsize", "deconvolution" or "auto"
        pseudo_count: Log offset
        min_cluster_size: Minimum quick-cluster size
        pool_sizes: Deconvolution pool sizes

    Returns:
        Normalized AnnData object
    """
    method = NORMALIZATION_PARAMS["method"] if method is None else method
    pseudo_count = NORMALIZATION_PARAMS["pseudo_count"] if pseudo_count is None else pseudo_count

    print("Computing size factors...")
    libsize = library_size_factors(adata)
    adata.obs["size_factor_libsize"] = libsize

    chosen = method
    if method in ("deconvolution", "auto"):
        print("  Quick clustering for pooling...")
        clusters = quick_cluster(adata, min_size=min_cluster_size)
        adata.obs["quick_cluster"] = pd.Categorical(clusters)
        print(f"  {len(set(clusters))} quick clusters")

        deconv = pooled_size_factors(adata, clusters, sizes=pool_sizes)
        adata.obs["size_factor_deconv"] = deconv

        if method == "auto":
            divergence = size_factor_divergence(libsize, deconv, clusters)
            threshold = NORMALIZATION_PARAMS["divergence_threshold"]
            chosen = "deconvolution" if divergence > threshold else "libsize"
            print(f"  Size factor divergence {divergence:.3f} -> using {chosen}")
            adata.uns["size_factor_divergence"] = divergence
    elif method != "libsize":
        raise ValueError(f"Unknown normalization method '{method}'")

    size_factors = adata.obs["size_factor_deconv"] if chosen == "deconvolution" else libsize
    print(f"Log-normalizing with {chosen} size factors...")
    log_normalize(adata, np.asarray(size_factors), pseudo_count=pseudo_count)
    adata.uns["log_normalized"]["size_factor_method"] = chosen

    return adata


def plot_size_factors(adata, save_dir=None):
    """Compare deconvolution and library-size factors

    Args:
        adata: AnnData object after normalize()
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    if "size_factor_deconv" not in adata.obs:
        print("Warning: no deconvolution size factors to compare")
        return None

    fig, ax = plt.subplots(figsize=(6, 6))
    groups = adata.obs["quick_cluster"] if "quick_cluster" in adata.obs else None
    for name in (groups.cat.categories if groups is not None else [None]):
        mask = (groups == name).to_numpy() if groups is not None else slice(None)
        ax.scatter(
            adata.obs["size_factor_libsize"].to_numpy()[mask],
            adata.obs["size_factor_deconv"].to_numpy()[mask],
            s=5,
            alpha=0.6,
            label=str(name) if name is not None else None,
        )
    lims = [
        adata.obs[["size_factor_libsize", "size_factor_deconv"]].min().min(),
        adata.obs[["size_factor_libsize", "size_factor_deconv"]].max().max(),
    ]
    ax.plot(lims, lims, color="black", linestyle="--", linewidth=1)
    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel("Library size factor")
    ax.set_ylabel("Deconvolution size factor")
    if groups is not None:
        ax.legend(title="Quick cluster", loc="best", fontsize=7)
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "size_factors.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/size_factors.png")
        plt.close(fig)
    else:
        plt.show()

    return fig
