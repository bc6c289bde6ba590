#!/usr/bin/env python3
"""
Processing utilities for single-cell RNA-seq analysis
Handles PCA on the variable genes, the elbow choice of components and the
visualization-only t-SNE / UMAP embeddings
"""

import matplotlib.pyplot as plt
import numpy as np
import scanpy as sc

from scrna_explorer.config import DIMRED_PARAMS


def run_pca(adata, n_comps=None, random_state=None):
    """Run PCA on the highly variable genes

    Args:
        adata: Log-normalized AnnData object with var["highly_variable"]
        n_comps: Number of components
        random_state: Seed for the arpack solver

    Returns:
        AnnData object with obsm["X_pca"]
    """
    n_comps = DIMRED_PARAMS["n_comps"] if n_comps is None else n_comps
    random_state = DIMRED_PARAMS["random_state"] if random_state is None else random_state

    if "log_normalized" not in adata.uns:
        raise ValueError("Data must be normalized before PCA")
    if "highly_variable" not in adata.var:
        raise KeyError("adata.var['highly_variable'] missing - select variable features first")

    n_hvg = int(adata.var["highly_variable"].sum())
    n_comps = min(n_comps, n_hvg - 1, adata.n_obs - 1)
    if n_comps < 1:
        raise ValueError(f"Too few variable genes ({n_hvg}) or cells for PCA")

    print(f"Running PCA ({n_comps} components on {n_hvg} genes)...")
    sc.tl.pca(
        adata,
        n_comps=n_comps,
        mask_var="highly_variable",
        svd_solver="arpack",
        random_state=random_state,
    )

    return adata


def find_elbow_point(variance):
    """Number of components at the elbow of the explained-variance curve

    The elbow is the point farthest from the straight line joining the first
    and last points of the curve.

    Args:
        variance: Explained variance (or percentage) per component, descending

    Returns:
        1-based number of components to keep
    """
    y = np.asarray(variance, dtype=float)
    if y.size < 3:
        return int(y.size)

    x = np.arange(1, y.size + 1, dtype=float)
    start = np.array([x[0], y[0]])
    end = np.array([x[-1], y[-1]])
    line = (end - start) / np.linalg.norm(end - start)

    points = np.column_stack([x, y]) - start
    projection = np.outer(points @ line, line)
    distance = np.linalg.norm(points - projection, axis=1)

    return int(np.argmax(distance)) + 1


def choose_n_pcs(adata, min_pcs=None):
    """Pick the number of informative components and record it

    Returns:
        Number of PCs (stored in uns["pca"]["n_pcs_elbow"])
    """
    min_pcs = DIMRED_PARAMS["min_pcs"] if min_pcs is None else min_pcs
    if "pca" not in adata.uns:
        raise KeyError("PCA results not found - run run_pca first")

    ratio = adata.uns["pca"]["variance_ratio"]
    elbow = find_elbow_point(ratio * 100)
    n_pcs = int(min(max(elbow, min_pcs), len(ratio)))
    adata.uns["pca"]["n_pcs_elbow"] = n_pcs

    print(f"  Elbow at {elbow} PCs; using {n_pcs}")
    return n_pcs


def run_embeddings(adata, n_pcs=None, n_neighbors=None, perplexity=None, random_state=None):
    """Compute t-SNE and UMAP from the leading PCs

    Both embeddings are for plots only; no quantitative step reads them.

    Args:
        adata: AnnData object with obsm["X_pca"]
        n_pcs: Number of PCs (default: elbow)
        n_neighbors: UMAP neighborhood size
        perplexity: t-SNE perplexity
        random_state: Seed for both embeddings

    Returns:
        AnnData object with obsm["X_tsne"] and obsm["X_umap"]
    """
    n_neighbors = DIMRED_PARAMS["n_neighbors"] if n_neighbors is None else n_neighbors
    perplexity = DIMRED_PARAMS["perplexity"] if perplexity is None else perplexity
    random_state = DIMRED_PARAMS["random_state"] if random_state is None else random_state
    if n_pcs is None:
        n_pcs = DIMRED_PARAMS["n_pcs"] or adata.uns.get("pca", {}).get("n_pcs_elbow")

    # t-SNE needs perplexity < n_cells / 3
    perplexity = min(perplexity, max((adata.n_obs - 1) / 3, 1))

    print("Running t-SNE...")
    sc.tl.tsne(adata, n_pcs=n_pcs, perplexity=perplexity, random_state=random_state)

    print("Computing neighborhood graph for UMAP...")
    sc.pp.neighbors(
        adata,
        n_neighbors=min(n_neighbors, adata.n_obs - 1),
        n_pcs=n_pcs,
        random_state=random_state,
        key_added="umap_neighbors",
    )
    print("Running UMAP...")
    sc.tl.umap(adata, neighbors_key="umap_neighbors", random_state=random_state)

    adata.uns["embeddings"] = {
        "bases": ["tsne", "umap"],
        "n_pcs": int(n_pcs) if n_pcs is not None else None,
        "visualization_only": True,
    }

    return adata


def plot_pca_elbow(adata, save_dir=None):
    """Explained variance per component with the chosen elbow

    Args:
        adata: AnnData object after choose_n_pcs()
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    ratio = adata.uns["pca"]["variance_ratio"] * 100
    elbow = adata.uns["pca"].get("n_pcs_elbow")

    fig, ax = plt.subplots(figsize=(6, 4))
    ax.plot(np.arange(1, ratio.size + 1), ratio, "o-", markersize=3, color="black")
    if elbow is not None:
        ax.axvline(elbow, color="red", linestyle="--", label=f"{elbow} PCs")
        ax.legend(loc="best")
    ax.set_xlabel("Principal component")
    ax.set_ylabel("Variance explained (%)")
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "pca_elbow_plot.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/pca_elbow_plot.png")
        plt.close(fig)
    else:
        plt.show()


def plot_embeddings(adata, color="cluster", save_dir=None):
    """Plot t-SNE and UMAP side by side

    Args:
        adata: AnnData object with t-SNE and UMAP coordinates
        color: obs column to colour by
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting embeddings...")

    fig, axes = plt.subplots(1, 2, figsize=(12, 5))
    sc.pl.tsne(adata, color=color, legend_loc="on data", title="t-SNE", ax=axes[0], show=False)
    sc.pl.umap(adata, color=color, legend_loc="on data", title="UMAP", ax=axes[1], show=False)

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "embeddings.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/embeddings.png")
        plt.close(fig)
    else:
        plt.show()
