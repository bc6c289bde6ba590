#!/usr/bin/env python3
"""
Graph-based clustering utilities for single-cell RNA-seq analysis
Builds a shared-nearest-neighbor graph on the principal components and
partitions it with igraph community detection
"""

import random

import igraph as ig
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse
from sklearn.metrics import silhouette_score
from sklearn.neighbors import NearestNeighbors

from scrna_explorer.config import CLUSTERING_METHODS, CLUSTERING_PARAMS


def build_snn_graph(X, k=10, weighting="rank"):
    """Build a shared-nearest-neighbor graph

    Each cell is its own neighbor of rank 0. Two cells are connected when
    their neighbor lists (self included) share at least one cell.

    Args:
        X: Cells x dimensions array (e.g. the first PCs)
        k: Number of nearest neighbors per cell
        weighting: "rank" (k - r/2, r = smallest summed rank of a shared
            neighbor) or "number" (count of shared neighbors)

    Returns:
        Undirected igraph.Graph with a "weight" edge attribute
    """
    X = np.asarray(X)
    n = X.shape[0]
    if n < 2:
        raise ValueError("Need at least two cells to build a neighbor graph")
    k = min(k, n - 1)

    nn = NearestNeighbors(n_neighbors=k).fit(X)
    _, idx = nn.kneighbors()

    neighbors = np.hstack([np.arange(n)[:, None], idx])
    owner = np.repeat(np.arange(n), k + 1)
    node = neighbors.ravel()
    rank = np.tile(np.arange(k + 1), n)

    order = np.argsort(node, kind="stable")
    node, owner, rank = node[order], owner[order], rank[order]
    bounds = np.flatnonzero(np.diff(node)) + 1
    starts = np.r_[0, bounds]
    ends = np.r_[bounds, node.size]

    first, second, rank_sum = [], [], []
    for start, end in zip(starts, ends):
        if end - start < 2:
            continue
        cells = owner[start:end]
        ranks = rank[start:end]
        ii, jj = np.triu_indices(cells.size, 1)
        first.append(cells[ii])
        second.append(cells[jj])
        rank_sum.append(ranks[ii] + ranks[jj])

    graph = ig.Graph(n=n, directed=False)
    if not first:
        graph.es["weight"] = []
        return graph

    a = np.concatenate(first)
    b = np.concatenate(second)
    pairs = pd.DataFrame(
        {"lo": np.minimum(a, b), "hi": np.maximum(a, b), "r": np.concatenate(rank_sum)}
    )
    grouped = pairs.groupby(["lo", "hi"], sort=True)["r"]

    if weighting == "rank":
        weights = k - grouped.min() / 2.0
    elif weighting == "number":
        weights = grouped.size().astype(float)
    else:
        raise ValueError(f"Unknown weighting '{weighting}'. Use 'rank' or 'number'.")

    weights = weights[weights > 0]
    edges = list(
        zip(
            weights.index.get_level_values(0).tolist(),
            weights.index.get_level_values(1).tolist(),
        )
    )
    graph.add_edges(edges)
    graph.es["weight"] = weights.to_numpy(dtype=float).tolist()
    return graph


def graph_from_adjacency(adjacency):
    """Rebuild an undirected weighted igraph.Graph from a symmetric matrix"""
    upper = sparse.triu(sparse.csr_matrix(adjacency), k=1).tocoo()
    graph = ig.Graph(n=adjacency.shape[0], directed=False)
    graph.add_edges(list(zip(upper.row.tolist(), upper.col.tolist())))
    graph.es["weight"] = upper.data.astype(float).tolist()
    return graph


def _relabel_by_size(membership):
    """Relabel communities "1".."K" by decreasing size (ties by first cell)"""
    membership = np.asarray(membership)
    ids, first_seen, counts = np.unique(membership, return_index=True, return_counts=True)
    order = np.lexsort((first_seen, -counts))
    mapping = {ids[old]: str(new + 1) for new, old in enumerate(order)}
    return np.array([mapping[m] for m in membership], dtype=object)


def cluster_graph(graph, method="walktrap", random_state=0, resolution=1.0):
    """Partition a weighted graph with igraph community detection

    Args:
        graph: igraph.Graph with a "weight" edge attribute
        method: "walktrap", "infomap", "leiden" or "louvain"
        random_state: Seed for the randomized algorithms
        resolution: Resolution for leiden / louvain

    Returns:
        Array of cluster labels ("1" is the largest cluster)
    """
    if method not in CLUSTERING_METHODS:
        raise ValueError(
            f"Unknown clustering method '{method}'. Options: {', '.join(CLUSTERING_METHODS)}"
        )

    # igraph draws from Python's random module
    random.seed(random_state)

    if method == "walktrap":
        communities = graph.community_walktrap(weights="weight", steps=4).as_clustering()
    elif method == "infomap":
        communities = graph.community_infomap(edge_weights="weight", trials=10)
    elif method == "leiden":
        communities = graph.community_leiden(
            objective_function="modularity",
            weights="weight",
            resolution=resolution,
            n_iterations=-1,
        )
    else:
        communities = graph.community_multilevel(weights="weight", resolution=resolution)

    return _relabel_by_size(communities.membership)


def _as_categorical(labels):
    categories = sorted(set(labels), key=int)
    return pd.Categorical(labels, categories=categories)


def run_clustering(
    adata,
    methods=None,
    n_pcs=None,
    k=None,
    weighting=None,
    random_state=None,
    use_rep="X_pca",
):
    """Build the SNN graph and run each community-detection algorithm

    Args:
        adata: AnnData object with a PCA embedding
        methods: Algorithms to run (default from CLUSTERING_PARAMS)
        n_pcs: Number of leading components to use (default: elbow or all)
        k: SNN neighborhood size
        weighting: SNN edge weighting
        random_state: Seed for randomized algorithms
        use_rep: Key in adata.obsm

    Returns:
        AnnData object with obs["cluster_<method>"] per algorithm
    """
    methods = CLUSTERING_PARAMS["methods"] if methods is None else methods
    k = CLUSTERING_PARAMS["n_neighbors"] if k is None else k
    weighting = CLUSTERING_PARAMS["weighting"] if weighting is None else weighting
    random_state = CLUSTERING_PARAMS["random_state"] if random_state is None else random_state

    if use_rep not in adata.obsm:
        raise KeyError(f"'{use_rep}' not found in adata.obsm - run PCA first")
    if n_pcs is None:
        n_pcs = adata.uns.get("pca", {}).get("n_pcs_elbow", adata.obsm[use_rep].shape[1])

    print(f"Building SNN graph (k={k}, {n_pcs} PCs)...")
    X = adata.obsm[use_rep][:, :n_pcs]
    graph = build_snn_graph(X, k=k, weighting=weighting)
    adata.obsp["snn_connectivities"] = graph.get_adjacency_sparse(attribute="weight")
    adata.uns["snn_graph"] = {
        "k": int(k),
        "weighting": weighting,
        "n_pcs": int(n_pcs),
        "use_rep": use_rep,
    }

    for method in methods:
        print(f"Clustering with {method}...")
        labels = cluster_graph(graph, method=method, random_state=random_state)
        adata.obs[f"cluster_{method}"] = _as_categorical(labels)
        print(f"  {method}: {len(set(labels))} clusters")

    return adata


def score_partitions(adata, methods=None):
    """Compare partitions by modularity on the SNN graph and silhouette on the PCs

    Returns:
        DataFrame indexed by method with n_clusters, modularity, silhouette
    """
    methods = CLUSTERING_PARAMS["methods"] if methods is None else methods
    if "snn_connectivities" not in adata.obsp:
        raise KeyError("SNN graph not found - run run_clustering first")

    params = adata.uns["snn_graph"]
    graph = graph_from_adjacency(adata.obsp["snn_connectivities"])
    X = adata.obsm[params["use_rep"]][:, : params["n_pcs"]]

    rows = []
    for method in methods:
        labels = adata.obs[f"cluster_{method}"]
        codes = labels.cat.codes.to_numpy()
        n_clusters = int(labels.nunique())
        sil = np.nan
        if 1 < n_clusters < adata.n_obs:
            sil = float(silhouette_score(X, labels.astype(str)))
        rows.append(
            {
                "method": method,
                "n_clusters": n_clusters,
                "modularity": float(graph.modularity(codes.tolist(), weights="weight")),
                "silhouette": sil,
            }
        )

    return pd.DataFrame(rows).set_index("method")


def choose_partition(adata, selection=None, scores=None):
    """Select the working partition

    Args:
        adata: AnnData object with obs["cluster_<method>"] columns
        selection: Algorithm name (operator's choice) or "auto". With "auto",
            take the highest silhouette; among methods within 0.02 of it prefer
            higher modularity, then fewer clusters.
        scores: Output of score_partitions (computed if needed)

    Returns:
        Name of the chosen method; adata.obs["cluster"] holds its labels
    """
    selection = CLUSTERING_PARAMS["selection"] if selection is None else selection
    methods = [c[len("cluster_"):] for c in adata.obs.columns if c.startswith("cluster_")]
    if not methods:
        raise KeyError("No clustering results found - run run_clustering first")

    if selection == "auto":
        if scores is None:
            scores = score_partitions(adata, methods)
        max_sil = np.nanmax(scores["silhouette"].values) if scores["silhouette"].notna().any() else np.nan
        if np.isfinite(max_sil):
            near = scores[np.abs(scores["silhouette"] - max_sil) <= 0.02]
            near = near.sort_values(
                by=["modularity", "n_clusters"], ascending=[False, True], kind="stable"
            )
            chosen = near.index[0]
        else:
            chosen = scores.sort_values("modularity", ascending=False, kind="stable").index[0]
        print(f"Automatically selected clustering: {chosen}")
    else:
        if selection not in methods:
            raise KeyError(f"Clustering '{selection}' has not been computed")
        chosen = selection

    adata.obs["cluster"] = adata.obs[f"cluster_{chosen}"].copy()
    info = {"method": chosen, "selection": selection}
    info.update(adata.uns.get("snn_graph", {}))
    if scores is not None:
        info["scores"] = scores.reset_index().to_dict(orient="list")
    adata.uns["clustering"] = info

    return chosen


def plot_cluster_comparison(adata, methods=None, basis="umap", save_dir=None):
    """Plot each algorithm's partition on a 2D embedding

    Args:
        adata: AnnData object with clustering results and an embedding
        methods: Algorithms to show
        basis: "umap" or "tsne"
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    methods = CLUSTERING_PARAMS["methods"] if methods is None else methods
    print("Plotting cluster comparison...")

    fig, axes = plt.subplots(1, len(methods), figsize=(6 * len(methods), 5), squeeze=False)
    for ax, method in zip(axes[0], methods):
        sc.pl.embedding(
            adata,
            basis=basis,
            color=f"cluster_{method}",
            legend_loc="on data",
            title=method,
            ax=ax,
            show=False,
        )

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / f"clusters_{basis}.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/clusters_{basis}.png")
        plt.close(fig)
    else:
        plt.show()
