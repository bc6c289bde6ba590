#!/usr/bin/env python3
"""
Reference-based cell type annotation
Scores cells (or cluster profiles) by Spearman correlation against a labeled
reference, with iterative fine-tuning on the markers of the closest labels
"""

import itertools
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc
import seaborn as sns
from scipy import sparse
from scipy.stats import rankdata

from scrna_explorer.config import ANNOTATION_PARAMS
from scrna_explorer.qc_utils import is_outlier


def load_reference(name=None, label_key=None):
    """Load a labeled, log-normalized reference

    Args:
        name: "pbmc3k" (scanpy's processed PBMC 3k dataset) or a path to .h5ad
        label_key: Label column in the reference obs

    Returns:
        AnnData copy with all genes in X and labels in obs[label_key]
    """
    name = ANNOTATION_PARAMS["reference"] if name is None else name
    label_key = ANNOTATION_PARAMS["label_key"] if label_key is None else label_key

    print(f"Loading annotation reference '{name}'...")
    if name == "pbmc3k":
        ref = sc.datasets.pbmc3k_processed()
    elif Path(str(name)).exists():
        ref = sc.read_h5ad(name)
    else:
        raise FileNotFoundError(f"Reference '{name}' is neither 'pbmc3k' nor an existing file")

    if label_key not in ref.obs:
        raise KeyError(f"Label column '{label_key}' not found in the reference")

    # The processed dataset keeps all genes only in .raw
    if ref.raw is not None:
        full = ref.raw.to_adata()
        full.obs = ref.obs[[label_key]].copy()
        ref = full
    else:
        ref = ref.copy()

    ref.obs[label_key] = ref.obs[label_key].astype(str)
    print(f"  {ref.n_obs} reference cells, {ref.obs[label_key].nunique()} labels")
    return ref


def default_de_n(n_labels):
    return int(round(500 * (2 / 3) ** np.log2(n_labels)))


def reference_markers(ref_expr, ref_labels, de_n=None):
    """Marker genes for every ordered pair of reference labels

    For labels (a, b) the markers are the de_n genes with the largest positive
    difference in median expression of a over b.

    Args:
        ref_expr: DataFrame of reference cells x genes (log-expression)
        ref_labels: Label per reference cell
        de_n: Genes per pair

    Returns:
        Nested dict markers[a][b] -> list of genes
    """
    ref_labels = np.asarray(ref_labels).astype(str)
    medians = ref_expr.groupby(ref_labels).median()
    labels = list(medians.index)
    de_n = default_de_n(len(labels)) if de_n is None else de_n

    genes = medians.columns.astype(str)
    markers = {a: {} for a in labels}
    for a, b in itertools.permutations(labels, 2):
        diff = pd.Series(medians.loc[a].values - medians.loc[b].values, index=genes)
        diff = diff[diff > 0]
        ranked = (
            diff.to_frame("diff")
            .assign(_gene=diff.index)
            .sort_values(["diff", "_gene"], ascending=[False, True], kind="stable")
        )
        markers[a][b] = ranked.index[:de_n].tolist()
    return markers


def _marker_union(markers, labels):
    genes = set()
    for a in labels:
        for b in labels:
            if a != b:
                genes.update(markers[a][b])
    return sorted(genes)


def _spearman(A, B):
    """Spearman correlation between the rows of A and the rows of B"""
    ra = rankdata(A, axis=1)
    rb = rankdata(B, axis=1)
    ra = ra - ra.mean(axis=1, keepdims=True)
    rb = rb - rb.mean(axis=1, keepdims=True)
    na = np.linalg.norm(ra, axis=1, keepdims=True)
    nb = np.linalg.norm(rb, axis=1, keepdims=True)
    with np.errstate(divide="ignore", invalid="ignore"):
        corr = (ra @ rb.T) / (na * nb.T)
    return np.nan_to_num(corr)


def _label_scores(corr, ref_labels, labels, quantile):
    return np.column_stack(
        [np.quantile(corr[:, ref_labels == label], quantile, axis=1) for label in labels]
    )


def _delta_next(scores):
    ordered = np.sort(np.asarray(scores, dtype=float))[::-1]
    return float(ordered[0] - ordered[1]) if ordered.size > 1 else np.nan


def _fine_tune(profile, ref_values, ref_labels, gene_index, markers, scores, labels, quantile, threshold):
    """Refine one profile's label on the markers of its closest candidates

    Returns:
        Tuple (label, delta_next of the last round with at least two labels)
    """
    current = dict(zip(labels, scores))
    candidates = [lab for lab in labels if current[lab] >= scores.max() - threshold]
    delta = _delta_next(scores)

    while len(candidates) > 1:
        genes = _marker_union(markers, candidates)
        if len(genes) < 2:
            break
        cols = [gene_index[g] for g in genes]
        keep = np.isin(ref_labels, candidates)
        corr = _spearman(profile[None, cols], ref_values[keep][:, cols])
        new_scores = _label_scores(corr, ref_labels[keep], candidates, quantile)[0]
        current = dict(zip(candidates, new_scores))
        delta = _delta_next(new_scores)

        survivors = [lab for lab in candidates if current[lab] >= new_scores.max() - threshold]
        if len(survivors) == len(candidates):
            break
        candidates = survivors

    best = max(candidates, key=lambda lab: current[lab])
    return best, delta


def prune_labels(labels, scores, nmads=None):
    """Set low-confidence labels to NaN

    For each assigned label, cells whose (max - median) score is a lower-tail
    MAD outlier among the cells with that label are pruned.
    """
    nmads = ANNOTATION_PARAMS["prune_nmads"] if nmads is None else nmads
    labels = pd.Series(labels, index=scores.index, dtype=object)
    spread = scores.max(axis=1) - scores.median(axis=1)

    pruned = labels.copy()
    for label in labels.unique():
        members = labels.index[labels == label]
        flagged = is_outlier(spread.loc[members], nmads=nmads, direction="lower")
        pruned.loc[members[flagged.to_numpy()]] = np.nan
    return pruned


def classify(
    test_expr,
    ref_expr,
    ref_labels,
    markers,
    quantile=None,
    fine_tune=None,
    tune_threshold=None,
    prune_nmads=None,
):
    """Assign reference labels to expression profiles

    Args:
        test_expr: DataFrame of profiles x genes (log-expression)
        ref_expr: DataFrame of reference cells x the same genes
        ref_labels: Label per reference cell
        markers: Output of reference_markers
        quantile: Quantile of per-label correlations used as the label score
        fine_tune: Iteratively rescore the closest labels on their markers
        tune_threshold: Labels within this distance of the best are kept
        prune_nmads: MADs for pruning low-confidence labels

    Returns:
        Tuple (result, scores): result has labels, delta_next and
        pruned_labels per profile; scores is the profiles x labels matrix
    """
    quantile = ANNOTATION_PARAMS["quantile"] if quantile is None else quantile
    fine_tune = ANNOTATION_PARAMS["fine_tune"] if fine_tune is None else fine_tune
    tune_threshold = ANNOTATION_PARAMS["tune_threshold"] if tune_threshold is None else tune_threshold

    if list(test_expr.columns) != list(ref_expr.columns):
        raise ValueError("Test and reference expression must share the same genes")

    ref_labels = np.asarray(ref_labels).astype(str)
    labels = sorted(set(ref_labels))
    gene_index = {g: i for i, g in enumerate(ref_expr.columns.astype(str))}

    genes = [g for g in _marker_union(markers, labels) if g in gene_index]
    if len(genes) < 2:
        raise ValueError("Too few marker genes shared with the reference")
    cols = [gene_index[g] for g in genes]

    test_values = test_expr.to_numpy(dtype=float)
    ref_values = ref_expr.to_numpy(dtype=float)

    corr = _spearman(test_values[:, cols], ref_values[:, cols])
    scores = pd.DataFrame(
        _label_scores(corr, ref_labels, labels, quantile), index=test_expr.index, columns=labels
    )

    assigned, deltas = [], []
    for i in range(test_values.shape[0]):
        row = scores.iloc[i].to_numpy()
        if fine_tune and len(labels) > 1:
            label, delta = _fine_tune(
                test_values[i], ref_values, ref_labels, gene_index, markers,
                row, labels, quantile, tune_threshold,
            )
        else:
            label, delta = labels[int(np.argmax(row))], _delta_next(row)
        assigned.append(label)
        deltas.append(delta)

    result = pd.DataFrame({"labels": assigned, "delta_next": deltas}, index=test_expr.index)
    result["pruned_labels"] = prune_labels(result["labels"], scores, nmads=prune_nmads)
    return result, scores


def _expression_frame(adata, genes):
    X = adata[:, genes].X
    X = X.toarray() if sparse.issparse(X) else np.asarray(X)
    return pd.DataFrame(X, index=adata.obs_names, columns=genes)


def _prepare_reference(adata, reference, label_key, max_cells, random_state):
    """Shared genes and a per-label subsample of the reference"""
    available = set(reference.var_names)
    genes = [g for g in adata.var_names if g in available]
    if not genes:
        raise ValueError("No genes shared between the data and the annotation reference")
    print(f"  {len(genes)} genes shared with the reference")

    labels = reference.obs[label_key].astype(str)
    rng = np.random.default_rng(random_state)
    chosen = []
    for label in sorted(labels.unique()):
        idx = np.flatnonzero(labels.to_numpy() == label)
        if max_cells and idx.size > max_cells:
            idx = np.sort(rng.choice(idx, size=max_cells, replace=False))
        chosen.extend(idx.tolist())
    chosen = np.sort(chosen)

    sub = reference[chosen]
    ref_expr = _expression_frame(sub, genes)
    return genes, ref_expr, sub.obs[label_key].astype(str).to_numpy()


def _annotation_setup(adata, reference, params):
    if reference is None:
        reference = load_reference(params["reference"], params["label_key"])
    genes, ref_expr, ref_labels = _prepare_reference(
        adata,
        reference,
        params["label_key"],
        params["max_ref_cells_per_label"],
        params["random_state"],
    )
    markers = reference_markers(ref_expr, ref_labels, de_n=params["de_n"])
    return genes, ref_expr, ref_labels, markers


def annotate_cells(adata, reference=None, params=None):
    """Label every cell against the reference

    Args:
        adata: Log-normalized AnnData object with gene symbols as var_names
        reference: AnnData from load_reference (loaded if None)
        params: Overrides for ANNOTATION_PARAMS

    Returns:
        AnnData object with obs celltype, celltype_pruned, celltype_delta_next
        and obsm["celltype_scores"]
    """
    params = {**ANNOTATION_PARAMS, **(params or {})}
    print("Annotating cells...")
    genes, ref_expr, ref_labels, markers = _annotation_setup(adata, reference, params)

    result, scores = classify(
        _expression_frame(adata, genes),
        ref_expr,
        ref_labels,
        markers,
        quantile=params["quantile"],
        fine_tune=params["fine_tune"],
        tune_threshold=params["tune_threshold"],
        prune_nmads=params["prune_nmads"],
    )

    adata.obs["celltype"] = pd.Categorical(result["labels"])
    adata.obs["celltype_pruned"] = pd.Categorical(result["pruned_labels"])
    adata.obs["celltype_delta_next"] = result["delta_next"].to_numpy()
    adata.obsm["celltype_scores"] = scores.to_numpy()
    adata.uns["celltype_labels"] = list(scores.columns)
    adata.uns["annotation"] = {
        "reference": str(params["reference"]),
        "label_key": params["label_key"],
        "quantile": float(params["quantile"]),
        "fine_tune": bool(params["fine_tune"]),
        "n_genes": len(genes),
        "n_pruned": int(result["pruned_labels"].isna().sum()),
    }

    print(adata.obs["celltype"].value_counts().sort_index())
    return adata


def annotate_clusters(adata, reference=None, groupby="cluster", params=None):
    """Label each cluster from its mean log-expression profile

    Returns:
        AnnData object with obs["celltype_cluster"]
    """
    params = {**ANNOTATION_PARAMS, **(params or {})}
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")

    print(f"Annotating clusters ({groupby})...")
    genes, ref_expr, ref_labels, markers = _annotation_setup(adata, reference, params)

    expr = _expression_frame(adata, genes)
    groups = adata.obs[groupby].astype(str)
    profiles = expr.groupby(groups.to_numpy()).mean()

    result, scores = classify(
        profiles,
        ref_expr,
        ref_labels,
        markers,
        quantile=params["quantile"],
        fine_tune=params["fine_tune"],
        tune_threshold=params["tune_threshold"],
        prune_nmads=params["prune_nmads"],
    )

    adata.obs["celltype_cluster"] = pd.Categorical(groups.map(result["labels"]).to_numpy())
    adata.uns["celltype_cluster_scores"] = scores
    print(result[["labels", "delta_next"]])
    return adata


def cluster_label_composition(adata, groupby="cluster", label_key="celltype"):
    """Cross-tabulate clusters against assigned labels

    Returns:
        Tuple (counts, purity): counts is clusters x labels, purity the
        fraction of each cluster's cells carrying its most common label
    """
    for key in (groupby, label_key):
        if key not in adata.obs:
            raise KeyError(f"'{key}' not found in adata.obs")

    counts = pd.crosstab(adata.obs[groupby].astype(str), adata.obs[label_key].astype(str))
    purity = counts.max(axis=1) / counts.sum(axis=1)
    purity.name = "purity"
    return counts, purity


def plot_score_heatmap(adata, save_dir=None):
    """Per-cell label scores ordered by assigned label

    Args:
        adata: AnnData object after annotate_cells()
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    scores = pd.DataFrame(
        adata.obsm["celltype_scores"], index=adata.obs_names, columns=adata.uns["celltype_labels"]
    )
    order = np.argsort(adata.obs["celltype"].astype(str).to_numpy(), kind="stable")

    fig, ax = plt.subplots(figsize=(10, 5))
    sns.heatmap(scores.iloc[order].T, cmap="viridis", xticklabels=False, ax=ax)
    ax.set_xlabel("Cells (ordered by label)")
    ax.set_ylabel("Reference label")
    ax.set_title("Annotation scores")
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "celltype_scores.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/celltype_scores.png")
        plt.close(fig)
    else:
        plt.show()


def plot_cell_type_summary(adata, groupby="cluster", save_dir=None):
    """Plot cell type composition of each cluster

    Args:
        adata: AnnData object with cell type annotations
        groupby: Cluster column
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    counts, purity = cluster_label_composition(adata, groupby=groupby)

    fig, ax = plt.subplots(figsize=(12, 6))
    counts.plot(kind="bar", stacked=True, ax=ax)
    plt.title("Cell type composition per cluster")
    plt.xlabel("Cluster")
    plt.ylabel("Number of cells")
    plt.xticks(rotation=0)
    plt.legend(bbox_to_anchor=(1.05, 1), loc="upper left")
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "celltype_distribution.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/celltype_distribution.png")
        plt.close(fig)
    else:
        plt.show()

    print("\nCluster purity:")
    print(purity.round(2))
