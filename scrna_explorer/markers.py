#!/usr/bin/env python3
"""
Marker gene detection for single-cell RNA-seq analysis
Pairwise t, Wilcoxon and binomial tests between clusters, combined per
cluster and aggregated into a consensus ranking
"""

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from scipy import sparse, stats
from statsmodels.stats.multitest import multipletests

from scrna_explorer.config import MARKER_PARAMS, MARKER_TESTS

ALTERNATIVES = {"up": "greater", "down": "less", "any": "two-sided"}


def _dense(X):
    return X.toarray() if sparse.issparse(X) else np.asarray(X)


def _t_test(x, y, alternative):
    """Welch t-test per gene; effect is the difference in mean log-expression"""
    effect = x.mean(axis=0) - y.mean(axis=0)
    if x.shape[0] < 2 or y.shape[0] < 2:
        return np.ones(x.shape[1]), effect
    with np.errstate(divide="ignore", invalid="ignore"):
        p = stats.ttest_ind(x, y, axis=0, equal_var=False, alternative=alternative).pvalue
    return p, effect


def _wilcox_test(x, y, alternative):
    """Mann-Whitney U per gene; effect is the AUC"""
    u, p = stats.mannwhitneyu(x, y, axis=0, alternative=alternative)
    return p, u / (x.shape[0] * y.shape[0])


def _binom_test(x, y, alternative):
    """Binomial test on detection; effect is the log2 ratio of detection rates"""
    n_x, n_y = x.shape[0], y.shape[0]
    d_x = (x > 0).sum(axis=0)
    d_y = (y > 0).sum(axis=0)
    total = d_x + d_y
    prob = n_x / (n_x + n_y)

    upper = stats.binom.sf(d_x - 1, total, prob)
    lower = stats.binom.cdf(d_x, total, prob)
    if alternative == "greater":
        p = upper
    elif alternative == "less":
        p = lower
    else:
        p = np.minimum(1, 2 * np.minimum(upper, lower))
    p[total == 0] = 1

    effect = np.log2((d_x + 0.5) / (n_x + 1)) - np.log2((d_y + 0.5) / (n_y + 1))
    return p, effect


PAIRWISE_TESTS = {"t": _t_test, "wilcox": _wilcox_test, "binom": _binom_test}


def pairwise_test(x, y, test="t", direction="up"):
    """Test every gene between two groups of cells

    Args:
        x: Cells x genes expression of the group of interest
        y: Cells x genes expression of the comparison group
        test: "t", "wilcox" or "binom"
        direction: "up", "down" or "any"

    Returns:
        Tuple (p_values, effects)
    """
    if test not in PAIRWISE_TESTS:
        raise ValueError(f"Unknown marker test '{test}'. Options: {', '.join(MARKER_TESTS)}")
    if direction not in ALTERNATIVES:
        raise ValueError(f"Unknown direction '{direction}'. Use 'up', 'down' or 'any'.")

    p, effect = PAIRWISE_TESTS[test](_dense(x), _dense(y), ALTERNATIVES[direction])
    p = np.asarray(p, dtype=float)
    p[np.isnan(p)] = 1
    return p, np.asarray(effect, dtype=float)


def combine_pvalues(pvals, pval_type="all"):
    """Combine a genes x comparisons p-value matrix

    "all" takes the largest p-value (significant only if significant against
    every comparison); "any" takes the Bonferroni-corrected smallest.
    """
    pvals = np.atleast_2d(np.asarray(pvals, dtype=float))
    if pvals.shape[1] == 0:
        return np.ones(pvals.shape[0])
    if pval_type == "all":
        return pvals.max(axis=1)
    if pval_type == "any":
        return np.minimum(pvals.min(axis=1) * pvals.shape[1], 1)
    raise ValueError(f"Unknown pval_type '{pval_type}'. Use 'all' or 'any'.")


def find_markers(
    adata,
    groupby="cluster",
    test="t",
    pval_type=None,
    direction=None,
    restrict=None,
):
    """Rank genes for each cluster from pairwise comparisons

    Args:
        adata: Log-normalized AnnData object with cluster labels
        groupby: Cluster column in adata.obs
        test: "t", "wilcox" or "binom"
        pval_type: "all" or "any"
        direction: "up", "down" or "any"
        restrict: Clusters to include (default: all)

    Returns:
        Dict cluster -> DataFrame indexed by gene with p_value, FDR,
        summary_effect, effect_<other> per comparison and rank
    """
    pval_type = MARKER_PARAMS["pval_type"] if pval_type is None else pval_type
    direction = MARKER_PARAMS["direction"] if direction is None else direction

    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")

    labels = adata.obs[groupby].astype(str).to_numpy()
    clusters = list(adata.obs[groupby].astype("category").cat.categories.astype(str))
    if restrict is not None:
        restrict = [str(c) for c in restrict]
        missing = sorted(set(restrict) - set(clusters))
        if missing:
            raise KeyError(f"Clusters not found in '{groupby}': {', '.join(missing)}")
        clusters = [c for c in clusters if c in restrict]
    if len(clusters) < 2:
        raise ValueError("Need at least two clusters to find markers")

    expr = {c: _dense(adata.X[labels == c]) for c in clusters}
    for cluster, values in expr.items():
        if values.shape[0] < 2 and test == "t":
            print(f"Warning: cluster {cluster} has fewer than 2 cells for the t-test")

    results = {}
    for cluster in clusters:
        others = [c for c in clusters if c != cluster]
        pvals = np.empty((adata.n_vars, len(others)))
        effects = np.empty((adata.n_vars, len(others)))
        for j, other in enumerate(others):
            pvals[:, j], effects[:, j] = pairwise_test(
                expr[cluster], expr[other], test=test, direction=direction
            )

        combined = combine_pvalues(pvals, pval_type)
        pick = pvals.argmax(axis=1) if pval_type == "all" else pvals.argmin(axis=1)

        table = pd.DataFrame(
            {
                "p_value": combined,
                "FDR": multipletests(combined, method="fdr_bh")[1],
                "summary_effect": effects[np.arange(adata.n_vars), pick],
            },
            index=adata.var_names,
        )
        for j, other in enumerate(others):
            table[f"effect_{other}"] = effects[:, j]

        ordered = (
            table.assign(_gene=table.index.astype(str), _neg=-table["summary_effect"])
            .sort_values(["p_value", "_neg", "_gene"], kind="stable")
            .drop(columns=["_gene", "_neg"])
        )
        ordered["rank"] = np.arange(1, len(ordered) + 1)
        results[cluster] = ordered

    return results


def select_markers(result, fdr_threshold=None, fdr_column="FDR"):
    """Genes significant for a cluster at the given FDR

    Under pval_type="all" these are the genes significant against every
    other cluster in the comparison.

    Args:
        result: One cluster's DataFrame from find_markers
        fdr_threshold: FDR cutoff
        fdr_column: Column holding the FDR (e.g. "t_FDR" in consensus tables)

    Returns:
        List of gene names in rank order
    """
    fdr_threshold = MARKER_PARAMS["fdr_threshold"] if fdr_threshold is None else fdr_threshold
    return result.index[result[fdr_column] <= fdr_threshold].tolist()


def consensus_markers(
    adata,
    groupby="cluster",
    tests=None,
    pval_type=None,
    direction=None,
    restrict=None,
):
    """Run each test and aggregate the per-test ranks

    consensus_score is the mean of the per-test ranks; consensus_rank orders
    genes by that score (ties by gene name).

    Returns:
        Dict cluster -> DataFrame with <test>_p_value, <test>_FDR,
        <test>_effect, <test>_rank, consensus_score, consensus_rank
    """
    tests = MARKER_PARAMS["tests"] if tests is None else tests
    pval_type = MARKER_PARAMS["pval_type"] if pval_type is None else pval_type
    direction = MARKER_PARAMS["direction"] if direction is None else direction

    per_test = {}
    for test in tests:
        print(f"Finding markers ({test} test, pval_type={pval_type}, direction={direction})...")
        per_test[test] = find_markers(
            adata,
            groupby=groupby,
            test=test,
            pval_type=pval_type,
            direction=direction,
            restrict=restrict,
        )

    results = {}
    for cluster in per_test[tests[0]]:
        table = pd.DataFrame(index=adata.var_names)
        for test in tests:
            res = per_test[test][cluster].reindex(adata.var_names)
            table[f"{test}_p_value"] = res["p_value"]
            table[f"{test}_FDR"] = res["FDR"]
            table[f"{test}_effect"] = res["summary_effect"]
            table[f"{test}_rank"] = res["rank"]

        table["consensus_score"] = table[[f"{t}_rank" for t in tests]].mean(axis=1)
        table = (
            table.assign(_gene=table.index.astype(str))
            .sort_values(["consensus_score", "_gene"], kind="stable")
            .drop(columns="_gene")
        )
        table["consensus_rank"] = np.arange(1, len(table) + 1)
        results[cluster] = table

    adata.uns["markers"] = markers_to_frame(results)
    adata.uns["markers_params"] = {
        "groupby": groupby,
        "tests": list(tests),
        "pval_type": pval_type,
        "direction": direction,
    }
    return results


def markers_to_frame(results, n_top=None):
    """Long-form table (cluster, gene, statistics) from per-cluster results"""
    frames = []
    for cluster, table in results.items():
        table = table.head(n_top) if n_top else table
        frame = table.reset_index()
        frame.columns = ["gene"] + list(frame.columns[1:])
        frame.insert(0, "cluster", str(cluster))
        frames.append(frame)
    return pd.concat(frames, ignore_index=True)


def plot_marker_heatmap(adata, results, groupby="cluster", n_top=None, save_dir=None):
    """Heatmap of mean expression of the top consensus markers per cluster

    Args:
        adata: Log-normalized AnnData object
        results: Output of consensus_markers
        groupby: Cluster column
        n_top: Markers per cluster
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    n_top = MARKER_PARAMS["n_top"] if n_top is None else n_top
    print("Plotting marker heatmap...")

    genes = []
    for table in results.values():
        for gene in table.index[:n_top]:
            if gene not in genes:
                genes.append(gene)

    labels = adata.obs[groupby].astype(str)
    expr = pd.DataFrame(_dense(adata[:, genes].X), columns=genes, index=adata.obs_names)
    means = expr.groupby(labels.values).mean().reindex(list(results))

    # z-score each gene across clusters
    z = (means - means.mean()) / means.std(ddof=0).replace(0, 1)

    fig, ax = plt.subplots(figsize=(max(8, 0.25 * len(genes)), 0.5 * len(results) + 2))
    sns.heatmap(z, cmap="RdBu_r", center=0, ax=ax, cbar_kws={"label": "z-score"})
    ax.set_xlabel("Gene")
    ax.set_ylabel("Cluster")
    ax.set_title("Top consensus markers")
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "marker_heatmap.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/marker_heatmap.png")
        plt.close(fig)
    else:
        plt.show()
