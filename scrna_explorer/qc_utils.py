#!/usr/bin/env python3
"""
Quality control utilities for single-cell RNA-seq analysis
Handles QC metrics calculation, robust outlier detection and filtering
"""

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc
import seaborn as sns
from scipy import sparse

from scrna_explorer.config import QC_PARAMS

QC_METRICS = ["total_counts", "n_genes_by_counts", "pct_counts_mt"]
MAD_SCALE = 1.4826


def calculate_qc_metrics(adata):
    """Calculate per-cell QC metrics

    Args:
        adata: AnnData object with raw counts and adata.var["mt"]

    Returns:
        AnnData object with total_counts, n_genes_by_counts and pct_counts_mt
    """
    print("Calculating QC metrics...")

    if "mt" not in adata.var:
        raise KeyError("adata.var['mt'] missing - tag mitochondrial genes first")

    sc.pp.calculate_qc_metrics(
        adata, qc_vars=["mt"], percent_top=None, log1p=False, inplace=True
    )

    return adata


def is_outlier(values, nmads=3, direction="both", log=False):
    """Flag values more than nmads median absolute deviations from the median

    A metric with zero MAD (e.g. most cells detect every gene, or most cells
    have no mitochondrial counts) gives no usable spread, so nothing is
    flagged and both thresholds are left open.

    Args:
        values: 1-D array-like of metric values
        nmads: Number of (scaled) MADs defining the threshold
        direction: "lower", "higher" or "both"
        log: Compute median and MAD on the log scale

    Returns:
        Boolean Series; the thresholds (on the original scale) are stored in
        .attrs["thresholds"] as (lower, upper)
    """
    index = values.index if isinstance(values, pd.Series) else None
    x = np.asarray(values, dtype=float)
    if log:
        with np.errstate(divide="ignore"):
            x = np.log(x)

    # log(0) is kept as -inf so zero values rank lowest
    observed = x[~np.isnan(x)]
    center = np.median(observed)
    mad = MAD_SCALE * np.median(np.abs(observed - center))
    if mad > 0:
        lower = center - nmads * mad
        upper = center + nmads * mad
    else:
        lower, upper = -np.inf, np.inf

    outlier = np.zeros(x.shape, dtype=bool)
    with np.errstate(invalid="ignore"):
        if direction in ("lower", "both"):
            outlier |= x < lower
        if direction in ("higher", "both"):
            outlier |= x > upper

    if log:
        lower, upper = np.exp(lower), np.exp(upper)
    if direction == "lower":
        upper = np.inf
    elif direction == "higher":
        lower = -np.inf

    result = pd.Series(outlier, index=index)
    result.attrs["thresholds"] = (float(lower), float(upper))
    return result


def flag_outlier_cells(adata, nmads=None, directions=None, log_metrics=None):
    """Flag low-quality cells with MAD-based thresholds

    A cell is discarded if any metric is an outlier in its adverse direction.

    Args:
        adata: AnnData object with QC metrics
        nmads: Number of MADs (default from QC_PARAMS)
        directions: Dict metric -> "lower" / "higher" / "both"
        log_metrics: Metrics assessed on the log scale

    Returns:
        DataFrame summarizing the number of cells flagged per reason
    """
    print("Flagging outlier cells...")

    nmads = QC_PARAMS["nmads"] if nmads is None else nmads
    directions = QC_PARAMS["directions"] if directions is None else directions
    log_metrics = QC_PARAMS["log_metrics"] if log_metrics is None else log_metrics

    discard = np.zeros(adata.n_obs, dtype=bool)
    thresholds = {}
    summary = []

    for metric, direction in directions.items():
        if metric not in adata.obs:
            raise KeyError(f"QC metric '{metric}' not found in adata.obs")

        flagged = is_outlier(
            adata.obs[metric],
            nmads=nmads,
            direction=direction,
            log=metric in log_metrics,
        )
        adata.obs[f"outlier_{metric}"] = flagged.values
        discard |= flagged.values

        lower, upper = flagged.attrs["thresholds"]
        thresholds[metric] = {"lower": lower, "upper": upper, "direction": direction}
        summary.append({"metric": metric, "n_flagged": int(flagged.sum())})

    adata.obs["discard"] = discard
    adata.uns["qc_thresholds"] = thresholds
    adata.uns["qc_nmads"] = float(nmads)

    summary.append({"metric": "discard", "n_flagged": int(discard.sum())})
    summary = pd.DataFrame(summary).set_index("metric")

    print("Outlier summary:")
    print(summary)

    return summary


def _average_normalized(X, lib_sizes):
    """Mean expression after scaling each cell to the average library size"""
    scale = lib_sizes.mean() / lib_sizes
    scale[~np.isfinite(scale)] = 0
    if sparse.issparse(X):
        scaled = sparse.diags(scale) @ X
        return np.asarray(scaled.mean(axis=0)).ravel()
    return (X * scale[:, None]).mean(axis=0)


def compare_discarded(adata, discard_key="discard"):
    """Compare average expression of discarded and retained cells

    Large fold changes for genes other than mitochondrial transcripts suggest
    that the QC thresholds remove a biologically distinct population.

    Args:
        adata: AnnData object with raw counts and a discard column

    Returns:
        DataFrame indexed by gene with ave_lost, ave_kept, average, log_fc, mt
    """
    if discard_key not in adata.obs:
        raise KeyError(f"'{discard_key}' not found in adata.obs - flag outliers first")

    discard = adata.obs[discard_key].to_numpy(dtype=bool)
    X = adata.layers["counts"] if "counts" in adata.layers else adata.X
    lib_sizes = np.asarray(X.sum(axis=1)).ravel().astype(float)

    if discard.all() or not discard.any():
        print("Warning: discard comparison needs both discarded and retained cells")
        lost = kept = _average_normalized(X, lib_sizes)
    else:
        lost = _average_normalized(X[discard], lib_sizes[discard])
        kept = _average_normalized(X[~discard], lib_sizes[~discard])

    comparison = pd.DataFrame(
        {
            "ave_lost": lost,
            "ave_kept": kept,
            "average": np.log2((lost + kept) / 2 + 1),
            "log_fc": np.log2(lost + 1) - np.log2(kept + 1),
        },
        index=adata.var_names,
    )
    comparison["mt"] = adata.var["mt"].values if "mt" in adata.var else False

    return comparison


def plot_discard_comparison(comparison, save_dir=None, n_label=10):
    """Plot log fold change (lost / kept) against average expression"""
    fig, ax = plt.subplots(figsize=(8, 6))

    other = comparison[~comparison["mt"]]
    mito = comparison[comparison["mt"]]
    ax.scatter(other["average"], other["log_fc"], s=5, c="gray", alpha=0.5, label="Other")
    ax.scatter(mito["average"], mito["log_fc"], s=12, c="orange", label="Mitochondrial")

    top = comparison.reindex(comparison["log_fc"].abs().nlargest(n_label).index)
    for gene, row in top.iterrows():
        ax.annotate(gene, (row["average"], row["log_fc"]), fontsize=7)

    ax.axhline(0, color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.set_xlabel("Average log2 expression")
    ax.set_ylabel("Log2 fold change (discarded / retained)")
    ax.set_title("Discarded vs retained cells")
    ax.legend(loc="best")
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "qc_discard_vs_kept.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/qc_discard_vs_kept.png")
        plt.close(fig)
    else:
        plt.show()

    return fig


def filter_discarded(adata, discard_key="discard", min_cells=None):
    """Remove discarded cells and genes no longer detected

    Args:
        adata: AnnData object with a discard column
        discard_key: Boolean column in adata.obs
        min_cells: Minimum retained cells expressing a gene

    Returns:
        Filtered AnnData copy; every attached matrix is subset consistently
    """
    print("Applying QC filters...")
    print(f"Starting with {adata.n_obs} cells and {adata.n_vars} genes")

    if discard_key not in adata.obs:
        raise KeyError(f"'{discard_key}' not found in adata.obs - flag outliers first")

    min_cells = QC_PARAMS["min_cells"] if min_cells is None else min_cells
    keep = ~adata.obs[discard_key].to_numpy(dtype=bool)
    adata = adata[keep].copy()

    if min_cells:
        detected = np.asarray((adata.X > 0).sum(axis=0)).ravel()
        adata = adata[:, detected >= min_cells].copy()

    print(f"After filtering: {adata.n_obs} cells and {adata.n_vars} genes")

    return adata


def plot_qc_metrics(adata, save_dir=None):
    """Plot QC metric distributions coloured by discard status

    Args:
        adata: AnnData object with QC metrics and outlier flags
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting QC metrics...")

    qc_data = adata.obs[QC_METRICS].copy()
    discard = (
        adata.obs["discard"].to_numpy(dtype=bool)
        if "discard" in adata.obs
        else np.zeros(adata.n_obs, dtype=bool)
    )
    qc_data["status"] = np.where(discard, "discarded", "retained")

    # Violin plots with points
    fig, axes = plt.subplots(1, 3, figsize=(15, 5))
    metrics = [
        ("total_counts", "Total counts per cell"),
        ("n_genes_by_counts", "Genes per cell"),
        ("pct_counts_mt", "Mitochondrial %"),
    ]
    thresholds = adata.uns.get("qc_thresholds", {})

    for ax, (metric, title) in zip(axes, metrics):
        sns.violinplot(data=qc_data, y=metric, ax=ax, color="lightblue", inner=None)
        sns.stripplot(
            data=qc_data,
            y=metric,
            hue="status",
            palette={"retained": "black", "discarded": "red"},
            ax=ax,
            alpha=0.4,
            size=2,
            jitter=True,
        )
        for bound in ("lower", "upper"):
            value = thresholds.get(metric, {}).get(bound)
            if value is not None and np.isfinite(value):
                ax.axhline(value, color="red", linestyle="--", alpha=0.5)
        if metric != "pct_counts_mt":
            ax.set_yscale("log")
        ax.set_title(title)
        ax.set_xlabel("")

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "qc_violin_plots.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/qc_violin_plots.png")
        plt.close(fig)
    else:
        plt.show()

    # Scatter plots
    fig, axes = plt.subplots(1, 2, figsize=(12, 5))
    colors = np.where(discard, "red", "black")
    axes[0].scatter(qc_data["total_counts"], qc_data["pct_counts_mt"], s=3, c=colors, alpha=0.5)
    axes[0].set_xlabel("Total counts")
    axes[0].set_ylabel("Mitochondrial %")
    axes[1].scatter(qc_data["total_counts"], qc_data["n_genes_by_counts"], s=3, c=colors, alpha=0.5)
    axes[1].set_xlabel("Total counts")
    axes[1].set_ylabel("Genes detected")
    for ax in axes:
        ax.set_xscale("log")
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "qc_scatter_plots.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/qc_scatter_plots.png")
        plt.close(fig)
    else:
        plt.show()
