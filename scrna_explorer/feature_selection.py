#!/usr/bin/env python3
"""
Feature selection utilities for single-cell RNA-seq analysis
Models per-gene variance and CV^2 against mean expression and picks the
highly variable genes used for dimensionality reduction
"""

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy import sparse, stats
from scipy.optimize import curve_fit
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.stats.multitest import multipletests

from scrna_explorer.config import HVG_PARAMS
from scrna_explorer.normalization import get_counts


def _mean_var(X):
    """Per-gene mean and unbiased variance of a cells x genes matrix"""
    n = X.shape[0]
    if sparse.issparse(X):
        mean = np.asarray(X.mean(axis=0)).ravel()
        sq = np.asarray(X.multiply(X).mean(axis=0)).ravel()
    else:
        X = np.asarray(X, dtype=float)
        mean = X.mean(axis=0)
        sq = (X**2).mean(axis=0)
    var = (sq - mean**2) * n / max(n - 1, 1)
    return mean, np.maximum(var, 0)


def _bh(p_values):
    fdr = np.full(p_values.shape, np.nan)
    ok = ~np.isnan(p_values)
    if ok.any():
        fdr[ok] = multipletests(p_values[ok], method="fdr_bh")[1]
    return fdr


def model_gene_var(adata, frac=None):
    """Decompose the variance of log-expression into technical and biological parts

    The technical component is a LOWESS trend of variance on mean across
    genes; the biological component is the residual. P-values test whether
    the log-ratio of total to technical variance exceeds zero, using a
    robust (MAD) estimate of its spread across genes.

    Args:
        adata: Log-normalized AnnData object
        frac: LOWESS span

    Returns:
        DataFrame indexed by gene with mean, total, tech, bio, p_value, FDR
    """
    frac = HVG_PARAMS["lowess_frac"] if frac is None else frac
    mean, total = _mean_var(adata.X)
    expressed = mean > 0

    tech = np.full(mean.shape, np.nan)
    if expressed.sum() > 2:
        tech[expressed] = lowess(
            total[expressed], mean[expressed], frac=frac, return_sorted=False
        )
    tech = np.maximum(tech, 0)

    with np.errstate(divide="ignore", invalid="ignore"):
        log_ratio = np.log(total / tech)
    usable = expressed & np.isfinite(log_ratio)

    p_values = np.full(mean.shape, np.nan)
    if usable.any():
        spread = stats.median_abs_deviation(log_ratio[usable], scale="normal")
        if spread > 0:
            p_values[usable] = stats.norm.sf(log_ratio[usable] / spread)

    return pd.DataFrame(
        {
            "mean": mean,
            "total": total,
            "tech": tech,
            "bio": total - tech,
            "p_value": p_values,
            "FDR": _bh(p_values),
        },
        index=adata.var_names,
    )


def _cv2_trend(mean, a, b):
    return a / mean + b


def model_gene_cv2(adata, size_factors=None):
    """Model the squared coefficient of variation of normalized counts

    Trend is CV^2 = a / mean + b, fitted on the log scale. The ratio of CV^2 to
    the trend is tested with a chi-square approximation on n_cells - 1
    degrees of freedom.

    Args:
        adata: AnnData object with raw counts in layers["counts"]
        size_factors: Per-cell size factors (default obs["size_factor"])

    Returns:
        DataFrame indexed by gene with mean, cv2, trend, ratio, p_value, FDR
    """
    if size_factors is None:
        if "size_factor" not in adata.obs:
            raise KeyError("obs['size_factor'] missing - normalize first")
        size_factors = adata.obs["size_factor"].to_numpy()

    size_factors = np.asarray(size_factors, dtype=float)
    keep_cells = size_factors > 0
    counts = get_counts(adata)[keep_cells]
    normalized = sparse.diags(1 / size_factors[keep_cells]) @ counts

    mean, var = _mean_var(normalized)
    expressed = mean > 0
    cv2 = np.full(mean.shape, np.nan)
    cv2[expressed] = var[expressed] / mean[expressed] ** 2

    fit = expressed & (cv2 > 0)
    trend = np.full(mean.shape, np.nan)
    if fit.sum() >= 2:
        m, y = mean[fit], cv2[fit]
        # Start from the trend's high-mean floor and the Poisson-like slope
        b0 = max(np.percentile(y, 10), 1e-8)
        popt, _ = curve_fit(
            lambda x, a, b: np.log(_cv2_trend(x, a, b)),
            m,
            np.log(y),
            p0=(1.0, b0),
            bounds=((1e-12, 1e-12), (np.inf, np.inf)),
            maxfev=10000,
        )
        trend[expressed] = _cv2_trend(mean[expressed], *popt)

    ratio = cv2 / trend
    df = max(int(keep_cells.sum()) - 1, 1)
    p_values = np.full(mean.shape, np.nan)
    ok = np.isfinite(ratio)
    p_values[ok] = stats.chi2.sf(ratio[ok] * df, df)

    return pd.DataFrame(
        {
            "mean": mean,
            "cv2": cv2,
            "trend": trend,
            "ratio": ratio,
            "p_value": p_values,
            "FDR": _bh(p_values),
        },
        index=adata.var_names,
    )


def get_top_hvgs(stats_df, n_top=None, var_field="bio", var_threshold=0, fdr_threshold=None):
    """Top genes by effect size

    Args:
        stats_df: Output of model_gene_var or model_gene_cv2
        n_top: Maximum number of genes
        var_field: Effect-size column ("bio" or "ratio")
        var_threshold: Genes must exceed this effect size
        fdr_threshold: Optional FDR cutoff

    Returns:
        List of at most n_top unique gene IDs, descending effect size
        (ties broken by gene name)
    """
    n_top = HVG_PARAMS["n_top_genes"] if n_top is None else n_top
    table = stats_df[~stats_df.index.duplicated()]
    table = table[table[var_field] > var_threshold]
    if fdr_threshold is not None:
        table = table[table["FDR"] <= fdr_threshold]

    ranked = (
        table.assign(_gene=table.index.astype(str))
        .sort_values([var_field, "_gene"], ascending=[False, True], kind="stable")
    )
    return ranked.index[:n_top].tolist()


def compare_hvg_sets(a, b):
    """Agreement between two gene sets"""
    a, b = set(a), set(b)
    union = a | b
    return {
        "n_first": len(a),
        "n_second": len(b),
        "n_shared": len(a & b),
        "jaccard": len(a & b) / len(union) if union else 1.0,
    }


def select_variable_features(adata, method=None, n_top=None, fdr_threshold=None):
    """Model gene variability with both estimators and mark the working HVG set

    Args:
        adata: Log-normalized AnnData object
        method: "var" or "cv2" (the estimator defining highly_variable)
        n_top: Number of genes to keep
        fdr_threshold: Optional FDR cutoff

    Returns:
        AnnData object with var statistics and var["highly_variable"]
    """
    if "log_normalized" not in adata.uns:
        raise ValueError("Data must be normalized before modelling gene variance")

    method = HVG_PARAMS["method"] if method is None else method
    n_top = HVG_PARAMS["n_top_genes"] if n_top is None else n_top
    fdr_threshold = HVG_PARAMS["fdr_threshold"] if fdr_threshold is None else fdr_threshold
    if method not in ("var", "cv2"):
        raise ValueError(f"Unknown HVG method '{method}'. Use 'var' or 'cv2'.")

    print("Modelling gene variance...")
    var_stats = model_gene_var(adata)
    print("Modelling gene CV2...")
    cv2_stats = model_gene_cv2(adata)

    for col in var_stats.columns:
        adata.var[f"var_{col}"] = var_stats[col].values
    for col in cv2_stats.columns:
        adata.var[f"cv2_{col}"] = cv2_stats[col].values

    top_var = get_top_hvgs(var_stats, n_top, "bio", 0, fdr_threshold)
    top_cv2 = get_top_hvgs(cv2_stats, n_top, "ratio", 1, fdr_threshold)
    agreement = compare_hvg_sets(top_var, top_cv2)

    chosen = top_var if method == "var" else top_cv2
    adata.var["highly_variable"] = adata.var_names.isin(chosen)
    adata.uns["hvg"] = {
        "method": method,
        "n_top": int(n_top),
        "n_selected": len(chosen),
        "genes": list(chosen),
        "agreement": agreement,
    }

    print(f"  Selected {len(chosen)} genes ({method})")
    print(
        f"  var / cv2 agreement: {agreement['n_shared']} shared, "
        f"Jaccard {agreement['jaccard']:.2f}"
    )

    return adata


def plot_variance_models(adata, save_dir=None):
    """Plot both variance models with the selected genes highlighted

    Args:
        adata: AnnData object after select_variable_features()
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting variance models...")
    var = adata.var
    hvg = var["highly_variable"].to_numpy(dtype=bool)

    fig, axes = plt.subplots(1, 2, figsize=(12, 5))

    ax = axes[0]
    ax.scatter(var["var_mean"], var["var_total"], s=3, c="gray", alpha=0.5)
    ax.scatter(var["var_mean"][hvg], var["var_total"][hvg], s=4, c="orange", label="Selected")
    order = np.argsort(var["var_mean"].to_numpy())
    ax.plot(var["var_mean"].to_numpy()[order], var["var_tech"].to_numpy()[order], c="blue")
    ax.set_xlabel("Mean log-expression")
    ax.set_ylabel("Variance of log-expression")
    ax.set_title("Variance model")
    ax.legend(loc="best")

    ax = axes[1]
    expressed = var["cv2_mean"] > 0
    sub = var[expressed]
    ax.scatter(sub["cv2_mean"], sub["cv2_cv2"], s=3, c="gray", alpha=0.5)
    ax.scatter(
        sub["cv2_mean"][sub["highly_variable"]],
        sub["cv2_cv2"][sub["highly_variable"]],
        s=4,
        c="orange",
        label="Selected",
    )
    order = np.argsort(sub["cv2_mean"].to_numpy())
    ax.plot(sub["cv2_mean"].to_numpy()[order], sub["cv2_trend"].to_numpy()[order], c="blue")
    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel("Mean normalized count")
    ax.set_ylabel("CV2")
    ax.set_title("CV2 model")
    ax.legend(loc="best")

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "hvg_models.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/hvg_models.png")
        plt.close(fig)
    else:
        plt.show()
