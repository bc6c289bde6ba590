#!/usr/bin/env python3
"""
Quantification QC report
Writes a static HTML summary of barcode and per-cell QC and serves it locally
"""

import functools
import html
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from scrna_explorer.qc_utils import QC_METRICS


def summarize_qc(adata):
    """Headline numbers for the QC report"""
    obs = adata.obs
    summary = {
        "Cells": adata.n_obs,
        "Genes": adata.n_vars,
        "Median UMIs per cell": float(np.median(obs["total_counts"])),
        "Median genes per cell": float(np.median(obs["n_genes_by_counts"])),
        "Median mitochondrial %": float(np.median(obs["pct_counts_mt"])),
    }
    if "discard" in obs:
        summary["Cells flagged for removal"] = int(obs["discard"].sum())
    return pd.Series(summary, name="value")


def plot_barcode_rank(adata, save_path):
    """Knee plot: total UMI count against barcode rank (log-log)"""
    totals = np.sort(np.asarray(adata.obs["total_counts"], dtype=float))[::-1]
    ranks = np.arange(1, totals.size + 1)

    fig, ax = plt.subplots(figsize=(6, 5))
    ax.plot(ranks, np.maximum(totals, 1), color="#1f77b4")
    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel("Barcode rank")
    ax.set_ylabel("Total UMI count")
    ax.set_title("Barcode rank plot")

    lower = adata.uns.get("qc_thresholds", {}).get("total_counts", {}).get("lower")
    if lower is not None and np.isfinite(lower) and lower > 0:
        ax.axhline(lower, color="red", linestyle="--", alpha=0.5, label="Lower threshold")
        ax.legend(loc="best")

    plt.tight_layout()
    fig.savefig(save_path, dpi=150, bbox_inches="tight")
    plt.close(fig)


def plot_metric_histograms(adata, save_path):
    """Histograms of the per-cell QC metrics"""
    fig, axes = plt.subplots(1, len(QC_METRICS), figsize=(5 * len(QC_METRICS), 4))
    for ax, metric in zip(axes, QC_METRICS):
        sns.histplot(adata.obs[metric], bins=50, ax=ax, color="skyblue")
        ax.set_title(metric)
        ax.set_xlabel("")
    plt.tight_layout()
    fig.savefig(save_path, dpi=150, bbox_inches="tight")
    plt.close(fig)


def write_qc_report(adata, report_dir):
    """Write an HTML QC report

    Args:
        adata: AnnData object with QC metrics (and optionally outlier flags)
        report_dir: Output directory

    Returns:
        Path to index.html
    """
    print("Writing QC report...")
    report_dir = Path(report_dir)
    report_dir.mkdir(parents=True, exist_ok=True)

    plot_barcode_rank(adata, report_dir / "barcode_rank.png")
    plot_metric_histograms(adata, report_dir / "qc_histograms.png")

    summary = summarize_qc(adata).to_frame()
    thresholds = pd.DataFrame(adata.uns.get("qc_thresholds", {})).T
    source = adata.uns.get("quantification", {}).get("path", "")

    sections = [
        "<h1>Quantification QC report</h1>",
        f"<p>Source: <code>{html.escape(str(source))}</code></p>",
        "<h2>Summary</h2>",
        summary.to_html(float_format=lambda v: f"{v:,.2f}"),
    ]
    if not thresholds.empty:
        sections += ["<h2>Outlier thresholds</h2>", thresholds.to_html()]
    sections += [
        "<h2>Barcode rank</h2>",
        '<img src="barcode_rank.png" width="480">',
        "<h2>Metric distributions</h2>",
        '<img src="qc_histograms.png" width="960">',
    ]

    page = (
        "<!DOCTYPE html>\n<html><head><meta charset='utf-8'>"
        "<title>QC report</title></head><body>\n"
        + "\n".join(sections)
        + "\n</body></html>\n"
    )
    index = report_dir / "index.html"
    index.write_text(page, encoding="utf-8")
    print(f"  Saved: {index}")

    return index


def serve_report(report_dir, port=8000, host="127.0.0.1"):
    """Serve the report directory over HTTP until interrupted"""
    handler = functools.partial(SimpleHTTPRequestHandler, directory=str(report_dir))
    with ThreadingHTTPServer((host, port), handler) as server:
        print(f"Serving QC report at http://{host}:{port}/ (Ctrl+C to stop)")
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            print("Stopped serving QC report")
