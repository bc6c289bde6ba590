#!/usr/bin/env python3
"""
Droplet scRNA-seq walkthrough: acquisition to annotated clusters

This script performs:
1. Download and import of the quantification output
2. Gene symbol mapping and mitochondrial gene tagging
3. Quality control with MAD-based outlier detection and a QC report
4. Size factor normalization and variable-feature selection
5. PCA, t-SNE and UMAP
6. Graph clustering, marker detection and reference-based annotation

scrna-explorer --plots-dir plots --output pbmc_1k.h5ad
"""

import argparse
import warnings
from pathlib import Path

import matplotlib
import scanpy as sc

from scrna_explorer.annotation import (
    annotate_cells,
    annotate_clusters,
    cluster_label_composition,
    load_reference,
    plot_cell_type_summary,
    plot_score_heatmap,
)
from scrna_explorer.clustering import (
    choose_partition,
    plot_cluster_comparison,
    run_clustering,
    score_partitions,
)
from scrna_explorer.config import (
    CLUSTERING_METHODS,
    NORMALIZATION_METHODS,
    QC_PRESETS,
    get_config,
    get_config_summary,
    validate_config,
)
from scrna_explorer.data_loader import (
    download_quant_archive,
    load_quantification,
    map_gene_symbols,
    symbols_from_features,
    tag_mito_genes,
)
from scrna_explorer.feature_selection import plot_variance_models, select_variable_features
from scrna_explorer.markers import (
    consensus_markers,
    markers_to_frame,
    plot_marker_heatmap,
    select_markers,
)
from scrna_explorer.normalization import normalize, plot_size_factors
from scrna_explorer.processing import (
    choose_n_pcs,
    plot_embeddings,
    plot_pca_elbow,
    run_embeddings,
    run_pca,
)
from scrna_explorer.qc_report import serve_report, write_qc_report
from scrna_explorer.qc_utils import (
    calculate_qc_metrics,
    compare_discarded,
    filter_discarded,
    flag_outlier_cells,
    plot_discard_comparison,
    plot_qc_metrics,
)
from scrna_explorer.reference import build_linked_reference


def import_counts(cfg, data_dir=None, quant_dir=None, skip_reference=False):
    """Acquire, import and annotate the count matrix

    Args:
        cfg: Config from get_config()
        data_dir: Download directory (default from config)
        quant_dir: Existing quantification directory; skips the download
        skip_reference: Use the symbols shipped with the features file
            instead of building the linked reference

    Returns:
        AnnData object indexed by gene symbol with var["mt"]
    """
    if quant_dir is None:
        data_dir = cfg["data"]["data_dir"] if data_dir is None else data_dir
        quant_dir = download_quant_archive(
            cfg["data"]["quant_url"], data_dir, timeout=cfg["data"]["download_timeout"]
        )

    adata = load_quantification(quant_dir)

    ref_cfg = cfg["reference"]
    if ref_cfg["use_linked_reference"] and not skip_reference:
        linked = build_linked_reference(
            ref_cfg["fasta_url"],
            ref_cfg["gtf_url"],
            ref_cfg["cache_dir"],
            timeout=cfg["data"]["download_timeout"],
        )
        symbol_table = linked.gene_symbols()
        adata.uns["linked_reference"] = dict(linked.metadata)
    else:
        symbol_table = symbols_from_features(adata)

    adata = map_gene_symbols(adata, symbol_table)
    adata = tag_mito_genes(adata, cfg["gene_patterns"]["mt_pattern"])
    return adata


def analyze(
    adata,
    cfg=None,
    save_dir=None,
    compute_embeddings=True,
    annotate=True,
    reference=None,
    report_dir=None,
):
    """Run QC through annotation on an imported count matrix

    Args:
        adata: AnnData object with raw counts and var["mt"]
        cfg: Config from get_config() (default settings if None)
        save_dir: Directory for plots; nothing is plotted when None
        compute_embeddings: Compute t-SNE / UMAP (visualization only)
        annotate: Run reference-based annotation
        reference: Pre-loaded annotation reference
        report_dir: Directory for the HTML QC report

    Returns:
        Tuple (adata, marker results per cluster)
    """
    cfg = get_config() if cfg is None else cfg

    # Step 1: Quality control
    adata = calculate_qc_metrics(adata)
    qc = cfg["qc"]
    flag_outlier_cells(
        adata, nmads=qc["nmads"], directions=qc["directions"], log_metrics=qc["log_metrics"]
    )
    if report_dir is not None:
        write_qc_report(adata, report_dir)
    if save_dir:
        plot_qc_metrics(adata, save_dir=save_dir)
        plot_discard_comparison(compare_discarded(adata), save_dir=save_dir)

    adata = filter_discarded(adata, min_cells=qc["min_cells"])

    # Step 2: Normalization
    norm = cfg["normalization"]
    adata = normalize(
        adata,
        method=norm["method"],
        pseudo_count=norm["pseudo_count"],
        min_cluster_size=norm["min_cluster_size"],
        pool_sizes=norm["pool_sizes"],
    )
    if save_dir:
        plot_size_factors(adata, save_dir=save_dir)

    # Step 3: Variable features
    hvg = cfg["hvg"]
    adata = select_variable_features(
        adata, method=hvg["method"], n_top=hvg["n_top_genes"], fdr_threshold=hvg["fdr_threshold"]
    )
    if save_dir:
        plot_variance_models(adata, save_dir=save_dir)

    # Step 4: Dimensionality reduction
    dimred = cfg["dimred"]
    adata = run_pca(adata, n_comps=dimred["n_comps"], random_state=dimred["random_state"])
    n_pcs = choose_n_pcs(adata, min_pcs=dimred["min_pcs"])
    if dimred["n_pcs"]:
        n_pcs = min(dimred["n_pcs"], adata.obsm["X_pca"].shape[1])
        print(f"  Using {n_pcs} PCs from config")
    if save_dir:
        plot_pca_elbow(adata, save_dir=save_dir)

    if compute_embeddings:
        adata = run_embeddings(
            adata,
            n_pcs=n_pcs,
            n_neighbors=dimred["n_neighbors"],
            perplexity=dimred["perplexity"],
            random_state=dimred["random_state"],
        )

    # Step 5: Clustering
    clus = cfg["clustering"]
    adata = run_clustering(
        adata,
        methods=clus["methods"],
        n_pcs=n_pcs,
        k=clus["n_neighbors"],
        weighting=clus["weighting"],
        random_state=clus["random_state"],
    )
    scores = score_partitions(adata, clus["methods"])
    print("Partition scores:")
    print(scores)
    choose_partition(adata, selection=clus["selection"], scores=scores)
    if save_dir and compute_embeddings:
        plot_cluster_comparison(adata, clus["methods"], save_dir=save_dir)
        plot_embeddings(adata, color="cluster", save_dir=save_dir)

    # Step 6: Markers
    mk = cfg["markers"]
    results = consensus_markers(
        adata,
        groupby="cluster",
        tests=mk["tests"],
        pval_type=mk["pval_type"],
        direction=mk["direction"],
    )
    for cluster, table in results.items():
        test = mk["tests"][0]
        n_markers = len(select_markers(table, mk["fdr_threshold"], fdr_column=f"{test}_FDR"))
        top = ", ".join(table.index[: min(5, len(table))])
        print(f"  Cluster {cluster}: {n_markers} markers ({test}); top: {top}")
    if save_dir:
        plot_marker_heatmap(adata, results, n_top=mk["n_top"], save_dir=save_dir)

    # Step 7: Annotation
    if annotate:
        anno = cfg["annotation"]
        if reference is None:
            reference = load_reference(anno["reference"], anno["label_key"])
        adata = annotate_cells(adata, reference=reference, params=anno)
        adata = annotate_clusters(adata, reference=reference, groupby="cluster", params=anno)
        counts, _ = cluster_label_composition(adata)
        print("\nCluster x cell type:")
        print(counts)
        if save_dir:
            plot_score_heatmap(adata, save_dir=save_dir)
            plot_cell_type_summary(adata, save_dir=save_dir)

    return adata, results


def run_pipeline(
    cfg=None,
    data_dir=None,
    plots_dir="plots",
    quant_dir=None,
    output="pbmc_analysis.h5ad",
    skip_reference=False,
    serve=False,
    port=8000,
):
    """Main analysis pipeline

    Args:
        cfg: Config from get_config()
        data_dir: Download directory
        plots_dir: Directory where plots and the QC report are written
        quant_dir: Existing quantification directory (skips the download)
        output: Path of the annotated .h5ad
        skip_reference: Map symbols from the features file only
        serve: Serve the QC report over HTTP after the run
        port: Port for the QC report server

    Returns:
        Annotated AnnData object
    """
    print("Starting single-cell analysis pipeline...")
    cfg = get_config() if cfg is None else cfg

    plots_dir = Path(plots_dir)
    plots_dir.mkdir(parents=True, exist_ok=True)
    print(f"Plots will be saved to: {plots_dir.absolute()}")

    print("\n" + get_config_summary(cfg) + "\n")

    adata = import_counts(cfg, data_dir=data_dir, quant_dir=quant_dir, skip_reference=skip_reference)

    report_dir = plots_dir / "qc_report"
    adata, results = analyze(adata, cfg, save_dir=plots_dir, report_dir=report_dir)

    output = Path(output)
    adata.write(output)
    print(f"Saved annotated data to {output}")

    markers_path = output.with_name(f"{output.stem}_markers.csv")
    markers_to_frame(results, n_top=cfg["markers"]["n_top"]).to_csv(markers_path, index=False)
    print(f"  Saved: {markers_path}")

    print("Analysis complete!")

    if serve:
        serve_report(report_dir, port=port)

    return adata


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Droplet scRNA-seq QC, clustering, markers and annotation"
    )
    parser.add_argument("--config", default=None, help="JSON file with config overrides")
    parser.add_argument(
        "--preset",
        choices=list(QC_PRESETS),
        default="default",
        help="QC strictness preset (default: 'default')",
    )
    parser.add_argument("--data-dir", default=None, help="Download directory")
    parser.add_argument(
        "--quant-dir",
        default=None,
        help="Existing quantification directory (skips the download)",
    )
    parser.add_argument(
        "--plots-dir",
        default="plots",
        help="Directory to write plots to (default: 'plots')",
    )
    parser.add_argument(
        "--output",
        default="pbmc_analysis.h5ad",
        help="Annotated AnnData output (default: 'pbmc_analysis.h5ad')",
    )
    parser.add_argument(
        "--clustering-method",
        choices=list(CLUSTERING_METHODS) + ["auto"],
        default=None,
        help="Partition used downstream; 'auto' picks by silhouette",
    )
    parser.add_argument(
        "--normalization",
        choices=list(NORMALIZATION_METHODS),
        default=None,
        help="Size factor method",
    )
    parser.add_argument(
        "--skip-reference",
        action="store_true",
        help="Use the features file symbols instead of the linked reference",
    )
    parser.add_argument(
        "--serve-report",
        action="store_true",
        help="Serve the QC report over HTTP when the run finishes",
    )
    parser.add_argument("--port", type=int, default=8000, help="QC report port")
    args = parser.parse_args(argv)

    cfg = get_config(args.preset, args.config)
    if args.clustering_method:
        cfg["clustering"]["selection"] = args.clustering_method
        if (
            args.clustering_method != "auto"
            and args.clustering_method not in cfg["clustering"]["methods"]
        ):
            cfg["clustering"]["methods"].append(args.clustering_method)
    if args.normalization:
        cfg["normalization"]["method"] = args.normalization
    validate_config(cfg)

    # Configure scanpy
    sc.settings.verbosity = 1
    sc.settings.set_figure_params(dpi=80, facecolor="white")

    # Suppress warnings
    warnings.filterwarnings("ignore")

    # Set matplotlib backend to non-interactive for save-only mode
    matplotlib.use("Agg")
    print("Running in save-only mode - plots will not be displayed")

    run_pipeline(
        cfg,
        data_dir=args.data_dir,
        plots_dir=args.plots_dir,
        quant_dir=args.quant_dir,
        output=args.output,
        skip_reference=args.skip_reference,
        serve=args.serve_report,
        port=args.port,
    )


if __name__ == "__main__":
    main()
