#!/usr/bin/env python3
"""
Analysis parameters for the droplet scRNA-seq walkthrough

This file centralizes all thresholds and algorithm choices used in the pipeline.
Modify these values (or pass a JSON override file) to adjust the analysis.
"""

import copy
import json
from pathlib import Path

# Remote inputs
DATA = {
    # 10x PBMC 1k v3 filtered matrices (tarball with matrix/barcodes/features)
    "quant_url": (
        "https://cf.10xgenomics.com/samples/cell-exp/3.0.0/pbmc_1k_v3/"
        "pbmc_1k_v3_filtered_feature_bc_matrix.tar.gz"
    ),
    "data_dir": "data",
    "download_timeout": 3600,  # seconds
}

# Linked reference transcriptome + annotation used to map gene IDs to symbols
REFERENCE = {
    "use_linked_reference": True,
    "fasta_url": (
        "https://ftp.ebi.ac.uk/pub/databases/gencode/Gencode_human/release_38/"
        "gencode.v38.transcripts.fa.gz"
    ),
    "gtf_url": (
        "https://ftp.ebi.ac.uk/pub/databases/gencode/Gencode_human/release_38/"
        "gencode.v38.annotation.gtf.gz"
    ),
    "cache_dir": "data/reference",
}

GENE_PATTERNS = {
    "mt_pattern": "MT-",  # Human mitochondrial genes (use "mt-" for mouse)
}

# Robust (MAD-based) outlier detection per QC metric
QC_PARAMS = {
    "nmads": 3,
    "directions": {
        "total_counts": "both",  # very large libraries are suspicious too
        "n_genes_by_counts": "lower",
        "pct_counts_mt": "higher",
    },
    "log_metrics": ["total_counts", "n_genes_by_counts"],
    "min_cells": 1,  # drop genes not detected in any retained cell
}

QC_PRESETS = {
    "default": {"nmads": 3},
    "stringent": {"nmads": 2.5},
    "permissive": {"nmads": 5},
}

# Size factor estimation
#   libsize: proportional to total count. Fast, but biased when cell types
#            differ in RNA composition.
#   deconvolution: pooled estimates within rough clusters, deconvolved to
#            per-cell factors. Robust to composition differences; needs
#            clusters at least as large as the smallest pool.
#   auto: deconvolution when the two estimates diverge systematically
#            (largest per-cluster median |log2 ratio| above the threshold).
NORMALIZATION_PARAMS = {
    "method": "deconvolution",
    "pseudo_count": 1,
    "min_cluster_size": 100,
    "pool_sizes": list(range(21, 102, 5)),
    "min_mean": 0.1,
    "divergence_threshold": 0.1,
}

# Variable-feature selection
#   var: variance of log-expression above a mean-variance trend
#   cv2: squared coefficient of variation above a mean-CV2 trend
HVG_PARAMS = {
    "method": "var",
    "n_top_genes": 1000,
    "fdr_threshold": None,  # None = rank by effect size only
    "lowess_frac": 0.3,
}

DIMRED_PARAMS = {
    "n_comps": 50,
    "n_pcs": None,  # None = elbow point of the explained-variance curve
    "min_pcs": 5,
    "n_neighbors": 15,  # UMAP neighborhood
    "perplexity": 30,
    "random_state": 0,
}

# Graph clustering
#   walktrap: random-walk hierarchical merging, deterministic, tends to
#             give fewer, larger clusters.
#   infomap: flow-based, randomized (seeded), finds fine-grained structure.
#   leiden / louvain: modularity optimization, randomized (seeded).
#   auto: highest silhouette on the PCs among the computed methods.
CLUSTERING_PARAMS = {
    "methods": ["walktrap", "infomap"],
    "selection": "walktrap",
    "n_neighbors": 10,
    "weighting": "rank",
    "random_state": 0,
}

MARKER_PARAMS = {
    "tests": ["t", "wilcox", "binom"],
    "pval_type": "all",
    "direction": "up",
    "fdr_threshold": 0.05,
    "n_top": 10,
}

ANNOTATION_PARAMS = {
    "reference": "pbmc3k",  # or a path to a labelled .h5ad
    "label_key": "louvain",
    "quantile": 0.8,
    "fine_tune": True,
    "tune_threshold": 0.05,
    "de_n": None,
    "max_ref_cells_per_label": 100,
    "prune_nmads": 3,
    "random_state": 0,
}

SECTIONS = {
    "data": DATA,
    "reference": REFERENCE,
    "gene_patterns": GENE_PATTERNS,
    "qc": QC_PARAMS,
    "normalization": NORMALIZATION_PARAMS,
    "hvg": HVG_PARAMS,
    "dimred": DIMRED_PARAMS,
    "clustering": CLUSTERING_PARAMS,
    "markers": MARKER_PARAMS,
    "annotation": ANNOTATION_PARAMS,
}

CLUSTERING_METHODS = ("walktrap", "infomap", "leiden", "louvain")
NORMALIZATION_METHODS = ("libsize", "deconvolution", "auto")
MARKER_TESTS = ("t", "wilcox", "binom")


def load_json_config(path):
    """Load a JSON override file

    Args:
        path: Path to a .json file holding an object of section -> settings

    Returns:
        Dictionary of overrides
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': expected JSON object, "
            f"got {type(data).__name__}."
        )
    return data


def _merge(base, overrides):
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def get_config(preset="default", overrides=None):
    """Assemble the full parameter set

    Args:
        preset: QC preset name ("default", "stringent", "permissive")
        overrides: Optional dict (or path to a JSON file) of section overrides

    Returns:
        Nested dict with one entry per pipeline section
    """
    if preset not in QC_PRESETS:
        raise ValueError(
            f"Unknown preset '{preset}'. Options: {', '.join(QC_PRESETS)}"
        )

    cfg = copy.deepcopy(SECTIONS)
    cfg["qc"].update(QC_PRESETS[preset])
    cfg["preset"] = preset

    if overrides is not None:
        if not isinstance(overrides, dict):
            overrides = load_json_config(overrides)
        unknown = set(overrides) - set(SECTIONS)
        if unknown:
            raise ValueError(f"Unknown config sections: {sorted(unknown)}")
        _merge(cfg, copy.deepcopy(overrides))

    validate_config(cfg)
    return cfg


def validate_config(cfg):
    """Validate that parameters make sense"""
    errors = []

    qc = cfg["qc"]
    if not qc["nmads"] > 0:
        errors.append("qc.nmads must be positive")
    for metric, direction in qc["directions"].items():
        if direction not in ("lower", "higher", "both"):
            errors.append(f"qc.directions.{metric} must be lower, higher or both")

    norm = cfg["normalization"]
    if norm["method"] not in NORMALIZATION_METHODS:
        errors.append(
            f"normalization.method must be one of {', '.join(NORMALIZATION_METHODS)}"
        )
    if not norm["pool_sizes"] or min(norm["pool_sizes"]) < 2:
        errors.append("normalization.pool_sizes must contain sizes >= 2")
    if norm["pseudo_count"] <= 0:
        errors.append("normalization.pseudo_count must be positive")

    hvg = cfg["hvg"]
    if hvg["method"] not in ("var", "cv2"):
        errors.append("hvg.method must be var or cv2")
    if hvg["n_top_genes"] < 1:
        errors.append("hvg.n_top_genes must be at least 1")
    if hvg["fdr_threshold"] is not None and not 0 < hvg["fdr_threshold"] <= 1:
        errors.append("hvg.fdr_threshold must be in (0, 1]")

    clus = cfg["clustering"]
    for method in clus["methods"]:
        if method not in CLUSTERING_METHODS:
            errors.append(f"clustering.methods: unknown algorithm '{method}'")
    if clus["selection"] != "auto" and clus["selection"] not in clus["methods"]:
        errors.append("clustering.selection must be 'auto' or one of clustering.methods")
    if clus["weighting"] not in ("rank", "number"):
        errors.append("clustering.weighting must be rank or number")

    markers = cfg["markers"]
    for test in markers["tests"]:
        if test not in MARKER_TESTS:
            errors.append(f"markers.tests: unknown test '{test}'")
    if markers["pval_type"] not in ("all", "any"):
        errors.append("markers.pval_type must be all or any")
    if markers["direction"] not in ("up", "down", "any"):
        errors.append("markers.direction must be up, down or any")

    anno = cfg["annotation"]
    if not 0 < anno["tune_threshold"] < 1:
        errors.append("annotation.tune_threshold must be between 0 and 1")
    if not 0 < anno["quantile"] <= 1:
        errors.append("annotation.quantile must be in (0, 1]")

    if errors:
        raise ValueError("Config validation failed:\n" + "\n".join(errors))

    return True


def get_config_summary(cfg):
    """Return a formatted summary of current settings"""
    qc = cfg["qc"]
    summary = [
        "=== Analysis Settings ===",
        f"\nQC preset: {cfg.get('preset', 'default')}",
        f"  - Outlier threshold: {qc['nmads']} MADs",
    ]
    for metric, direction in qc["directions"].items():
        scale = "log" if metric in qc["log_metrics"] else "linear"
        summary.append(f"  - {metric}: {direction} tail ({scale} scale)")

    summary.extend(
        [
            "\nNormalization:",
            f"  - Size factors: {cfg['normalization']['method']}",
            "\nFeature selection:",
            f"  - Model: {cfg['hvg']['method']}, top {cfg['hvg']['n_top_genes']} genes",
            "\nClustering:",
            f"  - Algorithms: {', '.join(cfg['clustering']['methods'])}",
            f"  - Selection: {cfg['clustering']['selection']}",
            f"  - SNN neighbors: {cfg['clustering']['n_neighbors']}",
            "\nMarkers:",
            f"  - Tests: {', '.join(cfg['markers']['tests'])} "
            f"(pval.type={cfg['markers']['pval_type']}, direction={cfg['markers']['direction']})",
            "\nAnnotation:",
            f"  - Reference: {cfg['annotation']['reference']} "
            f"({cfg['annotation']['label_key']})",
            f"  - Fine-tuning: {cfg['annotation']['fine_tune']}",
        ]
    )

    return "\n".join(summary)
