#!/usr/bin/env python3
"""
Data loading utilities for single-cell RNA-seq analysis
Handles archive download, quantification import and gene symbol mapping
"""

import shutil
import tarfile
import tempfile
from pathlib import Path

import anndata
import numpy as np
import pandas as pd
import requests
import scanpy as sc
from scipy import io, sparse

ALEVIN_FILES = ("quants_mat.mtx", "quants_mat_rows.txt", "quants_mat_cols.txt")
EXTRACTED_MARKER = ".extracted"


def download_file(url, dest, timeout=3600, chunk_size=1 << 20):
    """Download a URL to a local file

    An existing local path is returned unchanged.

    Args:
        url: HTTP(S) URL or local file path
        dest: Destination file path
        timeout: Request timeout in seconds
        chunk_size: Streaming chunk size in bytes

    Returns:
        Path to the downloaded file
    """
    if Path(url).exists():
        return Path(url)

    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    print(f"Downloading {url}")

    with requests.get(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        with tempfile.NamedTemporaryFile(dir=dest.parent, delete=False) as tmp:
            try:
                for chunk in response.iter_content(chunk_size=chunk_size):
                    tmp.write(chunk)
            except BaseException:
                tmp.close()
                Path(tmp.name).unlink(missing_ok=True)
                raise
    shutil.move(tmp.name, dest)

    print(f"  Saved: {dest}")
    return dest


def download_quant_archive(url, data_dir, timeout=3600, force=False):
    """Download and unpack the quantification tarball

    Skipped when the archive was already extracted into data_dir.

    Args:
        url: URL (or local path) of the .tar.gz archive
        data_dir: Directory to extract into
        timeout: Download timeout in seconds
        force: Re-download even if already extracted

    Returns:
        Path to the extraction directory
    """
    data_dir = Path(data_dir)
    marker = data_dir / EXTRACTED_MARKER
    if marker.exists() and not force:
        print(f"Quantification data already present in {data_dir}, skipping download")
        return data_dir

    data_dir.mkdir(parents=True, exist_ok=True)
    archive = download_file(url, data_dir / Path(url).name, timeout=timeout)

    print(f"Extracting {archive}...")
    with tarfile.open(archive, "r:*") as tar:
        if hasattr(tarfile, "data_filter"):
            tar.extractall(data_dir, filter="data")
        else:
            tar.extractall(data_dir)

    marker.write_text(str(url))
    return data_dir


def _first_existing(directory, names):
    for name in names:
        path = directory / name
        if path.exists():
            return path
    return None


def detect_layout(directory):
    """Return "alevin", "10x" or None for a candidate directory"""
    directory = Path(directory)
    if all((directory / name).exists() for name in ALEVIN_FILES):
        return "alevin"
    if _first_existing(directory, ["matrix.mtx.gz", "matrix.mtx"]) is not None:
        return "10x"
    return None


def find_quant_dir(root):
    """Locate a quantification output directory below root

    Args:
        root: Directory to search (itself included)

    Returns:
        Path of the first directory with a known layout
    """
    root = Path(root)
    if not root.exists():
        raise FileNotFoundError(f"Quantification directory not found: {root}")

    candidates = [root] + sorted(p for p in root.rglob("*") if p.is_dir())
    for candidate in candidates:
        if detect_layout(candidate) is not None:
            return candidate

    raise FileNotFoundError(
        f"No quantification output found under {root} "
        f"(expected {', '.join(ALEVIN_FILES)} or matrix.mtx/barcodes/features)"
    )


def _read_lines(path):
    frame = pd.read_csv(path, header=None, sep="\t", dtype=str, keep_default_na=False)
    return frame.iloc[:, 0].tolist()


def load_alevin_quant(quant_dir):
    """Load alevin-style output (cells x genes MatrixMarket + row/col files)

    Args:
        quant_dir: Directory containing quants_mat.mtx and its index files

    Returns:
        AnnData object (cells x genes)
    """
    quant_dir = Path(quant_dir)
    X = sparse.csr_matrix(io.mmread(quant_dir / "quants_mat.mtx"))
    barcodes = _read_lines(quant_dir / "quants_mat_rows.txt")
    gene_ids = _read_lines(quant_dir / "quants_mat_cols.txt")

    if X.shape != (len(barcodes), len(gene_ids)):
        raise ValueError(
            f"Matrix shape {X.shape} does not match {len(barcodes)} barcodes "
            f"x {len(gene_ids)} genes"
        )

    adata = anndata.AnnData(
        X.astype(np.float32),
        obs=pd.DataFrame(index=barcodes),
        var=pd.DataFrame({"gene_ids": gene_ids}, index=gene_ids),
    )
    return adata


def load_10x_quant(quant_dir):
    """Load 10x-style output (matrix.mtx + barcodes + features)"""
    adata = sc.read_10x_mtx(quant_dir, var_names="gene_ids", cache=False)
    adata.var["gene_ids"] = adata.var_names.astype(str)
    adata.X = sparse.csr_matrix(adata.X, dtype=np.float32)
    return adata


def load_quantification(path):
    """Load quantification output in any supported layout

    Args:
        path: Quantification directory (or a parent of it)

    Returns:
        AnnData object with raw UMI counts, var indexed by gene identifier
    """
    quant_dir = find_quant_dir(path)
    layout = detect_layout(quant_dir)
    print(f"Loading {layout} quantification from {quant_dir}")

    if layout == "alevin":
        adata = load_alevin_quant(quant_dir)
    else:
        adata = load_10x_quant(quant_dir)

    adata.obs_names_make_unique()
    adata.uns["quantification"] = {"layout": layout, "path": str(quant_dir)}
    print(f"Loaded {adata.n_obs} cells and {adata.n_vars} genes")
    return adata


def strip_version(gene_ids):
    """Remove Ensembl version suffixes (ENSG00000141510.17 -> ENSG00000141510)"""
    ids = pd.Index(gene_ids).astype(str)
    return ids.str.replace(r"\.\d+(_PAR_Y)?$", r"\1", regex=True)


def symbols_from_features(adata):
    """Gene ID -> symbol table from the symbols shipped with a features file"""
    if "gene_symbols" not in adata.var:
        raise KeyError("No 'gene_symbols' column in adata.var to build a symbol table")
    table = pd.Series(
        adata.var["gene_symbols"].astype(str).values,
        index=strip_version(adata.var["gene_ids"]),
    )
    return table[~table.index.duplicated()]


def map_gene_symbols(adata, symbol_table):
    """Replace technical gene identifiers with gene symbols

    Genes without a mapping are dropped.

    Args:
        adata: AnnData object indexed by gene identifier
        symbol_table: pandas Series mapping versionless gene ID -> symbol

    Returns:
        AnnData object indexed by gene symbol
    """
    print("Mapping gene identifiers to symbols...")

    base_ids = strip_version(adata.var["gene_ids"])
    symbols = pd.Series(base_ids, index=adata.var_names).map(symbol_table)
    symbols = symbols.replace("", np.nan)
    mapped = symbols.notna().values

    n_dropped = int((~mapped).sum())
    if n_dropped:
        print(f"  Dropping {n_dropped} genes without a symbol mapping")

    adata = adata[:, mapped].copy()
    adata.var_names = pd.Index(symbols[mapped].astype(str).values)
    adata.var_names_make_unique()
    print(f"  {adata.n_vars} genes mapped")

    return adata


def tag_mito_genes(adata, pattern="MT-"):
    """Flag mitochondrial genes in adata.var["mt"]"""
    adata.var["mt"] = adata.var_names.str.startswith(pattern)
    print(f"Tagged {int(adata.var['mt'].sum())} mitochondrial genes ({pattern}*)")
    return adata
