from __future__ import annotations

import gzip
import tarfile
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import requests
from scipy import io as sio
from scipy import sparse

from scrna_explorer import data_loader
from scrna_explorer.data_loader import (
    detect_layout,
    download_file,
    download_quant_archive,
    find_quant_dir,
    load_quantification,
    map_gene_symbols,
    strip_version,
    symbols_from_features,
    tag_mito_genes,
)

GENE_IDS = ["ENSG00000198888.2", "ENSG00000141510.17", "ENSG00000111640.15", "ENSG00000000003.15"]
SYMBOLS = ["MT-ND1", "TP53", "GAPDH", "TSPAN6"]


def _write_alevin(directory: Path) -> np.ndarray:
    directory.mkdir(parents=True, exist_ok=True)
    counts = np.array([[1, 0, 5, 2], [0, 3, 1, 0], [4, 1, 0, 1]], dtype=float)
    sio.mmwrite(str(directory / "quants_mat.mtx"), sparse.coo_matrix(counts))
    (directory / "quants_mat_rows.txt").write_text("AAAC\nAAAG\nAAAT\n")
    (directory / "quants_mat_cols.txt").write_text("\n".join(GENE_IDS) + "\n")
    return counts


def _write_10x(directory: Path) -> np.ndarray:
    directory.mkdir(parents=True, exist_ok=True)
    counts = np.array([[2, 0, 1], [0, 7, 3], [1, 1, 0], [0, 0, 4]], dtype=float)  # genes x cells
    raw = directory / "matrix.mtx"
    sio.mmwrite(str(raw), sparse.coo_matrix(counts))
    with gzip.open(directory / "matrix.mtx.gz", "wb") as fh:
        fh.write(raw.read_bytes())
    raw.unlink()
    with gzip.open(directory / "barcodes.tsv.gz", "wt") as fh:
        fh.write("AAAC-1\nAAAG-1\nAAAT-1\n")
    with gzip.open(directory / "features.tsv.gz", "wt") as fh:
        for gene_id, symbol in zip(GENE_IDS, SYMBOLS):
            fh.write(f"{gene_id}\t{symbol}\tGene Expression\n")
    return counts


def test_load_alevin_layout(tmp_path: Path):
    counts = _write_alevin(tmp_path / "run" / "alevin")
    adata = load_quantification(tmp_path)

    assert adata.shape == (3, 4)
    assert list(adata.obs_names) == ["AAAC", "AAAG", "AAAT"]
    assert list(adata.var["gene_ids"]) == GENE_IDS
    assert adata.uns["quantification"]["layout"] == "alevin"
    np.testing.assert_array_equal(adata.X.toarray(), counts)


def test_load_10x_layout(tmp_path: Path):
    counts = _write_10x(tmp_path / "filtered_feature_bc_matrix")
    adata = load_quantification(tmp_path)

    assert adata.shape == (3, 4)
    assert adata.uns["quantification"]["layout"] == "10x"
    assert list(adata.var["gene_symbols"]) == SYMBOLS
    np.testing.assert_array_equal(adata.X.toarray(), counts.T)


def test_missing_quant_dir_raises(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        find_quant_dir(tmp_path / "nowhere")
    (tmp_path / "empty").mkdir()
    with pytest.raises(FileNotFoundError, match="No quantification output"):
        find_quant_dir(tmp_path / "empty")
    assert detect_layout(tmp_path / "empty") is None


def test_strip_version_keeps_par_suffix():
    ids = strip_version(["ENSG00000141510.17", "ENSG00000002586.20_PAR_Y", "ENSG1"])
    assert list(ids) == ["ENSG00000141510", "ENSG00000002586_PAR_Y", "ENSG1"]


def test_map_gene_symbols_drops_unmapped(tmp_path: Path):
    _write_alevin(tmp_path)
    adata = load_quantification(tmp_path)
    table = pd.Series(
        ["MT-ND1", "TP53", "TP53"],
        index=["ENSG00000198888", "ENSG00000141510", "ENSG00000111640"],
    )
    mapped = map_gene_symbols(adata, table)

    assert mapped.n_vars == 3
    assert mapped.var_names.is_unique
    assert list(mapped.var["gene_ids"]) == GENE_IDS[:3]
    assert mapped.n_obs == adata.n_obs


def test_symbols_from_features_and_mito_tag(tmp_path: Path):
    _write_10x(tmp_path)
    adata = load_quantification(tmp_path)
    adata = map_gene_symbols(adata, symbols_from_features(adata))
    adata = tag_mito_genes(adata, "MT-")

    assert list(adata.var_names) == SYMBOLS
    assert adata.var["mt"].tolist() == [True, False, False, False]


class _FakeResponse:
    def __init__(self, payload: bytes, status: int = 200):
        self.payload = payload
        self.status = status

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.payload), chunk_size):
            yield self.payload[i : i + chunk_size]


def test_download_file_streams_to_dest(tmp_path: Path, monkeypatch):
    calls = {}

    def fake_get(url, stream, timeout):
        calls["timeout"] = timeout
        return _FakeResponse(b"hello world")

    monkeypatch.setattr(data_loader.requests, "get", fake_get)
    dest = download_file("https://example.org/file.txt", tmp_path / "sub" / "file.txt", timeout=5, chunk_size=3)

    assert dest.read_bytes() == b"hello world"
    assert calls["timeout"] == 5


def test_download_file_propagates_http_error(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(
        data_loader.requests, "get", lambda url, stream, timeout: _FakeResponse(b"", 404)
    )
    with pytest.raises(requests.HTTPError):
        download_file("https://example.org/missing", tmp_path / "missing")
    assert not (tmp_path / "missing").exists()


class _BrokenStream(_FakeResponse):
    def iter_content(self, chunk_size=1):
        yield self.payload
        raise requests.ConnectionError("connection reset")


def test_download_file_removes_partial_file(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(
        data_loader.requests, "get", lambda url, stream, timeout: _BrokenStream(b"partial")
    )
    with pytest.raises(requests.ConnectionError):
        download_file("https://example.org/big.tar.gz", tmp_path / "big.tar.gz")
    assert list(tmp_path.iterdir()) == []


def test_download_quant_archive_extracts_once(tmp_path: Path, monkeypatch):
    source = tmp_path / "source"
    _write_10x(source / "filtered_feature_bc_matrix")
    archive = tmp_path / "quant.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(source / "filtered_feature_bc_matrix", arcname="filtered_feature_bc_matrix")

    data_dir = download_quant_archive(str(archive), tmp_path / "data")
    assert detect_layout(data_dir / "filtered_feature_bc_matrix") == "10x"

    def fail(*args, **kwargs):
        raise AssertionError("should not download again")

    monkeypatch.setattr(data_loader, "download_file", fail)
    assert download_quant_archive(str(archive), tmp_path / "data") == tmp_path / "data"
