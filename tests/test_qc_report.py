from __future__ import annotations

from pathlib import Path

import matplotlib

matplotlib.use("Agg")

from scrna_explorer import qc_report
from scrna_explorer.qc_report import serve_report, summarize_qc, write_qc_report
from scrna_explorer.qc_utils import calculate_qc_metrics, flag_outlier_cells


def test_summary_counts_flagged_cells(qc_adata):
    adata = calculate_qc_metrics(qc_adata)
    flag_outlier_cells(adata)
    summary = summarize_qc(adata)

    assert summary["Cells"] == 100
    assert summary["Genes"] == 50
    assert summary["Cells flagged for removal"] == 1


def test_write_qc_report(tmp_path: Path, qc_adata):
    adata = calculate_qc_metrics(qc_adata)
    flag_outlier_cells(adata)
    adata.uns["quantification"] = {"layout": "10x", "path": "data/<quant>"}

    index = write_qc_report(adata, tmp_path / "report")

    html = index.read_text(encoding="utf-8")
    assert index.name == "index.html"
    assert (tmp_path / "report" / "barcode_rank.png").exists()
    assert (tmp_path / "report" / "qc_histograms.png").exists()
    assert "Outlier thresholds" in html
    assert "data/&lt;quant&gt;" in html


def test_serve_report_stops_on_interrupt(tmp_path: Path, monkeypatch):
    served = {}

    class FakeServer:
        def __init__(self, address, handler):
            served["address"] = address
            served["directory"] = handler.keywords["directory"]

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def serve_forever(self):
            raise KeyboardInterrupt

    monkeypatch.setattr(qc_report, "ThreadingHTTPServer", FakeServer)
    serve_report(tmp_path, port=8123)

    assert served["address"] == ("127.0.0.1", 8123)
    assert served["directory"] == str(tmp_path)
