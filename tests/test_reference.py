from __future__ import annotations

import gzip
import json
from pathlib import Path

import pytest
import requests

from scrna_explorer import reference
from scrna_explorer.reference import (
    build_linked_reference,
    fasta_digest,
    fasta_transcript_ids,
    read_gtf_transcripts,
)

GTF = """##description: test annotation
chr1\tHAVANA\tgene\t11869\t14409\t.\t+\t.\tgene_id "ENSG00000223972.5"; gene_type "transcribed_unprocessed_pseudogene"; gene_name "DDX11L1";
chr1\tHAVANA\ttranscript\t11869\t14409\t.\t+\t.\tgene_id "ENSG00000223972.5"; transcript_id "ENST00000456328.2"; gene_type "transcribed_unprocessed_pseudogene"; gene_name "DDX11L1";
chr1\tHAVANA\texon\t11869\t12227\t.\t+\t.\tgene_id "ENSG00000223972.5"; transcript_id "ENST00000456328.2"; gene_name "DDX11L1";
chrM\tENSEMBL\ttranscript\t3307\t4262\t.\t+\t.\tgene_id "ENSG00000198888.2"; transcript_id "ENST00000361390.2"; gene_type "protein_coding"; gene_name "MT-ND1";
chrM\tENSEMBL\ttranscript\t3307\t4262\t.\t+\t.\tgene_id "ENSG00000198888.2"; transcript_id "ENST00000361391.1"; gene_type "protein_coding"; gene_name "MT-ND1";
"""

FASTA = """>ENST00000456328.2|ENSG00000223972.5|OTTHUMG1|OTTHUMT1|DDX11L1-202|DDX11L1|1657|processed_transcript|
ACGTACGT
ACGT
>ENST00000361390.2|ENSG00000198888.2|-|-|MT-ND1-201|MT-ND1|956|protein_coding|
TTTTGGGG
>ENST99999999999.1|ENSG99999999999.1|-|-|X-201|X|8|lncRNA|
CCCC
"""


def _write_inputs(tmp_path: Path) -> tuple[Path, Path]:
    gtf = tmp_path / "inputs" / "annotation.gtf.gz"
    fasta = tmp_path / "inputs" / "transcripts.fa.gz"
    gtf.parent.mkdir()
    with gzip.open(gtf, "wt") as fh:
        fh.write(GTF)
    with gzip.open(fasta, "wt") as fh:
        fh.write(FASTA)
    return fasta, gtf


def test_read_gtf_keeps_transcripts_only(tmp_path: Path):
    _, gtf = _write_inputs(tmp_path)
    records = read_gtf_transcripts(gtf)

    assert list(records["transcript_id"]) == [
        "ENST00000456328.2",
        "ENST00000361390.2",
        "ENST00000361391.1",
    ]
    assert records.loc[1, "gene_name"] == "MT-ND1"
    assert records.loc[0, "gene_type"] == "transcribed_unprocessed_pseudogene"


def test_fasta_ids_and_digest(tmp_path: Path):
    fasta, _ = _write_inputs(tmp_path)
    assert fasta_transcript_ids(fasta) == [
        "ENST00000456328.2",
        "ENST00000361390.2",
        "ENST99999999999.1",
    ]

    plain = tmp_path / "plain.fa"
    plain.write_text(FASTA.lower().replace(">enst", ">ENST"))
    assert fasta_digest(plain) == fasta_digest(fasta)


def test_build_linked_reference_and_cache(tmp_path: Path, monkeypatch):
    fasta, gtf = _write_inputs(tmp_path)
    cache = tmp_path / "cache"

    linked = build_linked_reference(str(fasta), str(gtf), cache)
    assert linked.metadata["n_fasta_transcripts"] == 3
    assert linked.metadata["n_unlinked_transcripts"] == 1
    assert linked.metadata["n_genes"] == 2
    assert json.loads((cache / "linked_reference.json").read_text())["gtf"] == str(gtf)

    symbols = linked.gene_symbols()
    assert symbols["ENSG00000198888"] == "MT-ND1"
    assert symbols.index.is_unique

    def fail(*args, **kwargs):
        raise AssertionError("cached reference should be reused")

    monkeypatch.setattr(reference, "read_gtf_transcripts", fail)
    cached = build_linked_reference(str(fasta), str(gtf), cache)
    assert cached.metadata == linked.metadata
    assert len(cached.tx2gene) == len(linked.tx2gene)


def test_build_linked_reference_missing_file(tmp_path: Path):
    with pytest.raises(requests.RequestException):
        build_linked_reference(
            str(tmp_path / "absent.fa.gz"), str(tmp_path / "absent.gtf.gz"), tmp_path / "cache"
        )
