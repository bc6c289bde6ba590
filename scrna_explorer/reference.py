#!/usr/bin/env python3
"""
Linked reference utilities
Downloads a transcriptome FASTA and matching GTF, links transcripts to genes
and exposes the gene ID -> symbol table used to annotate the count matrix
"""

import gzip
import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path

import pandas as pd

from scrna_explorer.data_loader import download_file, strip_version

GTF_COLUMNS = [
    "seqname",
    "source",
    "feature",
    "start",
    "end",
    "score",
    "strand",
    "frame",
    "attributes",
]
ATTRIBUTES = ("transcript_id", "gene_id", "gene_name", "gene_type")


def _open_text(path):
    path = Path(path)
    if path.suffix == ".gz":
        return gzip.open(path, "rt")
    return open(path, "r")


def read_gtf_transcripts(path):
    """Read transcript records from a GTF file

    Args:
        path: Path to a (gzipped) GTF file

    Returns:
        DataFrame with transcript_id, gene_id, gene_name, gene_type
    """
    print(f"Reading annotation {path}...")
    gtf = pd.read_csv(
        path,
        sep="\t",
        comment="#",
        header=None,
        names=GTF_COLUMNS,
        usecols=["feature", "attributes"],
        dtype=str,
    )
    gtf = gtf[gtf["feature"] == "transcript"]

    records = pd.DataFrame(index=gtf.index)
    for attr in ATTRIBUTES:
        records[attr] = gtf["attributes"].str.extract(rf'{attr} "([^"]+)"', expand=False)

    records = records.dropna(subset=["transcript_id", "gene_id"])
    records = records.drop_duplicates("transcript_id").reset_index(drop=True)
    print(f"  {len(records)} transcripts from {records['gene_id'].nunique()} genes")
    return records


def fasta_transcript_ids(path):
    """Transcript identifiers from FASTA headers (first '|' or space field)"""
    ids = []
    with _open_text(path) as fh:
        for line in fh:
            if line.startswith(">"):
                ids.append(line[1:].strip().split("|")[0].split()[0])
    return ids


def fasta_digest(path):
    """SHA-256 over the sequence content of a FASTA file"""
    digest = hashlib.sha256()
    with _open_text(path) as fh:
        for line in fh:
            if not line.startswith(">"):
                digest.update(line.strip().upper().encode())
    return digest.hexdigest()


@dataclass
class LinkedReference:
    """Transcript -> gene table tied to the transcriptome it was built for"""

    tx2gene: pd.DataFrame
    metadata: dict = field(default_factory=dict)

    def gene_symbols(self):
        """Versionless gene ID -> gene symbol"""
        genes = self.tx2gene.dropna(subset=["gene_name"])
        table = pd.Series(
            genes["gene_name"].values, index=strip_version(genes["gene_id"])
        )
        return table[~table.index.duplicated()]


def build_linked_reference(fasta_url, gtf_url, cache_dir, timeout=3600):
    """Download the reference files and link transcripts to genes

    A cached reference built from the same URLs is reused.

    Args:
        fasta_url: URL (or path) of the transcript FASTA
        gtf_url: URL (or path) of the matching GTF annotation
        cache_dir: Directory for downloads and the cached tables
        timeout: Download timeout in seconds

    Returns:
        LinkedReference
    """
    cache_dir = Path(cache_dir)
    cache_dir.mkdir(parents=True, exist_ok=True)
    meta_path = cache_dir / "linked_reference.json"
    table_path = cache_dir / "tx2gene.tsv"

    if meta_path.exists() and table_path.exists():
        metadata = json.loads(meta_path.read_text())
        if metadata.get("fasta") == str(fasta_url) and metadata.get("gtf") == str(gtf_url):
            print(f"Using cached linked reference in {cache_dir}")
            tx2gene = pd.read_csv(table_path, sep="\t", dtype=str)
            return LinkedReference(tx2gene=tx2gene, metadata=metadata)

    print("Building linked reference...")
    fasta_path = cache_dir / Path(str(fasta_url)).name
    gtf_path = cache_dir / Path(str(gtf_url)).name
    if not fasta_path.exists():
        fasta_path = download_file(fasta_url, fasta_path, timeout=timeout)
    if not gtf_path.exists():
        gtf_path = download_file(gtf_url, gtf_path, timeout=timeout)

    tx2gene = read_gtf_transcripts(gtf_path)
    fasta_ids = fasta_transcript_ids(fasta_path)
    missing = sorted(set(fasta_ids) - set(tx2gene["transcript_id"]))
    if missing:
        print(f"  Warning: {len(missing)} FASTA transcripts have no GTF record")

    metadata = {
        "fasta": str(fasta_url),
        "gtf": str(gtf_url),
        "fasta_sha256": fasta_digest(fasta_path),
        "n_fasta_transcripts": len(fasta_ids),
        "n_gtf_transcripts": int(len(tx2gene)),
        "n_genes": int(tx2gene["gene_id"].nunique()),
        "n_unlinked_transcripts": len(missing),
    }

    tx2gene.to_csv(table_path, sep="\t", index=False)
    meta_path.write_text(json.dumps(metadata, indent=2))
    print(f"  Saved: {table_path}")
    print(f"  Saved: {meta_path}")

    return LinkedReference(tx2gene=tx2gene, metadata=metadata)
