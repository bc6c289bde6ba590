"""Droplet scRNA-seq exploratory analysis: QC, normalization, clustering, markers, annotation."""

__version__ = "0.1.0"
