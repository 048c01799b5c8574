"""Orchestration side of tensorbench.

Patches the bench crate's manifests, runs ``cargo bench`` for each
(version, backend, dtype) cell and collects the results into one report.
"""
