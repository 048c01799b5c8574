"""Workload-side benchmarking for tensorbench.

Everything in this package runs inside the spawned benchmark process: the
timing contract a workload implements, the summary statistics, the result
records and the harness that persists them for the orchestrator.
"""
