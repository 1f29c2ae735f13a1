"""Scan pipeline: image acquisition, orchestration and counters."""
