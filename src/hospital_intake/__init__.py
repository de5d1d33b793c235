"""Triage intake and per-hospital priority queue engine."""

__version__ = "0.1.0"
