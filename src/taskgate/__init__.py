"""Governance-gated request routing and dispatch."""

__version__ = "0.1.0"
