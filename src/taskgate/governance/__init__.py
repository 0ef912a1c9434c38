"""Governance decision core: routing, gating, dispatch, and task lifecycle."""
