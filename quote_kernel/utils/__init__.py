"""Deterministic helpers shared by services."""
