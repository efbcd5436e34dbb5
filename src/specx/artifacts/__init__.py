"""Deterministic on-disk serialization helpers."""
