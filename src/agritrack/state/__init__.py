"""State/store layer.

This package is the single source of truth for how position readings from
tracking sessions and remote feeds are merged into a deterministic
per-delivery snapshot.
"""
