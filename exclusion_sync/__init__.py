"""Reconcile backup global VM exclusions with live virtualization inventory."""

__version__ = "1.0.0"
