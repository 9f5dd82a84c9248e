"""Compliance-tracked diagnostic documentation gateway."""

__version__ = "0.1.0"
