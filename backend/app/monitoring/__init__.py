"""Metric registry and relay metric definitions."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
