"""Metric registry and definitions for room and audio coordination."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
