"""Durable multi-step flow engine backed by Redis."""

__version__ = "0.1.0"
