"""Canteen food ordering backend."""

__version__ = "0.1.0"
