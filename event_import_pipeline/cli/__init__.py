"""
CLI package for Event Import Pipeline

Provides command-line interface for caches, stages, ID generation and imports.
"""

from .main import main, cli

__all__ = ["main", "cli"]
