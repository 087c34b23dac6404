"""Flotilla: parallel workers coordinated over one shared git repository."""

__version__ = "0.1.0"

__all__ = ["__version__"]
