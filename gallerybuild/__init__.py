"""Offline build pipeline for responsive gallery images."""

__version__ = "0.4.0"
