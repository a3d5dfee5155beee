"""Meshlink package initialisation."""

__version__ = "0.4.0"
