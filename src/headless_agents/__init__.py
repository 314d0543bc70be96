"""Uniform streaming session protocol over command-line AI assistants."""

__version__ = "0.1.0"
