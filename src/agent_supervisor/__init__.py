"""Supervisor for interactive command-line coding agents."""

__version__ = "0.1.0"
