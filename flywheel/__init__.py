"""Flywheel Setup — declarative installer for agent workstations."""

__version__ = "0.1.0"
