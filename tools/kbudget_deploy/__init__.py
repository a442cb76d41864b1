"""Dependency-ordered deployment and validation of the KBudget Azure footprint."""

__version__ = "0.3.0"
