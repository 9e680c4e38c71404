"""Inventory costing and reconciliation engine."""

__version__ = "1.0.0"
