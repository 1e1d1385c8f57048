"""Backup rotation and service-state reconciliation for a single-host monitoring stack."""

__version__ = "0.1.0"
