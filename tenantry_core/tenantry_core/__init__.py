"""Core state and lifecycle model for the tenantry control plane."""

__version__ = "0.1.0"
