"""Task routing, dispatch and lifecycle reconciliation for a fleet of file-driven workers."""

__version__ = "0.4.0"
