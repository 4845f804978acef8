"""Secure operations workflow engine: time-locked and meta-transaction security operations."""

__version__ = "0.1.0"
