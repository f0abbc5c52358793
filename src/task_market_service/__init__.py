"""Task Market Service - physical-world task brokering with payment reconciliation."""

__version__ = "0.1.0"
