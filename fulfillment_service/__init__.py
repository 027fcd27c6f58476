"""Order fulfillment and payment reconciliation service for a multi-branch pizza chain."""

__version__ = "0.1.0"
