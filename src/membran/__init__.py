"""Recurring paid memberships reconciled against payment-gateway notifications."""

__version__ = "0.1.0"
