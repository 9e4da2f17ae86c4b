"""Lightweight table-name constants and column-name enums."""

from enum import Enum


# Table name constants
class Table:
    """Database table names."""

    PRICING_TIERS = "pricing_tiers"
    SUBSCRIPTIONS = "subscriptions"
    TRANSACTIONS = "transactions"
    WEBHOOK_EVENTS = "webhook_events"
    SCHEMA_MIGRATIONS = "schema_migrations"


# Column name enums
class TransactionStatus(str, Enum):
    """Ledger status of one gateway order."""

    PENDING = "Pending"
    SUCCESS = "Success"
    FAILED = "Failed"
    REFUNDED = "Refunded"


class SubscriptionStatus(str, Enum):
    """Membership status."""

    ACTIVE = "Active"
    PENDING = "Pending"
    EXPIRED = "Expired"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


class TierDuration(str, Enum):
    """Billing period of a pricing tier."""

    MONTHLY = "monthly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"


class Outcome(str, Enum):
    """Result of reconciling one gateway notification."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
