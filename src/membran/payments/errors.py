"""Reconciliation error taxonomy.

Every error carries a stable ``code`` and a ``context`` dict (order id,
attempted status, current state) so a rejected notification can be replayed
by hand. ``Duplicate`` and ``Stale`` are outcomes, not errors; see
:class:`membran.db.models.Outcome`.
"""

from typing import Any, Optional


class ReconciliationError(Exception):
    """Base class for ledger and subscription reconciliation errors."""

    code = "reconciliation_error"

    def __init__(self, detail: str, context: Optional[dict[str, Any]] = None):
        self.detail = detail
        self.context = context or {}
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.detail, "context": self.context}


class DuplicateOrder(ReconciliationError):
    """A ledger entry already exists for this gateway order id."""

    code = "duplicate_order"


class NotFound(ReconciliationError):
    """A referenced ledger entry, subscription or tier does not exist."""

    code = "not_found"


class UnknownOrder(NotFound):
    """A gateway notification names an order the ledger has never recorded."""

    code = "unknown_order"


class InvalidTransition(ReconciliationError):
    """The requested status change violates the ledger or lifecycle rules."""

    code = "invalid_transition"


class StaleUpdate(InvalidTransition):
    """The update reports a status older than the one already persisted."""

    code = "stale_update"


class AmountMismatch(InvalidTransition):
    """The gateway amount differs from the amount recorded at checkout."""

    code = "amount_mismatch"


class ActiveSubscriptionExists(InvalidTransition):
    """The member already holds an Active subscription to another tier on the server."""

    code = "active_subscription_exists"


class MalformedPayload(ReconciliationError):
    """The notification body is missing required fields or has bad values."""

    code = "malformed_payload"


class SignatureInvalid(ReconciliationError):
    """The notification failed signature verification upstream."""

    code = "signature_invalid"


class Busy(ReconciliationError):
    """The per-subscription lock could not be acquired in time; retry later."""

    code = "busy"
