"""Midtrans notification payload parsing and status mapping."""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from membran.db.models import TransactionStatus
from membran.payments.errors import MalformedPayload
from membran.payments.models import GatewayUpdate

# Midtrans reports local times in Western Indonesia Time
GATEWAY_TIMEZONE = timezone(timedelta(hours=7))

STATUS_MAP: dict[str, TransactionStatus] = {
    "pending": TransactionStatus.PENDING,
    "authorize": TransactionStatus.PENDING,
    "settlement": TransactionStatus.SUCCESS,
    "capture": TransactionStatus.SUCCESS,
    "deny": TransactionStatus.FAILED,
    "cancel": TransactionStatus.FAILED,
    "expire": TransactionStatus.FAILED,
    "failure": TransactionStatus.FAILED,
    "refund": TransactionStatus.REFUNDED,
    "partial_refund": TransactionStatus.REFUNDED,
}


class MidtransNotification(BaseModel):
    """HTTP notification body sent by Midtrans for a transaction status change."""

    model_config = ConfigDict(
        extra="ignore",
        str_strip_whitespace=True,
        coerce_numbers_to_str=True,
    )

    order_id: str = Field(..., min_length=1)
    transaction_status: str = Field(..., min_length=1)
    gross_amount: str = Field(..., min_length=1)
    transaction_id: Optional[str] = None
    payment_type: Optional[str] = None
    fraud_status: Optional[str] = None
    status_code: Optional[str] = None
    signature_key: Optional[str] = None
    settlement_time: Optional[str] = None
    payment_date: Optional[str] = None
    transaction_time: Optional[str] = None

    @field_validator("transaction_status", "fraud_status")
    @classmethod
    def lowercase(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else v


def parse_gateway_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a Midtrans timestamp ("2024-05-01 10:00:00") into UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise MalformedPayload(f"Invalid gateway timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=GATEWAY_TIMEZONE)
    return parsed.astimezone(timezone.utc)


def parse_amount(value: str) -> int:
    """Parse a gross amount string ("10000.00") into integer minor units."""
    try:
        amount = Decimal(value)
    except InvalidOperation as e:
        raise MalformedPayload(f"Invalid gross_amount: {value!r}") from e
    if not amount.is_finite() or amount != amount.to_integral_value() or amount < 0:
        raise MalformedPayload(f"Invalid gross_amount: {value!r}")
    return int(amount)


def map_gateway_status(transaction_status: str, fraud_status: Optional[str] = None) -> TransactionStatus:
    """
    Translate a Midtrans transaction status into ledger vocabulary.

    A card ``capture`` flagged ``challenge`` by fraud screening is still
    awaiting review, and one flagged ``deny`` is a failure.

    Raises:
        MalformedPayload: Unknown transaction status
    """
    status = STATUS_MAP.get(transaction_status)
    if status is None:
        raise MalformedPayload(
            f"Unknown transaction status: {transaction_status!r}",
            {"transaction_status": transaction_status},
        )
    if transaction_status == "capture":
        if fraud_status == "challenge":
            return TransactionStatus.PENDING
        if fraud_status == "deny":
            return TransactionStatus.FAILED
    return status


def load_notification(raw: Union[bytes, str, Mapping[str, Any]]) -> MidtransNotification:
    """
    Validate a raw notification body.

    Raises:
        MalformedPayload: Body is not a JSON object or lacks required fields
    """
    if isinstance(raw, (bytes, str)):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedPayload(f"Invalid JSON payload: {e}") from e

    if not isinstance(raw, Mapping):
        raise MalformedPayload("Notification payload must be a JSON object")

    try:
        return MidtransNotification.model_validate(dict(raw))
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise MalformedPayload(
            f"Invalid notification fields: {', '.join(fields)}",
            {"order_id": raw.get("order_id"), "fields": fields},
        ) from e


def to_gateway_update(notification: MidtransNotification) -> GatewayUpdate:
    """Map a validated notification onto a ledger update."""
    return GatewayUpdate(
        gateway_order_id=notification.order_id,
        status=map_gateway_status(notification.transaction_status, notification.fraud_status),
        amount=parse_amount(notification.gross_amount),
        gateway_transaction_id=notification.transaction_id,
        payment_method=notification.payment_type,
        payment_date=parse_gateway_time(notification.settlement_time or notification.payment_date),
    )


def parse_notification(raw: Union[bytes, str, Mapping[str, Any]]) -> GatewayUpdate:
    """Validate a raw notification body and map it onto a ledger update."""
    return to_gateway_update(load_notification(raw))
