"""Core data models for walletqueue."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Literal, Union

FOREVER: Literal["forever"] = "forever"

# A cached result either expires at a point in time or never.
Expiry = Union[datetime, Literal["forever"]]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def expires_in(seconds: float) -> datetime:
    """Expiry `seconds` from now."""
    return now_utc() + timedelta(seconds=seconds)


def to_unix_seconds(value: datetime | float) -> int:
    if isinstance(value, datetime):
        return int(value.timestamp())
    return int(value)


def to_unix_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_unix_seconds(seconds: int | float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def now_millis() -> int:
    return int(time.time() * 1000)


class ActivityStatus(str, Enum):
    """Status shown for an activity row."""

    NEUTRAL = "neutral"
    POSITIVE = "positive"
    NEGATIVE = "negative"
    PENDING = "pending"


class ActivityType(str, Enum):
    AUTH = "auth"
    PAY = "pay"
    RECEIVE = "receive"
    REFUND = "refund"
    TICKET_RECEIVED = "ticket_received"
    NOSTR_CONNECT = "nostr_connect"


class PaymentAction(str, Enum):
    """Entries of the payment status log, keyed by invoice."""

    PAYMENT_STARTED = "payment_started"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    REFUND_STARTED = "refund_started"


class RequestType(str, Enum):
    """Kinds of pending user decisions."""

    LOGIN = "login"
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"
    TICKET = "ticket"
    NOSTR_CONNECT = "nostrConnect"


@dataclass
class TaskRecord:
    """A persisted queue entry, enough to rebuild and re-run a task."""

    id: int
    task_name: str
    arguments: str  # codec-encoded constructor arguments
    added_at: int  # unix seconds
    expires_at: int | None = None  # unix millis, None = forever
    priority: int = 0
    attempts: int = 0

    def is_expired(self, now_ms: int | None = None) -> bool:
        if self.expires_at is None:
            return False
        if now_ms is None:
            now_ms = now_millis()
        return self.expires_at <= now_ms

    @classmethod
    def from_row(cls, row: Any) -> TaskRecord:
        return cls(
            id=row["id"],
            task_name=row["task_name"],
            arguments=row["arguments"],
            added_at=row["added_at"],
            expires_at=row["expires_at"],
            priority=row["priority"],
            attempts=row["attempts"],
        )


@dataclass
class Notification:
    """Push notification shown when the app cannot prompt in the foreground."""

    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class PendingRequest:
    """
    A task suspended until the user decides.

    `metadata` is the original protocol event, enough for the UI to render
    an approval card. Calling `result` with the decision resumes the task.
    """

    id: str
    metadata: dict[str, Any]
    type: RequestType
    result: Callable[[Any], None]
    timestamp: datetime = field(default_factory=now_utc)


# Responses sent back over the protocol. Plain dicts keep them codec-friendly.

def payment_status(status: str, **details: Any) -> dict[str, Any]:
    """Build a payment status payload: approved, rejected, failed or success."""
    return {"status": status, **details}


def approved() -> dict[str, Any]:
    return payment_status("approved")


def rejected(reason: str) -> dict[str, Any]:
    return payment_status("rejected", reason=reason)


def failed(reason: str) -> dict[str, Any]:
    return payment_status("failed", reason=reason)


def succeeded(preimage: str) -> dict[str, Any]:
    return payment_status("success", preimage=preimage)
