"""Building blocks shared by the concrete tasks."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, TypeVar

from walletqueue.errors import ApprovalDeferred
from walletqueue.models import FOREVER, Expiry, Notification, PendingRequest, RequestType, from_unix_seconds
from walletqueue.providers import ProviderName, PromptUserProvider, ResolvedProviders
from walletqueue.task import Task

logger = logging.getLogger(__name__)

T = TypeVar("T")


def event_expiry(event: dict[str, Any]) -> Expiry:
    """Deadline of a protocol event (`expires_at`, unix seconds), if it has one."""
    expires_at = event.get("expires_at")
    if expires_at is None:
        return FOREVER
    return from_unix_seconds(expires_at)


def service_name_from_profile(profile: dict[str, Any] | None) -> str | None:
    if not profile:
        return None
    return profile.get("display_name") or profile.get("name") or profile.get("nip05")


def normalize_currency(currency: str | None) -> str | None:
    if not currency:
        return None
    currency = currency.upper()
    if currency in ("SAT", "SATS"):
        return "SATS"
    return currency


def normalize_amount(amount: int, currency: str) -> tuple[float, str]:
    """
    Convert a protocol amount to the units activities are stored in.

    Millisats become sats; fiat arrives in minor units (cents) and becomes
    major units.
    """
    if currency.upper() == "MSATS":
        return amount / 1000, "SATS"
    return amount / 100, currency.upper()


def format_amount(amount: float, currency: str | None) -> str:
    if currency == "SATS":
        return f"{amount:,.0f} sats"
    return f"{amount:,.2f} {currency or ''}".strip()


class RelayReplyTask(Task[T]):
    """A task that answers over Nostr, so it needs a connected relay first."""

    dependencies = (ProviderName.PORTAL_APP, ProviderName.RELAY_STATUSES)

    async def wait_for_relays(self, providers: ResolvedProviders) -> None:
        await providers[ProviderName.RELAY_STATUSES].wait_for_relays_connected(
            self.context.settings.relay_connect_timeout
        )


async def request_user_decision(
    prompt: PromptUserProvider,
    *,
    request_id: str,
    request_type: RequestType,
    metadata: dict[str, Any],
    notification: Notification | None,
) -> Any:
    """
    Suspend until the user decides on a pending request.

    There is no timeout: the request lives until the user acts or the
    process dies. When the app is in the background a notification is sent
    instead and ApprovalDeferred is raised, so the owning queue record
    replays the flow on next launch.
    """
    loop = asyncio.get_running_loop()
    decision: asyncio.Future[Any] = loop.create_future()

    def resolve(value: Any) -> None:
        if not decision.done():
            decision.set_result(value)

    pending = PendingRequest(id=request_id, metadata=metadata, type=request_type, result=resolve)
    logger.info("Requesting user approval for %s %s", request_type.value, request_id)
    if not prompt.prompt_user(pending, notification):
        raise ApprovalDeferred(request_id)
    return await decision
