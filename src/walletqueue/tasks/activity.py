"""Activity log and relay list tasks."""

from __future__ import annotations

import logging
from typing import Any

from walletqueue.models import ActivityStatus, now_utc
from walletqueue.providers import ProviderName, ResolvedProviders
from walletqueue.task import Task, TransactionalTask

logger = logging.getLogger(__name__)

DEFAULT_RELAYS = [
    "wss://relay.damus.io",
    "wss://relay.nostr.band",
    "wss://nos.lol",
]


class SaveActivityTask(TransactionalTask[str]):
    """Insert an activity row and return its id."""

    dependencies = (ProviderName.DATABASE,)

    async def task_logic(self, providers: ResolvedProviders, activity: dict[str, Any]) -> str:
        return await providers[ProviderName.DATABASE].add_activity(activity)


class UpdateActivityStatusTask(Task[None]):
    dependencies = (ProviderName.DATABASE,)

    async def task_logic(
        self,
        providers: ResolvedProviders,
        activity_id: str,
        status: ActivityStatus,
        detail: str,
    ) -> None:
        await providers[ProviderName.DATABASE].update_activity_status(activity_id, status, detail)
        logger.info("Activity %s is now %s", activity_id, ActivityStatus(status).value)


class GetActivityFromInvoiceTask(Task[dict]):
    dependencies = (ProviderName.DATABASE,)

    async def task_logic(self, providers: ResolvedProviders, invoice: str) -> dict | None:
        return await providers[ProviderName.DATABASE].get_activity_from_invoice(invoice)


class GetRelaysTask(Task[list]):
    """The configured relays, falling back to the default list. Never cached."""

    dependencies = (ProviderName.DATABASE,)

    def __init__(self, context, *args) -> None:
        super().__init__(context, *args)
        self.expiry = now_utc()

    async def task_logic(self, providers: ResolvedProviders) -> list[str]:
        relays = await providers[ProviderName.DATABASE].get_relays()
        return relays or list(DEFAULT_RELAYS)
