"""Login (auth challenge) requests."""

from __future__ import annotations

import logging
from typing import Any

from walletqueue.models import ActivityStatus, ActivityType, Notification, RequestType, expires_in
from walletqueue.providers import ProviderName, ResolvedProviders
from walletqueue.task import Task
from walletqueue.tasks.activity import SaveActivityTask
from walletqueue.tasks.base import RelayReplyTask, event_expiry, request_user_decision, service_name_from_profile

logger = logging.getLogger(__name__)

PROFILE_TTL = 24 * 60 * 60


class ProcessAuthRequestTask(Task[str]):
    """
    Ask the user to approve a login, answer the challenge, log the activity.

    Returns the activity id, or None if the user dismissed the request.
    """

    def __init__(self, context, event: dict[str, Any]) -> None:
        super().__init__(context, event)
        self.expiry = event_expiry(event)

    async def task_logic(self, providers: ResolvedProviders, event: dict[str, Any]) -> str | None:
        response = await RequireAuthUserApprovalTask(self.context, event).run()
        if not response:
            logger.info("Auth request %s dismissed", event["event_id"])
            return None

        await SendAuthChallengeResponseTask(self.context, event, response).run()

        service_key = event["service_key"]
        profile = await FetchServiceProfileTask(self.context, service_key).run()
        accepted = response.get("status") == "approved"
        return await SaveActivityTask(
            self.context,
            {
                "type": ActivityType.AUTH,
                "service_key": service_key,
                "service_name": service_name_from_profile(profile) or "Unknown Service",
                "detail": "User approved login" if accepted else "User rejected login",
                "amount": None,
                "currency": None,
                "converted_amount": None,
                "converted_currency": None,
                "request_id": event["event_id"],
                "subscription_id": None,
                "status": ActivityStatus.POSITIVE if accepted else ActivityStatus.NEGATIVE,
            },
        ).run()


class FetchServiceProfileTask(RelayReplyTask[dict]):
    """Nostr profile of a service, cached for a day."""

    async def task_logic(self, providers: ResolvedProviders, key: str) -> dict | None:
        self.expiry = expires_in(PROFILE_TTL)
        await self.wait_for_relays(providers)
        return await providers[ProviderName.PORTAL_APP].fetch_profile(key)


class RequireAuthUserApprovalTask(Task[dict]):
    dependencies = (ProviderName.PROMPT_USER,)

    async def task_logic(self, providers: ResolvedProviders, event: dict[str, Any]) -> dict | None:
        return await request_user_decision(
            providers[ProviderName.PROMPT_USER],
            request_id=event["event_id"],
            request_type=RequestType.LOGIN,
            metadata=event,
            notification=Notification(
                title="Authentication Request",
                body="Authentication request requires approval",
                data={"type": "authentication_request", "request_id": event["event_id"]},
            ),
        )


class SendAuthChallengeResponseTask(RelayReplyTask[None]):
    async def task_logic(
        self, providers: ResolvedProviders, event: dict[str, Any], response: dict[str, Any]
    ) -> None:
        await self.wait_for_relays(providers)
        await providers[ProviderName.PORTAL_APP].reply_auth_challenge(event, response)
