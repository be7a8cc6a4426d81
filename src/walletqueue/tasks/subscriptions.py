"""Subscription requests and lifecycle events."""

from __future__ import annotations

import logging
from typing import Any

from walletqueue.models import Notification, RequestType, rejected
from walletqueue.providers import ProviderName, ResolvedProviders
from walletqueue.task import Task
from walletqueue.tasks.base import (
    RelayReplyTask,
    event_expiry,
    format_amount,
    normalize_amount,
    request_user_decision,
)

logger = logging.getLogger(__name__)


class HandleRecurringPaymentRequestTask(Task[str]):
    """
    Ask the user to subscribe to a service's recurring payment.

    A confirmed request is stored as an active subscription, which later
    payment requests naming its id are checked against. Returns the new
    subscription id, or None if nothing was subscribed.
    """

    def __init__(self, context, request: dict[str, Any]) -> None:
        super().__init__(context, request)
        self.expiry = event_expiry(request)

    async def task_logic(self, providers: ResolvedProviders, request: dict[str, Any]) -> str | None:
        content = request["content"]
        recurrence = content["recurrence"]
        try:
            calendar = self.context.calendar_parser(recurrence["calendar"])
        except ValueError as error:
            logger.warning("Subscription request %s rejected: %s", request["event_id"], error)
            await SendRecurringPaymentResponseTask(
                self.context, request, rejected(f"Invalid recurrence: {error}")
            ).run()
            return None

        amount, currency = normalize_amount(content["amount"], content["currency"])
        service_name = request.get("service_name") or "Unknown Service"
        response = await RequireRecurringPaymentUserApprovalTask(
            self.context,
            request,
            "Subscription Request",
            f"{service_name} asks for {format_amount(amount, currency)}, "
            f"{calendar.to_human_readable().lower()}",
        ).run()
        if not response:
            logger.info("Subscription request %s dismissed", request["event_id"])
            return None

        subscription_id = None
        if response.get("status") == "confirmed":
            subscription_id = await SaveSubscriptionTask(
                self.context,
                {
                    "request_id": request["event_id"],
                    "service_name": service_name,
                    "service_key": request["service_key"],
                    "amount": amount,
                    "currency": currency,
                    "recurrence_calendar": calendar.to_calendar_string(),
                    "recurrence_first_payment_due": recurrence["first_payment_due"],
                },
            ).run()
            response = {
                "status": "confirmed",
                "subscription_id": subscription_id,
                "authorized_amount": content["amount"],
                "authorized_currency": content["currency"],
                "authorized_recurrence": recurrence,
            }
            logger.info("Subscription %s confirmed for %s", subscription_id, service_name)

        await SendRecurringPaymentResponseTask(self.context, request, response).run()
        return subscription_id


class SaveSubscriptionTask(Task[str]):
    dependencies = (ProviderName.DATABASE,)

    async def task_logic(self, providers: ResolvedProviders, subscription: dict[str, Any]) -> str:
        return await providers[ProviderName.DATABASE].add_subscription(subscription)


class RequireRecurringPaymentUserApprovalTask(Task[dict]):
    """Resolves to `{"status": "confirmed"}` or a rejection."""

    dependencies = (ProviderName.PROMPT_USER,)

    async def task_logic(
        self, providers: ResolvedProviders, request: dict[str, Any], title: str, body: str
    ) -> dict | None:
        return await request_user_decision(
            providers[ProviderName.PROMPT_USER],
            request_id=request["event_id"],
            request_type=RequestType.SUBSCRIPTION,
            metadata=request,
            notification=Notification(title=title, body=body, data={"type": "subscription"}),
        )


class SendRecurringPaymentResponseTask(RelayReplyTask[None]):
    async def task_logic(
        self, providers: ResolvedProviders, request: dict[str, Any], response: dict[str, Any]
    ) -> None:
        await self.wait_for_relays(providers)
        await providers[ProviderName.PORTAL_APP].reply_recurring_payment_request(
            request, {"request_id": request["event_id"], "status": response}
        )


class HandleCancelSubscriptionResponseTask(Task[None]):
    """A service confirmed that a recurring payment was closed."""

    dependencies = (ProviderName.DATABASE,)

    async def task_logic(self, providers: ResolvedProviders, response: dict[str, Any]) -> None:
        subscription_id = response["subscription_id"]
        await providers[ProviderName.DATABASE].update_subscription_status(subscription_id, "cancelled")
        logger.info("Subscription %s cancelled", subscription_id)
