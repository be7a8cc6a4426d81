"""E-cash tokens: received directly over Nostr, or burned at a service's request."""

from __future__ import annotations

import hashlib
import logging
from typing import Any

from walletqueue.models import ActivityStatus, ActivityType, RequestType
from walletqueue.providers import ProviderName, ResolvedProviders
from walletqueue.task import Task
from walletqueue.tasks.activity import SaveActivityTask
from walletqueue.tasks.base import RelayReplyTask, event_expiry, request_user_decision

logger = logging.getLogger(__name__)


class HandleCashuDirectContentTask(Task[bool]):
    """
    Redeem a token into the matching mint wallet and record a ticket activity.

    Returns False if the token had already been processed.
    """

    dependencies = (ProviderName.NOSTR_STORE, ProviderName.CASHU_WALLETS)

    async def task_logic(self, providers: ResolvedProviders, event: dict[str, Any]) -> bool:
        token = event["token"]
        token_info = await ParseCashuTokenTask(self.context, token).run()
        already_processed = await MarkCashuTokenAsProcessedTask(
            self.context, token, self.cache_key()
        ).run()
        if already_processed:
            logger.info("Cashu token from %s already processed", token_info["mint_url"])
            return False

        mint_url = token_info["mint_url"]
        unit = token_info["unit"].lower()
        wallet = await providers[ProviderName.CASHU_WALLETS].add_wallet(mint_url, unit)
        await wallet.receive_token(token)

        store = providers[ProviderName.NOSTR_STORE]
        mints = await store.read_mints()
        if mint_url not in mints:
            await store.store_mints([mint_url, *mints])
        logger.info("Cashu token from %s received", mint_url)

        unit_info = await wallet.get_unit_info()
        title = (unit_info or {}).get("title") or wallet.unit()
        await SaveActivityTask(
            self.context,
            {
                "type": ActivityType.TICKET_RECEIVED,
                "service_key": mint_url,
                "service_name": title,
                "detail": title,
                "amount": token_info["amount"],
                "currency": None,
                "converted_amount": None,
                "converted_currency": None,
                "request_id": f"cashu-direct-{hashlib.sha256(token.encode()).hexdigest()[:16]}",
                "subscription_id": None,
                "status": ActivityStatus.NEUTRAL,
            },
        ).run()
        return True


class MarkCashuTokenAsProcessedTask(Task[bool]):
    """
    Returns True if the token had been processed before.

    Keyed by token and the handling event, so a replayed handler sees its
    own earlier answer while a second delivery of the token sees True.
    """

    dependencies = (ProviderName.DATABASE,)

    async def task_logic(self, providers: ResolvedProviders, token: str, handler_key: str) -> bool:
        token_info = await ParseCashuTokenTask(self.context, token).run()
        return await providers[ProviderName.DATABASE].mark_cashu_token_as_processed(
            token, token_info["mint_url"], token_info["unit"], token_info["amount"]
        )


class ParseCashuTokenTask(Task[dict]):
    dependencies = (ProviderName.PORTAL_APP,)

    async def task_logic(self, providers: ResolvedProviders, token: str) -> dict[str, Any]:
        return await providers[ProviderName.PORTAL_APP].parse_cashu_token(token)


def insufficient_funds() -> dict[str, Any]:
    return {"status": "insufficient_funds"}


class HandleCashuBurnRequestTask(Task[dict]):
    """
    A service asks to burn one of the user's tickets (e-cash tokens).

    The request is answered with insufficient funds, without prompting,
    unless a wallet for the mint and unit holds enough. Otherwise the
    user's decision is forwarded as is. Returns the status sent, or None
    if the user dismissed the request.
    """

    dependencies = (ProviderName.CASHU_WALLETS,)

    def __init__(self, context, event: dict[str, Any]) -> None:
        super().__init__(context, event)
        self.expiry = event_expiry(event)

    async def task_logic(self, providers: ResolvedProviders, event: dict[str, Any]) -> dict | None:
        mint_url = event["mint_url"]
        unit = event["unit"].lower()
        wallets = providers[ProviderName.CASHU_WALLETS]

        wallet = wallets.get_wallet(mint_url, unit)
        if wallet is None:
            try:
                wallet = await wallets.add_wallet(mint_url, unit)
            except Exception:
                logger.exception("Error creating wallet for %s-%s", mint_url, unit)

        try:
            balance = await wallet.get_balance() if wallet is not None else 0
        except Exception:
            logger.exception("Error checking balance of %s-%s", mint_url, unit)
            balance = 0
        if balance < event["amount"]:
            logger.info("Burn request %s: not enough %s at %s", event["request_id"], unit, mint_url)
            status = insufficient_funds()
            await SendCashuResponseStatusTask(self.context, event, status).run()
            return status

        unit_info = await wallet.get_unit_info()
        title = (unit_info or {}).get("title") or wallet.unit()
        status = await RequireTicketBurnUserApprovalTask(self.context, event, title).run()
        if not status:
            logger.info("Burn request %s dismissed", event["request_id"])
            return None
        await SendCashuResponseStatusTask(self.context, event, status).run()
        return status


class RequireTicketBurnUserApprovalTask(Task[dict]):
    """Tickets are only ever burned in the foreground, so no notification is sent."""

    dependencies = (ProviderName.PROMPT_USER,)

    async def task_logic(self, providers: ResolvedProviders, event: dict[str, Any], title: str) -> dict | None:
        return await request_user_decision(
            providers[ProviderName.PROMPT_USER],
            request_id=event["request_id"],
            request_type=RequestType.TICKET,
            metadata={**event, "ticket_title": title},
            notification=None,
        )


class SendCashuResponseStatusTask(RelayReplyTask[None]):
    async def task_logic(
        self, providers: ResolvedProviders, event: dict[str, Any], status: dict[str, Any]
    ) -> None:
        await self.wait_for_relays(providers)
        await providers[ProviderName.PORTAL_APP].reply_cashu_request(event, status)
