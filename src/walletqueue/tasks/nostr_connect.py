"""Remote signer (Nostr Connect) requests from client apps."""

from __future__ import annotations

import json
import logging
from typing import Any

from walletqueue.models import ActivityStatus, ActivityType, Notification, RequestType, now_utc
from walletqueue.providers import ProviderName, ResolvedProviders
from walletqueue.task import Task, TransactionalTask
from walletqueue.tasks.activity import SaveActivityTask
from walletqueue.tasks.base import RelayReplyTask, request_user_decision

logger = logging.getLogger(__name__)

CONNECT = "connect"
SIGN_EVENT = "sign_event"

PERMISSION_CHECK_ERROR = "Error while checking client permissions"


def declined(reason: str) -> dict[str, Any]:
    return {"status": "declined", "reason": reason}


def granted_permissions(client: dict[str, Any]) -> list[str]:
    return [p.strip() for p in (client.get("granted_permissions") or "").split(",") if p.strip()]


class HandleNostrConnectRequestTask(Task[None]):
    """
    Answer a request from a Nostr Connect client.

    `connect` needs a valid one-time secret and the user's approval. Every
    other method is approved only for an allowed, unrevoked client holding
    a matching permission (`sign_event` may be limited to event kinds, as
    in `sign_event:1`).
    """

    async def task_logic(self, providers: ResolvedProviders, event: dict[str, Any], signer_pubkey: str) -> None:
        message = event["message"]
        if "method" not in message:
            # Responses need no answer; the signer never sends requests.
            return

        if message["method"] == CONNECT:
            await self._handle_connect(event, message, signer_pubkey)
            return

        client = await GetBunkerClientTask(self.context, event["client_pubkey"]).run()
        if client is None or client["revoked"]:
            await self._decline(event, "Nostr client is not whitelisted or is revoked.")
            return

        method = message["method"]
        permissions = [p for p in granted_permissions(client) if p.startswith(method)]
        if not permissions:
            await self._decline(event, f"'{method}' permission not granted")
            return

        if method == SIGN_EVENT and permissions != [SIGN_EVENT]:
            reason = self._check_event_kind(message, permissions)
            if reason:
                await self._decline(event, reason)
                return

        await SaveActivityAndUpdateClientLastSeenTransactionalTask(
            self.context,
            event["client_pubkey"],
            method,
            client.get("client_name") or "Nostr client",
            message["id"],
        ).run()
        await SendNostrConnectResponseTask(self.context, event, {"status": "approved"}).run()

    async def _handle_connect(self, event: dict[str, Any], message: dict[str, Any], signer_pubkey: str) -> None:
        params = message.get("params") or []
        requested_pubkey = params[0] if params else None
        secret = params[1] if len(params) > 1 else None

        if not requested_pubkey:
            await self._decline(event, "No params")
            return
        if requested_pubkey != signer_pubkey:
            await self._decline(event, "Connect request contains a pubkey different from this signer")
            return
        if not secret:
            await self._decline(event, "Secret param is undefined")
            return

        valid = await UseBunkerSecretTransactionalTask(self.context, secret, message["id"]).run()
        if not valid:
            logger.info("Connect request %s has an invalid secret", message["id"])
            await self._decline(event, "Secret param is invalid")
            return

        response = await RequireNostrConnectUserApprovalTask(
            self.context, event, "Authentication Request", "Authentication request requires approval"
        ).run()
        if response:
            await SendNostrConnectResponseTask(self.context, event, response).run()

    def _check_event_kind(self, message: dict[str, Any], permissions: list[str]) -> str | None:
        params = message.get("params") or []
        if not params:
            return "No event to sign in the parameters."
        try:
            event_to_sign = json.loads(params[0])
        except (TypeError, ValueError) as error:
            logger.warning("Unreadable event to sign: %s", error)
            return PERMISSION_CHECK_ERROR
        if not isinstance(event_to_sign, dict):
            return PERMISSION_CHECK_ERROR
        kind = event_to_sign.get("kind")
        if kind is None:
            return "No event to sign in the parameters. Event to sign has no kind"
        allowed = [p.replace(f"{SIGN_EVENT}:", "") for p in permissions]
        if str(kind) not in allowed:
            return f"Event kind {kind} is not permitted. Allowed kinds: {', '.join(allowed)}"
        return None

    async def _decline(self, event: dict[str, Any], reason: str) -> None:
        logger.info("Declining nostr connect request: %s", reason)
        await SendNostrConnectResponseTask(self.context, event, declined(reason)).run()


class UseBunkerSecretTransactionalTask(TransactionalTask[bool]):
    """
    Consume a one-time connect secret for one request.

    Keyed by secret and request id, so replaying the same request sees its
    own earlier result while any other request finds the secret used.
    """

    dependencies = (ProviderName.DATABASE,)

    async def task_logic(self, providers: ResolvedProviders, secret: str, request_id: str) -> bool:
        return await providers[ProviderName.DATABASE].use_bunker_secret(secret)


class GetBunkerClientTask(Task[dict]):
    """Never cached: permissions may be revoked at any time."""

    dependencies = (ProviderName.DATABASE,)

    def __init__(self, context, *args) -> None:
        super().__init__(context, *args)
        self.expiry = now_utc()

    async def task_logic(self, providers: ResolvedProviders, client_pubkey: str) -> dict | None:
        return await providers[ProviderName.DATABASE].get_bunker_client(client_pubkey)


class RequireNostrConnectUserApprovalTask(Task[dict]):
    dependencies = (ProviderName.PROMPT_USER,)

    async def task_logic(
        self, providers: ResolvedProviders, event: dict[str, Any], title: str, body: str
    ) -> dict | None:
        request_id = event["message"]["id"]
        return await request_user_decision(
            providers[ProviderName.PROMPT_USER],
            request_id=request_id,
            request_type=RequestType.NOSTR_CONNECT,
            metadata=event,
            notification=Notification(
                title=title,
                body=body,
                data={"type": "authentication_request", "request_id": request_id},
            ),
        )


class SendNostrConnectResponseTask(RelayReplyTask[None]):
    async def task_logic(
        self, providers: ResolvedProviders, event: dict[str, Any], response: dict[str, Any]
    ) -> None:
        await self.wait_for_relays(providers)
        await providers[ProviderName.PORTAL_APP].reply_nostr_connect_request(event, response)


class SaveActivityAndUpdateClientLastSeenTransactionalTask(TransactionalTask[None]):
    dependencies = (ProviderName.DATABASE,)

    async def task_logic(
        self,
        providers: ResolvedProviders,
        client_pubkey: str,
        method: str,
        client_name: str,
        request_id: str,
    ) -> None:
        await providers[ProviderName.DATABASE].update_bunker_client_last_seen(client_pubkey)
        await SaveActivityTask(
            self.context,
            {
                "type": ActivityType.NOSTR_CONNECT,
                "service_key": client_pubkey,
                "service_name": client_name,
                "detail": f"Approved nostr activity for: {method}",
                "amount": None,
                "currency": None,
                "converted_amount": None,
                "converted_currency": None,
                "request_id": request_id,
                "subscription_id": None,
                "status": ActivityStatus.POSITIVE,
            },
        ).run()
