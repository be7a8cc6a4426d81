"""Invoice requests: a service asks the wallet for an invoice to pay (or refund)."""

from __future__ import annotations

import logging
from typing import Any

from walletqueue.errors import WalletUnavailableError
from walletqueue.models import ActivityStatus, ActivityType
from walletqueue.providers import ProviderName, ResolvedProviders
from walletqueue.task import Task
from walletqueue.tasks.activity import GetActivityFromInvoiceTask
from walletqueue.tasks.auth import FetchServiceProfileTask
from walletqueue.tasks.base import (
    RelayReplyTask,
    event_expiry,
    normalize_amount,
    normalize_currency,
    service_name_from_profile,
)
from walletqueue.tasks.payments import ConvertRequestAmountTask, SaveActivityAndAddPaymentStatusTransactionalTask

logger = logging.getLogger(__name__)


class HandleInvoiceRequestTask(Task[str]):
    """
    Create an invoice, send it to the service and record a pending activity.

    Returns the activity id. When the request refunds an earlier payment,
    the refunded invoice gets a refund_started entry in the payment log.
    """

    def __init__(self, context, event: dict[str, Any]) -> None:
        super().__init__(context, event)
        self.expiry = event_expiry(event)

    async def task_logic(self, providers: ResolvedProviders, event: dict[str, Any]) -> str:
        request_id = event["request_id"]
        service_key = event["service_key"]
        logger.info("Invoice request %s received from %s", request_id, service_key)

        profile = await FetchServiceProfileTask(self.context, service_key).run()
        name = service_name_from_profile(profile)

        amount, currency = normalize_amount(event["amount"], event["currency"])
        conversion = await ConvertRequestAmountTask(self.context, request_id, amount, currency).run()

        refund_invoice = event.get("refund_invoice")
        refunded_activity = None
        partial_refund = False
        if refund_invoice:
            refunded_activity = await GetActivityFromInvoiceTask(self.context, refund_invoice).run()
            if refunded_activity is None:
                logger.warning("Refund requested for unknown invoice %s", refund_invoice)
            if (
                refunded_activity is None
                or refunded_activity["amount"] != amount
                or normalize_currency(refunded_activity["currency"]) != normalize_currency(currency)
            ):
                logger.warning("Refund amount or currency mismatch for %s, proceeding", request_id)
                partial_refund = True

        invoice = await CreateInvoiceTask(self.context, event["amount"], event.get("description")).run()
        await SendInvoiceResponseTask(
            self.context, event, {"request_id": request_id, "invoice": invoice, "payment_hash": None}
        ).run()

        if refund_invoice:
            detail = "Waiting for partial refund" if partial_refund else "Waiting for full refund"
        else:
            detail = "Waiting to receive payment"
        activity = {
            "type": ActivityType.REFUND if refund_invoice else ActivityType.RECEIVE,
            "service_key": service_key,
            "service_name": name or "Unknown Service",
            "detail": detail,
            "amount": amount,
            "currency": currency,
            "converted_amount": conversion["converted_amount"],
            "converted_currency": conversion["converted_currency"],
            "request_id": request_id,
            "subscription_id": None,
            "status": ActivityStatus.PENDING,
            "invoice": invoice,
            "refunded_activity_id": refunded_activity["id"] if refunded_activity else None,
        }
        return await SaveActivityAndAddPaymentStatusTransactionalTask(
            self.context, activity, invoice, refund_invoice
        ).run()


class CreateInvoiceTask(Task[str]):
    dependencies = (ProviderName.ACTIVE_WALLET,)

    async def task_logic(self, providers: ResolvedProviders, amount: int, description: str | None) -> str:
        wallet = providers[ProviderName.ACTIVE_WALLET].get_wallet()
        if wallet is None:
            raise WalletUnavailableError()
        return await wallet.receive_payment(amount, description)


class SendInvoiceResponseTask(RelayReplyTask[None]):
    async def task_logic(
        self, providers: ResolvedProviders, request: dict[str, Any], response: dict[str, Any]
    ) -> None:
        await self.wait_for_relays(providers)
        await providers[ProviderName.PORTAL_APP].reply_invoice_request(request, response)
