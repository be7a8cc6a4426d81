"""Single and recurring payment requests."""

from __future__ import annotations

import logging
import time
from typing import Any

from walletqueue.errors import ApprovalDeferred, ConfigurationError, RelayConnectionTimeout
from walletqueue.models import (
    ActivityStatus,
    ActivityType,
    approved,
    Notification,
    PaymentAction,
    RequestType,
    expires_in,
    failed,
    rejected,
    succeeded,
    to_unix_seconds,
)
from walletqueue.providers import ProviderName, ResolvedProviders
from walletqueue.task import Task, TransactionalTask
from walletqueue.tasks.activity import SaveActivityTask, UpdateActivityStatusTask
from walletqueue.tasks.base import (
    RelayReplyTask,
    event_expiry,
    format_amount,
    normalize_amount,
    normalize_currency,
    request_user_decision,
)

logger = logging.getLogger(__name__)

CONVERSION_TTL = 4 * 60
PAYMENT_TTL = 24 * 60 * 60


class ConvertCurrencyTask(Task[float]):
    """Exchange-rate conversion, cached for a few minutes."""

    dependencies = (ProviderName.CURRENCY_CONVERSION,)

    def __init__(self, context, *args) -> None:
        super().__init__(context, *args)
        self.expiry = expires_in(CONVERSION_TTL)

    async def task_logic(
        self, providers: ResolvedProviders, amount: float, from_currency: str, to_currency: str
    ) -> float:
        converter = providers[ProviderName.CURRENCY_CONVERSION]
        return await converter.convert_amount(amount, from_currency, to_currency)


class ConvertRequestAmountTask(Task[dict]):
    """
    The display conversion of one request's amount, fixed on first use.

    Rates move, so the converted amount must not be recomputed on replay:
    it ends up in the arguments of later sub-tasks, and a new value there
    would give them new cache keys.
    """

    async def task_logic(
        self, providers: ResolvedProviders, request_id: str, amount: float, currency: str
    ) -> dict[str, Any]:
        converted_amount, converted_currency = await convert_to_preferred(self.context, amount, currency)
        return {"converted_amount": converted_amount, "converted_currency": converted_currency}


async def convert_to_preferred(context, amount: float, currency: str) -> tuple[float | None, str | None]:
    """
    Convert `amount` to the user's preferred currency for display.

    Returns (None, None) when the currencies already match, or when the
    conversion fails; the activity is then stored without a converted amount.
    Request handlers go through ConvertRequestAmountTask instead.
    """
    preferred = normalize_currency(context.settings.preferred_currency)
    if normalize_currency(currency) == preferred:
        return None, None
    try:
        converted = await ConvertCurrencyTask(context, amount, currency, preferred).run()
    except Exception as error:
        logger.warning("Currency conversion from %s to %s failed: %s", currency, preferred, error)
        return None, None
    return converted, preferred


class HandleSinglePaymentRequestTask(Task[None]):
    """
    Entry point for a payment request from a service.

    One-off payments need the user's approval. Payments for a known
    subscription are made automatically once they are due.
    """

    dependencies = (
        ProviderName.DATABASE,
        ProviderName.ACTIVE_WALLET,
        ProviderName.RELAY_STATUSES,
    )

    def __init__(self, context, request: dict[str, Any]) -> None:
        super().__init__(context, request)
        self.expiry = event_expiry(request)

    async def task_logic(self, providers: ResolvedProviders, request: dict[str, Any]) -> None:
        try:
            await self._handle(providers, request)
        except (ApprovalDeferred, ConfigurationError, RelayConnectionTimeout):
            raise
        except Exception as error:
            logger.warning("Payment %s rejected: %s", request["event_id"], error)
            await SendSinglePaymentResponseTask(
                self.context,
                request,
                rejected(
                    f"An unexpected error occurred while processing the payment: {error}.\n"
                    "Please try again or contact support if the issue persists."
                ),
            ).run()

    async def _reject(self, request: dict[str, Any], reason: str) -> None:
        logger.warning("Payment %s rejected: %s", request["event_id"], reason)
        await SendSinglePaymentResponseTask(self.context, request, rejected(reason)).run()

    async def _handle(self, providers: ResolvedProviders, request: dict[str, Any]) -> None:
        content = request["content"]
        subscription_id = content.get("subscription_id")
        amount, currency = normalize_amount(content["amount"], content["currency"])
        conversion = await ConvertRequestAmountTask(self.context, request["event_id"], amount, currency).run()
        converted_amount = conversion["converted_amount"]
        converted_currency = conversion["converted_currency"]

        activity = {
            "type": ActivityType.PAY,
            "service_key": request["service_key"],
            "service_name": request.get("service_name") or "Unknown Service",
            "detail": "Payment",
            "amount": amount,
            "currency": currency,
            "converted_amount": converted_amount,
            "converted_currency": converted_currency,
            "request_id": request["event_id"],
            "subscription_id": subscription_id,
            "status": ActivityStatus.PENDING,
            "invoice": content["invoice"],
        }

        if not subscription_id:
            if converted_amount is not None:
                shown = format_amount(converted_amount, converted_currency)
            else:
                shown = format_amount(amount, currency)
            response = await RequireSinglePaymentUserApprovalTask(
                self.context, request, "Payment Request", f"Payment request of: {shown}"
            ).run()
            if response.get("status") != "approved":
                await SendSinglePaymentResponseTask(self.context, request, response).run()
                return
            await StartPaymentTask(self.context, activity, request, None).run()
            return

        db = providers[ProviderName.DATABASE]
        subscription = await db.get_subscription(subscription_id)
        if subscription is None:
            await self._reject(request, f"Subscription with ID {subscription_id} not found in database")
            return

        if amount != subscription["amount"] or currency != subscription["currency"]:
            await self._reject(
                request,
                "Payment amount does not match subscription amount.\n"
                f"Expected: {subscription['amount']} {subscription['currency']}\n"
                f"Received: {amount} {currency}",
            )
            return

        # Before the first payment, the first due date is the next occurrence.
        next_occurrence = subscription["recurrence_first_payment_due"]
        if subscription["last_payment_date"]:
            calendar = self.context.calendar_parser(subscription["recurrence_calendar"])
            next_occurrence = calendar.next_occurrence(subscription["last_payment_date"])
        if next_occurrence is None or next_occurrence > time.time():
            await self._reject(
                request, "Payment is not due yet. Please wait till the next payment is scheduled."
            )
            return

        activity["service_name"] = subscription["service_name"]
        activity["detail"] = "Recurrent payment"

        await providers[ProviderName.RELAY_STATUSES].wait_for_relays_connected(
            self.context.settings.relay_connect_timeout
        )
        wallet = providers[ProviderName.ACTIVE_WALLET].get_wallet()
        wallet_info = await wallet.get_wallet_info() if wallet is not None else None

        if not wallet_info:
            await self._fail_recurring(request, activity, "wallet not provided", "no wallet provided")
            return

        balance = wallet_info.get("balance_in_sats") or 0
        if balance <= amount:
            await self._fail_recurring(
                request, activity, "insufficient wallet balance", "insufficient wallet balance"
            )
            return

        await StartPaymentTask(self.context, activity, request, subscription_id).run()

    async def _fail_recurring(
        self, request: dict[str, Any], activity: dict[str, Any], detail: str, reason: str
    ) -> None:
        await SaveActivityTask(
            self.context,
            {
                **activity,
                "detail": f"Recurrent payment failed: {detail}.",
                "status": ActivityStatus.NEGATIVE,
            },
        ).run()
        await self._reject(request, f"Recurrent payment failed: {reason}.")


class StartPaymentTask(Task[None]):
    """Record the payment, tell the service, pay, then record the outcome."""

    dependencies = (ProviderName.RELAY_STATUSES,)

    def __init__(self, context, *args) -> None:
        super().__init__(context, *args)
        self.expiry = expires_in(PAYMENT_TTL)

    async def task_logic(
        self,
        providers: ResolvedProviders,
        activity: dict[str, Any],
        request: dict[str, Any],
        subscription_id: str | None,
    ) -> None:
        await providers[ProviderName.RELAY_STATUSES].wait_for_relays_connected(
            self.context.settings.relay_connect_timeout
        )
        invoice = request["content"]["invoice"]

        activity_id = await SaveActivityAndAddPaymentStatusTransactionalTask(
            self.context, activity, invoice, None
        ).run()
        await SendSinglePaymentResponseTask(self.context, request, approved()).run()

        try:
            preimage = await PayInvoiceTask(self.context, invoice, request["content"]["amount"]).run()
        except Exception as error:
            logger.exception("Error paying invoice for request %s", request["event_id"])
            await UpdatePaymentResultTransactionalTask(
                self.context,
                activity_id,
                ActivityStatus.NEGATIVE,
                "Payment approved but failed to process",
                invoice,
                PaymentAction.PAYMENT_FAILED,
                None,
            ).run()
            await SendSinglePaymentResponseTask(
                self.context, request, failed(f"Payment failed: {error}")
            ).run()
            return

        if not preimage:
            await UpdatePaymentResultTransactionalTask(
                self.context,
                activity_id,
                ActivityStatus.NEGATIVE,
                "Payment failed: no wallet is connected.",
                invoice,
                PaymentAction.PAYMENT_FAILED,
                None,
            ).run()
            await SendSinglePaymentResponseTask(
                self.context, request, failed("Payment failed: user has no linked wallet")
            ).run()
            return

        await SendSinglePaymentResponseTask(self.context, request, succeeded(preimage)).run()
        await UpdatePaymentResultTransactionalTask(
            self.context,
            activity_id,
            ActivityStatus.POSITIVE,
            "Payment completed",
            invoice,
            PaymentAction.PAYMENT_COMPLETED,
            subscription_id,
        ).run()


class SaveActivityAndAddPaymentStatusTransactionalTask(TransactionalTask[str]):
    """Write the payment-started entry and the activity row together."""

    async def task_logic(
        self,
        providers: ResolvedProviders,
        activity: dict[str, Any],
        invoice: str,
        refunded_invoice: str | None,
    ) -> str:
        await AddPaymentStatusTask(self.context, invoice, PaymentAction.PAYMENT_STARTED).run()
        if refunded_invoice:
            await AddPaymentStatusTask(self.context, refunded_invoice, PaymentAction.REFUND_STARTED).run()
        return await SaveActivityTask(self.context, activity).run()


class UpdatePaymentResultTransactionalTask(TransactionalTask[None]):
    async def task_logic(
        self,
        providers: ResolvedProviders,
        activity_id: str,
        status: ActivityStatus,
        detail: str,
        invoice: str,
        action: PaymentAction,
        subscription_id: str | None,
    ) -> None:
        await AddPaymentStatusTask(self.context, invoice, action).run()
        await UpdateActivityStatusTask(self.context, activity_id, status, detail).run()
        if subscription_id:
            await UpdateSubscriptionLastPaymentTask(self.context, subscription_id).run()


class AddPaymentStatusTask(Task[None]):
    dependencies = (ProviderName.DATABASE,)

    async def task_logic(self, providers: ResolvedProviders, invoice: str, action: PaymentAction) -> None:
        await providers[ProviderName.DATABASE].add_payment_status_entry(invoice, action)


class PayInvoiceTask(Task[str]):
    """Pay with the active wallet. Returns the preimage, or None without a wallet."""

    dependencies = (ProviderName.ACTIVE_WALLET,)

    async def task_logic(self, providers: ResolvedProviders, invoice: str, amount: int) -> str | None:
        wallet = providers[ProviderName.ACTIVE_WALLET].get_wallet()
        if wallet is None:
            return None
        preimage = await wallet.send_payment(invoice, amount)
        logger.info("Invoice paid")
        return preimage


class UpdateSubscriptionLastPaymentTask(Task[None]):
    dependencies = (ProviderName.DATABASE,)

    async def task_logic(self, providers: ResolvedProviders, subscription_id: str) -> None:
        await providers[ProviderName.DATABASE].update_subscription_last_payment(
            subscription_id, to_unix_seconds(time.time())
        )


class SendSinglePaymentResponseTask(RelayReplyTask[None]):
    async def task_logic(
        self, providers: ResolvedProviders, request: dict[str, Any], response: dict[str, Any]
    ) -> None:
        await self.wait_for_relays(providers)
        logger.info("Sending payment response %s for %s", response.get("status"), request["event_id"])
        await providers[ProviderName.PORTAL_APP].reply_single_payment_request(
            request, {"request_id": request["event_id"], "status": response}
        )


class RequireSinglePaymentUserApprovalTask(Task[dict]):
    """Ask the user to approve a one-off payment. Resolves to a payment status."""

    dependencies = (ProviderName.PROMPT_USER,)

    async def task_logic(
        self, providers: ResolvedProviders, request: dict[str, Any], title: str, body: str
    ) -> dict[str, Any]:
        return await request_user_decision(
            providers[ProviderName.PROMPT_USER],
            request_id=request["event_id"],
            request_type=RequestType.PAYMENT,
            metadata=request,
            notification=Notification(title=title, body=body, data={"type": "payment"}),
        )
