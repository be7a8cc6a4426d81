"""
Concrete wallet tasks.

Protocol events are plain dicts so they can be persisted with the codec:

    payment request   {"event_id", "service_key", "expires_at",
                       "content": {"amount", "currency", "invoice", "subscription_id"}}
    auth challenge    {"event_id", "service_key", "expires_at"}
    invoice request   {"request_id", "service_key", "expires_at", "amount",
                       "currency", "description", "refund_invoice"}
    cashu content     {"token"}
    cashu burn        {"request_id", "service_key", "expires_at", "mint_url",
                       "unit", "amount"}
    subscription      {"event_id", "service_key", "service_name", "expires_at",
                       "content": {"amount", "currency",
                                   "recurrence": {"calendar", "first_payment_due"}}}
    cancel response   {"subscription_id"}
    nostr connect     {"client_pubkey", "message": {"id", "method", "params"}}

Amounts arrive in protocol units: millisats for "MSATS", minor units
(cents) for fiat currencies.
"""

from walletqueue.task import TaskRegistry
from walletqueue.tasks.activity import (
    GetActivityFromInvoiceTask,
    GetRelaysTask,
    SaveActivityTask,
    UpdateActivityStatusTask,
)
from walletqueue.tasks.auth import (
    FetchServiceProfileTask,
    ProcessAuthRequestTask,
    RequireAuthUserApprovalTask,
    SendAuthChallengeResponseTask,
)
from walletqueue.tasks.cashu import (
    HandleCashuBurnRequestTask,
    HandleCashuDirectContentTask,
    MarkCashuTokenAsProcessedTask,
    ParseCashuTokenTask,
    RequireTicketBurnUserApprovalTask,
    SendCashuResponseStatusTask,
)
from walletqueue.tasks.invoice import CreateInvoiceTask, HandleInvoiceRequestTask, SendInvoiceResponseTask
from walletqueue.tasks.nostr_connect import (
    GetBunkerClientTask,
    HandleNostrConnectRequestTask,
    RequireNostrConnectUserApprovalTask,
    SaveActivityAndUpdateClientLastSeenTransactionalTask,
    SendNostrConnectResponseTask,
    UseBunkerSecretTransactionalTask,
)
from walletqueue.tasks.payments import (
    AddPaymentStatusTask,
    ConvertCurrencyTask,
    ConvertRequestAmountTask,
    HandleSinglePaymentRequestTask,
    PayInvoiceTask,
    RequireSinglePaymentUserApprovalTask,
    SaveActivityAndAddPaymentStatusTransactionalTask,
    SendSinglePaymentResponseTask,
    StartPaymentTask,
    UpdatePaymentResultTransactionalTask,
    UpdateSubscriptionLastPaymentTask,
)
from walletqueue.tasks.subscriptions import (
    HandleCancelSubscriptionResponseTask,
    HandleRecurringPaymentRequestTask,
    RequireRecurringPaymentUserApprovalTask,
    SaveSubscriptionTask,
    SendRecurringPaymentResponseTask,
)

# Every task kind a queue record may name.
ALL_TASKS = (
    SaveActivityTask,
    UpdateActivityStatusTask,
    GetActivityFromInvoiceTask,
    GetRelaysTask,
    HandleSinglePaymentRequestTask,
    StartPaymentTask,
    SaveActivityAndAddPaymentStatusTransactionalTask,
    UpdatePaymentResultTransactionalTask,
    AddPaymentStatusTask,
    PayInvoiceTask,
    UpdateSubscriptionLastPaymentTask,
    SendSinglePaymentResponseTask,
    RequireSinglePaymentUserApprovalTask,
    ConvertCurrencyTask,
    ConvertRequestAmountTask,
    HandleInvoiceRequestTask,
    CreateInvoiceTask,
    SendInvoiceResponseTask,
    ProcessAuthRequestTask,
    FetchServiceProfileTask,
    RequireAuthUserApprovalTask,
    SendAuthChallengeResponseTask,
    HandleCashuDirectContentTask,
    MarkCashuTokenAsProcessedTask,
    ParseCashuTokenTask,
    HandleCashuBurnRequestTask,
    RequireTicketBurnUserApprovalTask,
    SendCashuResponseStatusTask,
    HandleRecurringPaymentRequestTask,
    SaveSubscriptionTask,
    RequireRecurringPaymentUserApprovalTask,
    SendRecurringPaymentResponseTask,
    HandleCancelSubscriptionResponseTask,
    HandleNostrConnectRequestTask,
    UseBunkerSecretTransactionalTask,
    GetBunkerClientTask,
    RequireNostrConnectUserApprovalTask,
    SendNostrConnectResponseTask,
    SaveActivityAndUpdateClientLastSeenTransactionalTask,
)


def build_registry() -> TaskRegistry:
    """A registry of every built-in task, for WorkQueue.open()."""
    return TaskRegistry(ALL_TASKS)


__all__ = [task.__name__ for task in ALL_TASKS] + ["ALL_TASKS", "build_registry"]
