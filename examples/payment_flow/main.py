#!/usr/bin/env python3
"""
Payment Flow Demo

Runs an invoice request and a one-off payment request through a WorkQueue
backed by a SQLite file, using in-process stand-ins for the wallet, the
Nostr layer and the approval UI.

Demonstrates:
- Registering providers and building the task registry at startup
- enqueue_task running a flow right away and returning its result
- A failed payment resolving its activity to a negative status
- resume_tasks picking up records left by an interrupted run

Usage:
    python main.py                  # Fresh database in ./output
    python main.py --keep           # Reuse the database from a previous run
    python main.py --verbose        # Show walletqueue logs
"""

import argparse
import asyncio
import logging
import time
import uuid
from pathlib import Path

from walletqueue import ProviderName, Settings, WorkQueue
from walletqueue.models import approved
from walletqueue.providers import ActiveWalletProvider, PromptUserProvider, RelayInfo, RelayStatusesProvider
from walletqueue.tasks import HandleInvoiceRequestTask, HandleSinglePaymentRequestTask, build_registry
from walletqueue_admin.display import print_drain_report

OUTPUT_DIR = Path("output")


class DemoWallet:
    """Lightning wallet stand-in. The first payment attempt 'crashes'."""

    def __init__(self):
        self.payments = 0

    async def receive_payment(self, amount, description):
        return f"lnbc{amount}demo{uuid.uuid4().hex[:8]}"

    async def send_payment(self, invoice, amount):
        self.payments += 1
        if self.payments == 1:
            raise ConnectionError("wallet node unreachable")
        return uuid.uuid4().hex

    async def get_wallet_info(self):
        return {"balance_in_sats": 100_000}


class DemoPortal:
    """Prints every reply instead of sending it over Nostr."""

    async def fetch_profile(self, key):
        return {"display_name": "Demo Coffee Shop"}

    async def reply_invoice_request(self, request, response):
        print(f"  -> invoice sent: {response['invoice']}")

    async def reply_single_payment_request(self, request, response):
        print(f"  -> payment status: {response['status']['status']}")

    async def reply_auth_challenge(self, event, response):
        print(f"  -> auth response: {response['status']}")

    async def reply_recurring_payment_request(self, request, response):
        print(f"  -> subscription response: {response['status']['status']}")

    async def reply_nostr_connect_request(self, event, response):
        print(f"  -> nostr connect response: {response['status']}")

    async def reply_cashu_request(self, event, status):
        print(f"  -> ticket response: {status['status']}")

    async def parse_cashu_token(self, token):
        raise NotImplementedError


class DemoConverter:
    async def convert_amount(self, amount, from_currency, to_currency):
        return round(amount * 0.0006, 2)


def auto_approve(pending_request):
    print(f"  ?? user approves {pending_request.type.value} {pending_request.id}")
    pending_request.result(approved())


def register_providers(queue: WorkQueue) -> None:
    queue.providers.register(DemoPortal(), ProviderName.PORTAL_APP)
    queue.providers.register(ActiveWalletProvider(DemoWallet()), ProviderName.ACTIVE_WALLET)
    queue.providers.register(
        RelayStatusesProvider.from_settings([RelayInfo("wss://relay.demo", connected=True)], queue.context.settings),
        ProviderName.RELAY_STATUSES,
    )
    queue.providers.register(PromptUserProvider(auto_approve), ProviderName.PROMPT_USER)
    queue.providers.register(DemoConverter(), ProviderName.CURRENCY_CONVERSION)


async def main(keep: bool) -> None:
    OUTPUT_DIR.mkdir(exist_ok=True)
    db_path = OUTPUT_DIR / "payment_flow.db"
    if db_path.exists() and not keep:
        db_path.unlink()

    queue = await WorkQueue.open(str(db_path), registry=build_registry(), settings=Settings(db_path=str(db_path)))
    register_providers(queue)

    @queue.on_failure
    def on_failure(record, error):
        print(f"  !! {record.task_name} failed (attempt {record.attempts}): {error}")

    print("\n1. Leftovers from a previous run")
    print_drain_report(await queue.resume_tasks())

    expires_at = int(time.time()) + 600

    print("\n2. Invoice request")
    activity_id = await queue.enqueue_task(
        HandleInvoiceRequestTask(
            queue.context,
            {
                "request_id": f"inv-{uuid.uuid4().hex[:6]}",
                "service_key": "npub1demo",
                "expires_at": expires_at,
                "amount": 21_000,
                "currency": "MSATS",
                "description": "Espresso",
            },
        )
    )
    print(f"  activity {activity_id} saved")

    print("\n3. Payment request (the wallet fails the first time)")
    request = {
        "event_id": f"pay-{uuid.uuid4().hex[:6]}",
        "service_key": "npub1demo",
        "expires_at": expires_at,
        "content": {"amount": 50_000, "currency": "MSATS", "invoice": "lnbc500demo"},
    }
    await queue.enqueue_task(HandleSinglePaymentRequestTask(queue.context, request))

    activities = await queue.db.list_activities(limit=5)
    print("\n4. Activities")
    for row in activities:
        print(f"  {row['type']:<8} {row['status']:<9} {row['detail']}")

    await queue.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="walletqueue payment flow demo")
    parser.add_argument("--keep", action="store_true", help="Keep the database from the last run")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show walletqueue logs")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    asyncio.run(main(args.keep))
