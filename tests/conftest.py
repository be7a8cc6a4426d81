"""Shared fixtures and fake collaborators."""

import pytest

from walletqueue import ProviderName, Settings, WorkQueue
from walletqueue.models import approved
from walletqueue.providers import (
    ActiveWalletProvider,
    CashuWalletMethodsProvider,
    PromptUserProvider,
    RelayInfo,
    RelayStatusesProvider,
)
from walletqueue.tasks import build_registry


def fast_settings(**overrides) -> Settings:
    values = {
        "db_path": ":memory:",
        "relay_poll_interval": 0.01,
        "relay_connect_timeout": 0.2,
        "max_attempts": 3,
        "preferred_currency": "SATS",
    }
    values.update(overrides)
    return Settings(**values)


class FakePortal:
    """Records every reply instead of sending it over Nostr."""

    def __init__(self):
        self.payment_replies = []
        self.auth_replies = []
        self.invoice_replies = []
        self.nostr_connect_replies = []
        self.recurring_replies = []
        self.cashu_replies = []
        self.profile_fetches = 0
        self.profiles = {}
        self.tokens = {}

    async def fetch_profile(self, key):
        self.profile_fetches += 1
        return self.profiles.get(key)

    async def reply_single_payment_request(self, request, response):
        self.payment_replies.append((request["event_id"], response))

    async def reply_auth_challenge(self, event, response):
        self.auth_replies.append((event["event_id"], response))

    async def reply_invoice_request(self, request, response):
        self.invoice_replies.append((request["request_id"], response))

    async def reply_recurring_payment_request(self, request, response):
        self.recurring_replies.append((request["event_id"], response))

    async def reply_nostr_connect_request(self, event, response):
        self.nostr_connect_replies.append((event["message"]["id"], response))

    async def reply_cashu_request(self, event, status):
        self.cashu_replies.append((event["request_id"], status))

    async def parse_cashu_token(self, token):
        return self.tokens[token]


class FakeWallet:
    def __init__(self, balance=100_000, preimage="preimage-1", error=None):
        self.balance = balance
        self.preimage = preimage
        self.error = error
        self.sent = []
        self.invoices = []

    async def send_payment(self, invoice, amount):
        self.sent.append((invoice, amount))
        if self.error is not None:
            raise self.error
        return self.preimage

    async def receive_payment(self, amount, description):
        invoice = f"lnbc{amount}n{len(self.invoices)}"
        self.invoices.append((amount, description))
        return invoice

    async def get_wallet_info(self):
        return {"balance_in_sats": self.balance}


class FakeConverter:
    def __init__(self, rate=0.5, error=None):
        self.rate = rate
        self.error = error
        self.calls = 0

    async def convert_amount(self, amount, from_currency, to_currency):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return amount * self.rate


class FakeCashuWallet:
    def __init__(self, unit="ticket", title="Concert Ticket", balance=5):
        self._unit = unit
        self.balance = balance
        self.title = title
        self.received = []

    async def receive_token(self, token):
        self.received.append(token)

    async def get_balance(self):
        return self.balance

    async def get_unit_info(self):
        return {"title": self.title}

    def unit(self):
        return self._unit


class FakeNostrStore:
    def __init__(self, mints=None):
        self.mints = list(mints or [])

    async def read_mints(self):
        return list(self.mints)

    async def store_mints(self, mints):
        self.mints = list(mints)


class FakePrompt:
    """Answers every pending request with `decision`, or sends a notification."""

    def __init__(self, decision=None, foreground=True):
        self.decision = approved() if decision is None else decision
        self.foreground = foreground
        self.presented = []
        self.notifications = []
        self.provider = PromptUserProvider(
            self._present,
            self.notifications.append,
            lambda: self.foreground,
        )

    def _present(self, pending_request):
        self.presented.append(pending_request)
        pending_request.result(self.decision)


@pytest.fixture
async def queue():
    """A WorkQueue on an in-memory database with every built-in task."""
    q = await WorkQueue.open(":memory:", registry=build_registry(), settings=fast_settings())
    yield q
    await q.close()


@pytest.fixture
def portal():
    return FakePortal()


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def prompt():
    return FakePrompt()


@pytest.fixture
def relays():
    return [RelayInfo("wss://relay.test", connected=True)]


@pytest.fixture
def cashu_wallet():
    return FakeCashuWallet()


@pytest.fixture
def nostr_store():
    return FakeNostrStore(["https://mint.old"])


@pytest.fixture
def wired_queue(queue, portal, wallet, prompt, relays, cashu_wallet, nostr_store):
    """The queue with fake versions of every provider registered."""
    settings = queue.context.settings
    queue.providers.register(portal, ProviderName.PORTAL_APP)
    queue.providers.register(ActiveWalletProvider(wallet), ProviderName.ACTIVE_WALLET)
    queue.providers.register(RelayStatusesProvider.from_settings(relays, settings), ProviderName.RELAY_STATUSES)
    queue.providers.register(prompt.provider, ProviderName.PROMPT_USER)
    queue.providers.register(FakeConverter(), ProviderName.CURRENCY_CONVERSION)
    queue.providers.register(nostr_store, ProviderName.NOSTR_STORE)

    async def add_wallet(mint_url, unit):
        return cashu_wallet

    async def remove_wallet(mint_url, unit):
        return None

    queue.providers.register(
        CashuWalletMethodsProvider(add_wallet, lambda mint_url, unit: cashu_wallet, remove_wallet),
        ProviderName.CASHU_WALLETS,
    )
    return queue
