"""
Runtime collaborators handed to tasks by name.

Tasks never import the wallet SDK, the Nostr library or the database
directly. They declare provider names and receive the registered instances
when they run, which keeps them replayable after a restart and easy to fake
in tests.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Protocol

from walletqueue.config import Settings
from walletqueue.errors import ProviderNotFoundError, RelayConnectionTimeout
from walletqueue.models import Notification, PendingRequest

logger = logging.getLogger(__name__)

_CONFIGURED = object()


class ProviderName(str, Enum):
    """The fixed set of provider names tasks may depend on."""

    DATABASE = "DatabaseService"
    PORTAL_APP = "PortalAppInterface"
    ACTIVE_WALLET = "ActiveWalletProvider"
    RELAY_STATUSES = "RelayStatusesProvider"
    PROMPT_USER = "PromptUserProvider"
    NOSTR_STORE = "NostrStoreService"
    CASHU_WALLETS = "CashuWalletMethodsProvider"
    CURRENCY_CONVERSION = "CurrencyConversionService"


class ProviderRepository:
    """
    Named registry of live collaborator instances.

    Registration is last-write-wins. An app-wide reset simply registers
    fresh instances again (or calls `reset()` first).
    """

    def __init__(self) -> None:
        self._providers: dict[str, Any] = {}

    def register(self, instance: Any, name: str) -> None:
        key = _key(name)
        logger.info("Registering provider %s", key)
        self._providers[key] = instance

    def get(self, name: str) -> Any | None:
        return self._providers.get(_key(name))

    def require(self, name: str) -> Any:
        """Like `get`, but a missing provider is fatal."""
        instance = self.get(name)
        if instance is None:
            raise ProviderNotFoundError(_key(name))
        return instance

    def reset(self) -> None:
        self._providers.clear()

    def names(self) -> list[str]:
        return list(self._providers)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and _key(name) in self._providers


class ResolvedProviders(dict):
    """The providers a task declared, looked up by name or ProviderName."""

    def __getitem__(self, name: str) -> Any:
        return super().__getitem__(_key(name))

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and super().__contains__(_key(name))


def _key(name: str) -> str:
    # Enum members hash by member name, so normalize to the plain value.
    return name.value if isinstance(name, ProviderName) else name


# --- Capability interfaces implemented outside this package ---


class Wallet(Protocol):
    async def send_payment(self, invoice: str, amount: int) -> str | None: ...

    async def receive_payment(self, amount: int, description: str | None) -> str: ...

    async def get_wallet_info(self) -> dict[str, Any] | None: ...


class PortalApp(Protocol):
    async def fetch_profile(self, key: str) -> dict[str, Any] | None: ...

    async def reply_single_payment_request(self, request: dict, response: dict) -> None: ...

    async def reply_auth_challenge(self, event: dict, response: dict) -> None: ...

    async def reply_invoice_request(self, request: dict, response: dict) -> None: ...

    async def reply_recurring_payment_request(self, request: dict, response: dict) -> None: ...

    async def reply_nostr_connect_request(self, event: dict, response: dict) -> None: ...

    async def reply_cashu_request(self, event: dict, status: dict) -> None: ...

    async def parse_cashu_token(self, token: str) -> dict[str, Any]: ...


class CashuWallet(Protocol):
    async def receive_token(self, token: str) -> None: ...

    async def get_balance(self) -> int: ...

    async def get_unit_info(self) -> dict[str, Any] | None: ...

    def unit(self) -> str: ...


class NostrStore(Protocol):
    async def read_mints(self) -> list[str]: ...

    async def store_mints(self, mints: list[str]) -> None: ...


class CurrencyConverter(Protocol):
    async def convert_amount(self, amount: float, from_currency: str, to_currency: str) -> float: ...


# --- Providers owned by the host application ---


@dataclass
class RelayInfo:
    url: str
    connected: bool = False


class RelayStatusesProvider:
    """Relay connectivity as seen by the protocol layer."""

    def __init__(
        self,
        statuses: Callable[[], Iterable[RelayInfo]] | list[RelayInfo],
        *,
        poll_interval: float = 0.5,
        timeout: float | None = 60.0,
    ) -> None:
        self._statuses = statuses
        self.poll_interval = poll_interval
        self.timeout = timeout

    @classmethod
    def from_settings(
        cls, statuses: Callable[[], Iterable[RelayInfo]] | list[RelayInfo], settings: Settings
    ) -> RelayStatusesProvider:
        return cls(
            statuses,
            poll_interval=settings.relay_poll_interval,
            timeout=settings.relay_connect_timeout,
        )

    def relays(self) -> list[RelayInfo]:
        if callable(self._statuses):
            return list(self._statuses())
        return list(self._statuses)

    def are_relays_connected(self) -> bool:
        return any(relay.connected for relay in self.relays())

    async def wait_for_relays_connected(self, timeout: float | None | object = _CONFIGURED) -> None:
        """
        Poll until at least one relay is connected.

        Raises RelayConnectionTimeout after `timeout` seconds (the provider's
        own timeout unless given). A timeout of None waits forever.
        """
        if timeout is _CONFIGURED:
            timeout = self.timeout
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.are_relays_connected():
            if deadline is not None and time.monotonic() >= deadline:
                raise RelayConnectionTimeout(timeout)
            await asyncio.sleep(self.poll_interval)


class ActiveWalletProvider:
    """Gives tasks the wallet the user currently has selected, if any."""

    def __init__(self, wallet: Wallet | None = None) -> None:
        self._wallet = wallet

    def get_wallet(self) -> Wallet | None:
        return self._wallet

    def set_wallet(self, wallet: Wallet | None) -> None:
        self._wallet = wallet


class PromptUserProvider:
    """
    Asks the human for a decision.

    In the foreground the pending request is handed to `present` (the UI
    renders an approval card and later calls `pending_request.result`).
    Otherwise `notify` receives a push notification instead.
    """

    def __init__(
        self,
        present: Callable[[PendingRequest], None],
        notify: Callable[[Notification], None] | None = None,
        is_foreground: Callable[[], bool] = lambda: True,
    ) -> None:
        self._present = present
        self._notify = notify
        self._is_foreground = is_foreground

    def prompt_user(self, pending_request: PendingRequest, notification: Notification | None) -> bool:
        """Return True if the request was presented, False if it was left for later."""
        if self._is_foreground():
            self._present(pending_request)
            return True
        if self._notify is not None and notification is not None:
            self._notify(notification)
        return False


class CashuWalletMethodsProvider:
    """Callbacks into the host's e-cash wallet management."""

    def __init__(
        self,
        add_wallet: Callable[[str, str], Any],
        get_wallet: Callable[[str, str], CashuWallet | None],
        remove_wallet: Callable[[str, str], Any],
    ) -> None:
        self._add_wallet = add_wallet
        self._get_wallet = get_wallet
        self._remove_wallet = remove_wallet

    async def add_wallet(self, mint_url: str, unit: str) -> CashuWallet:
        return await self._add_wallet(mint_url, unit)

    def get_wallet(self, mint_url: str, unit: str) -> CashuWallet | None:
        return self._get_wallet(mint_url, unit)

    async def remove_wallet(self, mint_url: str, unit: str) -> None:
        await self._remove_wallet(mint_url, unit)
