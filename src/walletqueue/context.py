"""The dependency container every task is constructed with."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from walletqueue.codec import CalendarParser
from walletqueue.config import Settings
from walletqueue.providers import ProviderRepository
from walletqueue.recurrence import parse_calendar
from walletqueue.task import TaskRegistry


@dataclass
class TaskContext:
    """
    Everything a task needs from its surroundings.

    One context per process (or per test). Nothing here is global, so two
    contexts never share cached providers, registrations or in-flight work.
    """

    providers: ProviderRepository = field(default_factory=ProviderRepository)
    registry: TaskRegistry = field(default_factory=TaskRegistry)
    settings: Settings = field(default_factory=Settings)
    calendar_parser: CalendarParser = parse_calendar

    # cache key -> running execution, for coalescing concurrent duplicates
    inflight: dict[str, asyncio.Future[Any]] = field(default_factory=dict)
    # held by the outermost transactional task while its savepoint is open
    transaction_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
