"""
Durable units of work.

A Task is constructed from a TaskContext plus its arguments, and `run()` is
its only entry point:

    1. resolve the declared providers (missing ones are fatal)
    2. build the cache key: class name + argument fingerprint
    3. return the cached result if a live one exists
    4. otherwise join an identical in-flight execution, or start one
    5. cache the result on success; failures are never cached

Because every step of a composite task is itself a cached Task, replaying a
half-finished flow after a crash skips the steps that already completed.
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, ClassVar, Generic, Iterable, TypeVar

from walletqueue.arguments import Arguments, JsonArguments
from walletqueue.codec import deserialize_value, serialize_value
from walletqueue.errors import TaskNotRegisteredError
from walletqueue.models import FOREVER, Expiry, TaskRecord, to_unix_millis, to_unix_seconds
from walletqueue.providers import ProviderName, ResolvedProviders

if TYPE_CHECKING:
    from walletqueue.context import TaskContext
    from walletqueue.db import DatabaseService

logger = logging.getLogger(__name__)

T = TypeVar("T")
TaskT = TypeVar("TaskT", bound="type[Task[Any]]")

# Savepoint nesting depth of the current execution chain.
_transaction_depth: contextvars.ContextVar[int] = contextvars.ContextVar(
    "walletqueue_transaction_depth", default=0
)


class Task(ABC, Generic[T]):
    """
    Base class for durable, memoized work.

    Subclasses declare the providers they need and implement `task_logic`:

        class FetchProfileTask(Task[dict]):
            dependencies = (ProviderName.PORTAL_APP,)

            async def task_logic(self, providers, key):
                return await providers[ProviderName.PORTAL_APP].fetch_profile(key)

        profile = await FetchProfileTask(context, "npub...").run()

    Arguments must be codec-representable (JSON values, big ints,
    calendars, datetimes) because they are persisted for crash recovery.
    """

    dependencies: ClassVar[tuple[str, ...]] = ()

    def __init__(self, context: TaskContext, *args: Any) -> None:
        self.context = context
        self.args: Arguments = JsonArguments(args)
        # TTL of the cached result, and the deadline of a queued record.
        self.expiry: Expiry = FOREVER
        self._db: DatabaseService = context.providers.require(ProviderName.DATABASE)

    @abstractmethod
    async def task_logic(self, providers: ResolvedProviders, *args: Any) -> T:
        """The work itself. Called at most once per live cache entry."""

    @classmethod
    def task_name(cls) -> str:
        return cls.__name__

    def cache_key(self) -> str:
        return f"{self.task_name()}{self.args.hash()}"

    def resolve_providers(self) -> ResolvedProviders:
        providers = ResolvedProviders()
        for name in self.dependencies:
            instance = self.context.providers.require(name)
            providers[name.value if isinstance(name, ProviderName) else name] = instance
        return providers

    async def run(self) -> T:
        """Return the cached result, join an identical execution, or execute."""
        providers = self.resolve_providers()
        key = self.cache_key()

        cached = await self._db.get_cache(key)
        if cached is not None:
            logger.debug("Cache hit for %s", key)
            return deserialize_value(cached, calendar_parser=self.context.calendar_parser)

        # No await between this lookup and the insert below.
        inflight = self.context.inflight.get(key)
        if inflight is not None:
            logger.debug("Joining in-flight execution of %s", key)
            return await asyncio.shield(inflight)

        execution = asyncio.ensure_future(self._execute(providers, key))
        self.context.inflight[key] = execution
        try:
            return await execution
        finally:
            if self.context.inflight.get(key) is execution:
                del self.context.inflight[key]

    async def _execute(self, providers: ResolvedProviders, key: str) -> T:
        logger.debug("Executing %s", key)
        data = await self.task_logic(providers, *self.args.values())
        await self._db.set_cache(key, serialize_value(data), self.expiry)
        return data

    def serialize(self) -> TaskRecord:
        """Snapshot for the persistent queue. The id is assigned on insert."""
        return TaskRecord(
            id=0,
            task_name=self.task_name(),
            arguments=serialize_value(list(self.args.values())),
            added_at=to_unix_seconds(time.time()),
            expires_at=None if self.expiry == FOREVER else to_unix_millis(self.expiry),
            priority=0,
        )

    @staticmethod
    def deserialize(context: TaskContext, record: TaskRecord) -> Task[Any]:
        """Rebuild a task from a queue record using the context's registry."""
        constructor = context.registry.get(record.task_name)
        if constructor is None:
            raise TaskNotRegisteredError(record.task_name)
        args = deserialize_value(record.arguments, calendar_parser=context.calendar_parser)
        return constructor(context, *args)

    def __repr__(self) -> str:
        return f"<{self.task_name()} {list(self.args.values())!r}>"


class TransactionalTask(Task[T]):
    """
    A Task whose execution runs inside a database savepoint.

    Everything done through the shared connection while it runs, including
    the cache writes of child tasks, commits or rolls back as one unit.
    Nested transactional tasks open nested savepoints. The outermost one
    holds the context's transaction lock, so two unrelated transactions
    never interleave on the connection. Keep these short.

    Plain tasks do not take the lock. A write a concurrent non-transactional
    task makes on the shared connection while a savepoint is open belongs to
    that savepoint, and is rolled back with it.
    """

    async def _execute(self, providers: ResolvedProviders, key: str) -> T:
        if _transaction_depth.get():
            return await self._execute_in_savepoint(providers, key)
        async with self.context.transaction_lock:
            return await self._execute_in_savepoint(providers, key)

    async def _execute_in_savepoint(self, providers: ResolvedProviders, key: str) -> T:
        savepoint = await self._db.start_savepoint(key)
        token = _transaction_depth.set(_transaction_depth.get() + 1)
        try:
            data = await super()._execute(providers, key)
        except BaseException:
            await self._db.rollback_savepoint(savepoint)
            raise
        finally:
            _transaction_depth.reset(token)
        await self._db.release_savepoint(savepoint)
        return data


class TaskRegistry:
    """
    Maps task names to classes so queue records can be rebuilt.

    Build one explicitly at startup; `register` also works as a decorator.
    """

    def __init__(self, tasks: Iterable[type[Task[Any]]] = ()) -> None:
        self._tasks: dict[str, type[Task[Any]]] = {}
        for task in tasks:
            self.register(task)

    def register(self, task: TaskT) -> TaskT:
        name = task.task_name()
        existing = self._tasks.get(name)
        if existing is not None and existing is not task:
            raise ValueError(f"Task name {name} already registered by {existing!r}")
        self._tasks[name] = task
        return task

    def get(self, name: str) -> type[Task[Any]] | None:
        return self._tasks.get(name)

    def names(self) -> list[str]:
        return sorted(self._tasks)

    def __contains__(self, name: object) -> bool:
        return name in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)
