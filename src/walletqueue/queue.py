"""The durable work queue driver."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from walletqueue.config import Settings
from walletqueue.context import TaskContext
from walletqueue.db import DatabaseService
from walletqueue.errors import ApprovalDeferred, TaskExpiredError, TaskNotRegisteredError
from walletqueue.models import TaskRecord
from walletqueue.providers import ProviderName, ProviderRepository
from walletqueue.task import Task, TaskRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class DrainReport:
    """What `resume_tasks` did with each record it picked up."""

    completed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    discarded: list[int] = field(default_factory=list)
    deferred: list[int] = field(default_factory=list)
    dropped: list[int] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return (
            len(self.completed)
            + len(self.failed)
            + len(self.discarded)
            + len(self.deferred)
            + len(self.dropped)
        )


class WorkQueue:
    """
    Persists top-level tasks so a killed process can finish them later.

    `enqueue_task` records a task and runs it right away; the caller awaits
    the result. The record is deleted only once the task succeeds, so a
    crash (or a failure) leaves it behind for `resume_tasks` on the next
    start. Every record is leased by the session that is running it, which
    keeps a drain from picking up work already in progress in this process.

    Example:
        queue = await WorkQueue.open("wallet.db", registry=build_registry())
        queue.providers.register(portal_app, ProviderName.PORTAL_APP)

        await queue.resume_tasks()   # leftovers from the last run

        @queue.on_failure
        def on_failure(record, error):
            logging.warning(f"{record.task_name} failed: {error}")

        await queue.enqueue_task(HandleInvoiceRequestTask(queue.context, event))
        await queue.close()
    """

    def __init__(self, context: TaskContext) -> None:
        self.context = context
        self.db: DatabaseService = context.providers.require(ProviderName.DATABASE)
        self.session = uuid.uuid4().hex

        self._on_complete_callback: Callable | None = None
        self._on_failure_callback: Callable | None = None
        self._on_discard_callback: Callable | None = None

    @classmethod
    async def open(
        cls,
        db_path: str | None = None,
        *,
        registry: TaskRegistry | None = None,
        settings: Settings | None = None,
        providers: ProviderRepository | None = None,
    ) -> WorkQueue:
        """
        Open the database, register it as a provider and build the queue.

        Args:
            db_path: SQLite file or ":memory:". Defaults to settings.db_path.
            registry: Task types that can be resumed from the queue.
            settings: Engine settings. Defaults to Settings.from_env().
            providers: An existing repository to register the database into.
        """
        settings = settings or Settings.from_env()
        settings.validate()
        db = await DatabaseService.open(db_path or settings.db_path)
        context = TaskContext(
            providers=providers or ProviderRepository(),
            registry=registry or TaskRegistry(),
            settings=settings,
        )
        context.providers.register(db, ProviderName.DATABASE)
        return cls(context)

    async def close(self) -> None:
        await self.db.close()

    @property
    def providers(self) -> ProviderRepository:
        return self.context.providers

    @property
    def registry(self) -> TaskRegistry:
        return self.context.registry

    # --- Event Callbacks ---

    def on_complete(self, func):
        """
        Decorator to register completion callback.

        Called with (record, result) after a queued task succeeds.
        """
        self._on_complete_callback = func
        return func

    def on_failure(self, func):
        """
        Decorator to register failure callback.

        Called with (record, error) after a queued task raises.
        """
        self._on_failure_callback = func
        return func

    def on_discard(self, func):
        """
        Decorator to register discard callback.

        Called with (record, reason) when a record is removed without
        running: its deadline passed, its task type is unknown, or it ran
        out of attempts.
        """
        self._on_discard_callback = func
        return func

    def _emit(self, callback: Callable | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Queue callback %r raised", callback)

    # --- Work Operations ---

    async def enqueue_task(self, task: Task[T]) -> T:
        """
        Persist `task`, run it now and return its result.

        Raises:
            TaskExpiredError: the task's deadline already passed; nothing ran.
            Whatever the task raised; the record stays queued for the next start.
        """
        record = task.serialize()
        if record.is_expired():
            logger.info("Not enqueuing expired task %s", record.task_name)
            self._emit(self._on_discard_callback, record, "expired")
            raise TaskExpiredError(record.task_name, record.expires_at)

        record.id = await self.db.add_queued_task(
            record.task_name,
            record.arguments,
            record.expires_at,
            record.priority,
            leased_by=self.session,
        )
        logger.info("Added task %s to queue with id %s", record.task_name, record.id)
        return await self._run_record(task, record)

    async def _run_record(self, task: Task[T], record: TaskRecord) -> T:
        try:
            result = await task.run()
        except ApprovalDeferred:
            logger.info("Task %s (%s) waits for the user", record.task_name, record.id)
            raise
        except Exception as error:
            record.attempts = await self.db.record_failed_attempt(record.id)
            logger.warning(
                "Task %s (%s) failed on attempt %s: %s",
                record.task_name,
                record.id,
                record.attempts,
                error,
            )
            self._emit(self._on_failure_callback, record, error)
            raise
        await self.db.delete_queued_task(record.id)
        logger.info("Task %s (%s) completed", record.task_name, record.id)
        self._emit(self._on_complete_callback, record, result)
        return result

    async def resume_tasks(self) -> DrainReport:
        """
        Run every record left over from earlier sessions, oldest first.

        One record's failure never stops the drain. Expired and undecodable
        records are deleted without running. A record that keeps failing is
        dropped once it reaches `settings.max_attempts`.
        """
        report = DrainReport()
        while True:
            record = await self.db.extract_next_queued_task(self.session)
            if record is None:
                break
            logger.debug("Extracted task %s (%s) from queue", record.task_name, record.id)
            await self._resume_record(record, report)

        if report.processed:
            logger.info(
                "Resumed %s queued tasks: %s completed, %s failed, %s discarded, %s deferred, %s dropped",
                report.processed,
                len(report.completed),
                len(report.failed),
                len(report.discarded),
                len(report.deferred),
                len(report.dropped),
            )
        return report

    async def _resume_record(self, record: TaskRecord, report: DrainReport) -> None:
        if record.is_expired():
            await self._discard(record, "expired")
            report.discarded.append(record.id)
            return

        try:
            task = Task.deserialize(self.context, record)
        except TaskNotRegisteredError:
            logger.exception("Queue record %s cannot be decoded", record.id)
            await self._discard(record, "unregistered")
            report.dropped.append(record.id)
            return

        try:
            await self._run_record(task, record)
        except ApprovalDeferred:
            report.deferred.append(record.id)
        except Exception:
            logger.exception("Error running queued task %s (%s)", record.task_name, record.id)
            if record.attempts >= self.context.settings.max_attempts:
                await self._discard(record, "max_attempts")
                report.dropped.append(record.id)
            else:
                report.failed.append(record.id)
        else:
            report.completed.append(record.id)

    async def _discard(self, record: TaskRecord, reason: str) -> None:
        await self.db.delete_queued_task(record.id)
        logger.info("Discarded task %s (%s): %s", record.task_name, record.id, reason)
        self._emit(self._on_discard_callback, record, reason)
