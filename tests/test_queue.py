"""WorkQueue enqueue and resume tests."""

import pytest

from walletqueue import WorkQueue
from walletqueue.codec import serialize_value
from walletqueue.errors import ApprovalDeferred, TaskExpiredError
from walletqueue.models import expires_in, now_millis
from walletqueue.task import Task


class EchoTask(Task[str]):
    dependencies = ("Log",)

    async def task_logic(self, providers, value):
        providers["Log"].append(value)
        return value


class BrokenTask(Task[None]):
    dependencies = ("Log",)

    async def task_logic(self, providers, value):
        providers["Log"].append(value)
        raise RuntimeError(f"broken {value}")


class WaitsForUserTask(Task[None]):
    async def task_logic(self, providers, request_id):
        raise ApprovalDeferred(request_id)


@pytest.fixture
def log(queue):
    entries = []
    queue.providers.register(entries, "Log")
    for task in (EchoTask, BrokenTask, WaitsForUserTask):
        queue.registry.register(task)
    return entries


async def insert(queue, task_name, *args, expires_at=None):
    return await queue.db.add_queued_task(task_name, serialize_value(list(args)), expires_at)


class TestEnqueueTask:
    """enqueue_task persists, runs and cleans up."""

    async def test_success_returns_result_and_deletes_record(self, queue, log):
        result = await queue.enqueue_task(EchoTask(queue.context, "hi"))
        assert result == "hi"
        assert log == ["hi"]
        assert await queue.db.count_queued_tasks() == 0

    async def test_failure_keeps_record(self, queue, log):
        """A failed run leaves the record behind for the next start."""
        with pytest.raises(RuntimeError, match="broken x"):
            await queue.enqueue_task(BrokenTask(queue.context, "x"))
        records = await queue.db.list_queued_tasks()
        assert len(records) == 1
        assert records[0].task_name == "BrokenTask"
        assert records[0].attempts == 1

    async def test_expired_task_is_rejected(self, queue, log):
        task = EchoTask(queue.context, "late")
        task.expiry = expires_in(-1)
        with pytest.raises(TaskExpiredError):
            await queue.enqueue_task(task)
        assert log == []
        assert await queue.db.count_queued_tasks() == 0

    async def test_deferred_approval_keeps_record(self, queue, log):
        """Waiting for the user does not use up an attempt."""
        with pytest.raises(ApprovalDeferred):
            await queue.enqueue_task(WaitsForUserTask(queue.context, "req-1"))
        records = await queue.db.list_queued_tasks()
        assert len(records) == 1
        assert records[0].attempts == 0

    async def test_cached_task_completes_without_running_again(self, queue, log):
        await queue.enqueue_task(EchoTask(queue.context, "once"))
        await queue.enqueue_task(EchoTask(queue.context, "once"))
        assert log == ["once"]


class TestResumeTasks:
    """resume_tasks drains records left by earlier sessions."""

    async def test_resumes_in_insertion_order(self, queue, log):
        """Records inserted directly (as if the process died) drain FIFO."""
        for value in ("a", "b", "c"):
            await insert(queue, "EchoTask", value)

        report = await queue.resume_tasks()

        assert log == ["a", "b", "c"]
        assert len(report.completed) == 3
        assert await queue.db.count_queued_tasks() == 0

    async def test_empty_queue(self, queue, log):
        report = await queue.resume_tasks()
        assert report.processed == 0

    async def test_one_failure_does_not_stop_drain(self, queue, log):
        await insert(queue, "BrokenTask", "x")
        await insert(queue, "EchoTask", "y")

        report = await queue.resume_tasks()

        assert log == ["x", "y"]
        assert len(report.failed) == 1
        assert len(report.completed) == 1
        remaining = await queue.db.list_queued_tasks()
        assert [record.task_name for record in remaining] == ["BrokenTask"]
        assert remaining[0].attempts == 1

    async def test_expired_record_is_discarded(self, queue, log):
        await insert(queue, "EchoTask", "old", expires_at=now_millis() - 1000)
        report = await queue.resume_tasks()
        assert log == []
        assert len(report.discarded) == 1
        assert await queue.db.count_queued_tasks() == 0

    async def test_unregistered_record_is_dropped(self, queue, log):
        await insert(queue, "NoSuchTask", 1)
        await insert(queue, "EchoTask", "after")
        report = await queue.resume_tasks()
        assert len(report.dropped) == 1
        assert log == ["after"]
        assert await queue.db.count_queued_tasks() == 0

    async def test_record_dropped_after_max_attempts(self, queue, log):
        await insert(queue, "BrokenTask", "x")
        max_attempts = queue.context.settings.max_attempts

        reports = []
        for _ in range(max_attempts):
            # Every process start gets a fresh session.
            reports.append(await WorkQueue(queue.context).resume_tasks())

        assert all(len(report.failed) == 1 for report in reports[:-1])
        assert len(reports[-1].dropped) == 1
        assert await queue.db.count_queued_tasks() == 0
        assert log == ["x"] * max_attempts

    async def test_deferred_record_is_kept(self, queue, log):
        await insert(queue, "WaitsForUserTask", "req-2")
        report = await queue.resume_tasks()
        assert len(report.deferred) == 1
        assert await queue.db.count_queued_tasks() == 1

    async def test_session_skips_its_own_records(self, queue, log):
        """A drain never re-runs work this process already ran."""
        with pytest.raises(RuntimeError):
            await queue.enqueue_task(BrokenTask(queue.context, "mine"))

        report = await queue.resume_tasks()
        assert report.processed == 0

        report = await WorkQueue(queue.context).resume_tasks()
        assert len(report.failed) == 1

    async def test_priority_runs_first(self, queue, log):
        await insert(queue, "EchoTask", "normal")
        await queue.db.add_queued_task("EchoTask", serialize_value(["urgent"]), None, priority=5)
        await queue.resume_tasks()
        assert log == ["urgent", "normal"]


class TestCallbacks:
    async def test_on_complete(self, queue, log):
        seen = []

        @queue.on_complete
        def on_complete(record, result):
            seen.append((record.task_name, result))

        await queue.enqueue_task(EchoTask(queue.context, "ok"))
        assert seen == [("EchoTask", "ok")]

    async def test_on_failure(self, queue, log):
        seen = []

        @queue.on_failure
        def on_failure(record, error):
            seen.append((record.task_name, str(error)))

        await insert(queue, "BrokenTask", "z")
        await queue.resume_tasks()
        assert seen == [("BrokenTask", "broken z")]

    async def test_on_discard_reasons(self, queue, log):
        reasons = []

        @queue.on_discard
        def on_discard(record, reason):
            reasons.append(reason)

        await insert(queue, "EchoTask", "old", expires_at=now_millis() - 1000)
        await insert(queue, "Missing")
        await queue.resume_tasks()
        assert reasons == ["expired", "unregistered"]

    async def test_callback_error_does_not_break_queue(self, queue, log):
        @queue.on_complete
        def on_complete(record, result):
            raise ValueError("bad callback")

        assert await queue.enqueue_task(EchoTask(queue.context, "still")) == "still"
        assert await queue.db.count_queued_tasks() == 0
