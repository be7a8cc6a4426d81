"""Task execution, caching, deduplication and transaction tests."""

import asyncio

import pytest

from walletqueue import ProviderName, TaskContext, TaskRegistry
from walletqueue.errors import ProviderNotFoundError, TaskNotRegisteredError
from walletqueue.models import FOREVER, now_utc
from walletqueue.recurrence import Calendar
from walletqueue.task import Task, TransactionalTask


class Counter:
    def __init__(self):
        self.calls = 0
        self.fail_next = 0


class CountingTask(Task[dict]):
    dependencies = ("Counter",)

    async def task_logic(self, providers, value, delay=0):
        counter = providers["Counter"]
        counter.calls += 1
        if delay:
            await asyncio.sleep(delay)
        if counter.fail_next:
            counter.fail_next -= 1
            raise RuntimeError("transient failure")
        return {"value": value, "call": counter.calls}


class UncachedTask(CountingTask):
    def __init__(self, context, *args):
        super().__init__(context, *args)
        self.expiry = now_utc()


class NeedsPortalTask(Task[None]):
    dependencies = (ProviderName.PORTAL_APP, "Counter")

    async def task_logic(self, providers):
        providers["Counter"].calls += 1


class AddRelayTask(TransactionalTask[str]):
    dependencies = (ProviderName.DATABASE,)

    async def task_logic(self, providers, url, fail=False):
        await providers[ProviderName.DATABASE].add_relay(url)
        if fail:
            raise RuntimeError("boom")
        return url


class OuterTransactionTask(TransactionalTask[str]):
    """Writes a relay, then runs a failing nested transaction and swallows it."""

    dependencies = (ProviderName.DATABASE,)

    async def task_logic(self, providers, url):
        await providers[ProviderName.DATABASE].add_relay(url)
        try:
            await AddRelayTask(self.context, url + "/inner", True).run()
        except RuntimeError:
            pass
        await AddRelayTask(self.context, url + "/kept").run()
        return url


class FailingOuterTask(TransactionalTask[None]):
    dependencies = (ProviderName.DATABASE,)

    async def task_logic(self, providers, url):
        await AddRelayTask(self.context, url).run()
        raise RuntimeError("outer failed")


class PausedTransactionTask(TransactionalTask[None]):
    """Holds its savepoint open until released, then fails."""

    dependencies = ("Gate",)

    async def task_logic(self, providers):
        gate = providers["Gate"]
        gate["opened"].set()
        await gate["release"].wait()
        raise RuntimeError("rolled back")


@pytest.fixture
def counter(queue):
    c = Counter()
    queue.providers.register(c, "Counter")
    return c


@pytest.fixture
def context(queue):
    return queue.context


class TestCaching:
    """Results are memoized by class name and argument fingerprint."""

    async def test_cache_short_circuit(self, context, counter):
        first = await CountingTask(context, "a").run()
        second = await CountingTask(context, "a").run()
        assert counter.calls == 1
        assert first == second == {"value": "a", "call": 1}

    async def test_different_arguments_execute_separately(self, context, counter):
        await CountingTask(context, "a").run()
        await CountingTask(context, "b").run()
        assert counter.calls == 2

    async def test_different_task_classes_do_not_share_cache(self, context, counter):
        assert CountingTask(context, "a").cache_key() != UncachedTask(context, "a").cache_key()

    async def test_expired_result_is_not_reused(self, context, counter):
        await UncachedTask(context, "a").run()
        await UncachedTask(context, "a").run()
        assert counter.calls == 2

    async def test_cached_result_survives_codec(self, context, counter):
        class CalendarTask(Task[dict]):
            dependencies = ("Counter",)

            async def task_logic(self, providers):
                providers["Counter"].calls += 1
                return {"schedule": Calendar("month"), "big": 2**64}

        first = await CalendarTask(context).run()
        second = await CalendarTask(context).run()
        assert second == first == {"schedule": Calendar("month"), "big": 2**64}
        assert counter.calls == 1


class TestConcurrentDedup:
    async def test_concurrent_calls_execute_once(self, context, counter):
        results = await asyncio.gather(
            CountingTask(context, "slow", 0.05).run(),
            CountingTask(context, "slow", 0.05).run(),
        )
        assert counter.calls == 1
        assert results[0] == results[1]

    async def test_inflight_entry_removed_when_settled(self, context, counter):
        await CountingTask(context, "x").run()
        assert context.inflight == {}

    async def test_concurrent_failure_reaches_every_caller(self, context, counter):
        counter.fail_next = 1
        results = await asyncio.gather(
            CountingTask(context, "f", 0.05).run(),
            CountingTask(context, "f", 0.05).run(),
            return_exceptions=True,
        )
        assert counter.calls == 1
        assert all(isinstance(result, RuntimeError) for result in results)


class TestFailures:
    async def test_failure_is_not_cached(self, context, counter, queue):
        counter.fail_next = 1
        with pytest.raises(RuntimeError):
            await CountingTask(context, "a").run()
        assert await queue.db.get_cache(CountingTask(context, "a").cache_key()) is None

        result = await CountingTask(context, "a").run()
        assert counter.calls == 2
        assert result == {"value": "a", "call": 2}

    async def test_missing_provider_is_fatal_before_side_effects(self, context, counter):
        """Dependencies are resolved before task_logic runs."""
        with pytest.raises(ProviderNotFoundError):
            await NeedsPortalTask(context).run()
        assert counter.calls == 0

    def test_missing_database_fails_at_construction(self):
        with pytest.raises(ProviderNotFoundError):
            CountingTask(TaskContext(), "a")


class TestTransactionalTask:
    """Writes made inside a transactional task commit or roll back together."""

    async def test_rollback_on_failure(self, context, queue):
        before = await queue.db.get_relays()
        with pytest.raises(RuntimeError):
            await AddRelayTask(context, "wss://a", True).run()
        assert await queue.db.get_relays() == before
        assert not queue.db.in_savepoint

    async def test_commit_on_success(self, context, queue):
        assert await AddRelayTask(context, "wss://a").run() == "wss://a"
        assert await queue.db.get_relays() == ["wss://a"]
        assert not queue.db.in_savepoint

    async def test_nested_failure_rolls_back_only_inner(self, context, queue):
        await OuterTransactionTask(context, "wss://outer").run()
        assert sorted(await queue.db.get_relays()) == ["wss://outer", "wss://outer/kept"]

    async def test_outer_failure_rolls_back_nested_work(self, context, queue):
        with pytest.raises(RuntimeError):
            await FailingOuterTask(context, "wss://nested").run()
        assert await queue.db.get_relays() == []
        # The nested task's cache entry was rolled back too.
        assert await queue.db.get_cache(AddRelayTask(context, "wss://nested").cache_key()) is None

    async def test_concurrent_transactions_are_serialized(self, context, queue):
        await asyncio.gather(
            AddRelayTask(context, "wss://1").run(),
            AddRelayTask(context, "wss://2", True).run(),
            AddRelayTask(context, "wss://3").run(),
            return_exceptions=True,
        )
        assert sorted(await queue.db.get_relays()) == ["wss://1", "wss://3"]

    async def test_plain_write_during_savepoint_is_rolled_back_with_it(self, context, queue):
        """Plain writes share the connection, so they join an open savepoint."""
        gate = {"opened": asyncio.Event(), "release": asyncio.Event()}
        queue.providers.register(gate, "Gate")
        running = asyncio.ensure_future(PausedTransactionTask(context).run())
        await gate["opened"].wait()

        await queue.db.add_relay("wss://plain")
        gate["release"].set()

        with pytest.raises(RuntimeError):
            await running
        assert await queue.db.get_relays() == []


class TestSerialization:
    def test_serialize_record(self, context, counter):
        record = CountingTask(context, "a", 0).serialize()
        assert record.id == 0
        assert record.task_name == "CountingTask"
        assert record.arguments == '["a",0]'
        assert record.expires_at is None

    def test_serialize_expiry_in_millis(self, context, counter):
        task = CountingTask(context, "a")
        task.expiry = now_utc()
        assert task.serialize().expires_at is not None
        task.expiry = FOREVER
        assert task.serialize().expires_at is None

    def test_deserialize_uses_registry(self, queue, counter):
        context = TaskContext(providers=queue.providers, registry=TaskRegistry([CountingTask]))
        record = CountingTask(context, {"k": [1, 2]}).serialize()
        task = Task.deserialize(context, record)
        assert isinstance(task, CountingTask)
        assert task.args == CountingTask(context, {"k": [1, 2]}).args

    def test_deserialize_unknown_task(self, queue):
        context = TaskContext(providers=queue.providers)
        record = CountingTask(context, "a").serialize()
        with pytest.raises(TaskNotRegisteredError, match="CountingTask"):
            Task.deserialize(context, record)


class TestTaskRegistry:
    def test_register_as_decorator(self):
        registry = TaskRegistry()

        @registry.register
        class LocalTask(CountingTask):
            pass

        assert registry.get("LocalTask") is LocalTask
        assert "LocalTask" in registry

    def test_register_twice_is_idempotent(self):
        registry = TaskRegistry([CountingTask, CountingTask])
        assert len(registry) == 1

    def test_name_conflict(self):
        registry = TaskRegistry([CountingTask])

        class CountingTask2(CountingTask):
            pass

        CountingTask2.__name__ = "CountingTask"
        with pytest.raises(ValueError):
            registry.register(CountingTask2)

    def test_builtin_registry_is_complete(self):
        from walletqueue.tasks import ALL_TASKS, build_registry

        registry = build_registry()
        assert len(registry) == len(ALL_TASKS)
        assert "HandleInvoiceRequestTask" in registry
