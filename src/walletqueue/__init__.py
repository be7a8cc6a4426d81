"""walletqueue - Durable, memoized task execution for a Nostr/Lightning wallet."""

from walletqueue.arguments import Arguments, JsonArguments
from walletqueue.codec import deserialize_value, serialize_value
from walletqueue.config import Settings
from walletqueue.context import TaskContext
from walletqueue.providers import ProviderName, ProviderRepository
from walletqueue.queue import DrainReport, WorkQueue
from walletqueue.task import Task, TaskRegistry, TransactionalTask

__version__ = "0.1.0"
__all__ = [
    "Arguments",
    "JsonArguments",
    "serialize_value",
    "deserialize_value",
    "Settings",
    "TaskContext",
    "ProviderName",
    "ProviderRepository",
    "WorkQueue",
    "DrainReport",
    "Task",
    "TransactionalTask",
    "TaskRegistry",
]
