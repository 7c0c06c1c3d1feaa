"""
TaskStore contract tests: run against SQLite with :memory:.
"""

from taskflow.adapters.sqlite_task_store import SqliteTaskStore
from tests.contracts.task_store_contract import TaskStoreContract


class TestSqliteTaskStore(TaskStoreContract):

    def create_store(self):
        return SqliteTaskStore(":memory:")
