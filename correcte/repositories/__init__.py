"""数据仓储包"""

from .submission import (
    InMemorySubmissionStore,
    PostgresSubmissionStore,
    SubmissionStore,
    UpdateResult,
)

__all__ = [
    "InMemorySubmissionStore",
    "PostgresSubmissionStore",
    "SubmissionStore",
    "UpdateResult",
]
