"""提交记录仓储

所有状态变更都通过条件更新完成：只有当前状态与调用方预期一致时才写入，
否则返回冲突。冲突说明其他 worker 已推进了该提交。
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, Union

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from correcte.models.enums import SubmissionStatus
from correcte.models.rubric import Rubric
from correcte.models.submission import (
    InvalidTransitionError,
    PatchRejected,
    Submission,
    SubmissionPatch,
    apply_patch,
)
from correcte.services.submission_state import can_transition

logger = logging.getLogger(__name__)

ExpectedState = Union[SubmissionStatus, Iterable[SubmissionStatus]]


@dataclass
class UpdateResult:
    """条件更新结果"""
    ok: bool
    submission: Optional[Submission] = None
    reason: str = ""

    @property
    def conflict(self) -> bool:
        return not self.ok


def _expected_set(expected_state: ExpectedState) -> frozenset:
    if isinstance(expected_state, SubmissionStatus):
        return frozenset({expected_state})
    return frozenset(expected_state)


def apply_checked_patch(current: Submission, patch: SubmissionPatch) -> Submission:
    """
    校验状态转移后应用补丁

    Raises:
        PatchRejected: 状态转移不允许，或试图覆盖已锁定的文本
    """
    if patch.status is not None and not can_transition(current.status, patch.status):
        raise InvalidTransitionError(
            f"invalid_transition: {current.status.value} -> {patch.status.value}"
        )
    return apply_patch(current, patch)


class SubmissionStore(Protocol):
    """文档存储接口"""

    async def get_submission(self, submission_id: str) -> Optional[Submission]:
        ...

    async def update_submission(
        self,
        submission_id: str,
        expected_state: ExpectedState,
        patch: SubmissionPatch,
    ) -> UpdateResult:
        ...

    async def get_assignment_rubric(self, assignment_id: str) -> Optional[Rubric]:
        ...

    async def list_submissions(self, statuses: Iterable[SubmissionStatus]) -> List[Submission]:
        ...


class InMemorySubmissionStore:
    """内存存储（无数据库模式与测试使用）"""

    def __init__(self) -> None:
        self._submissions: Dict[str, Submission] = {}
        self._rubrics: Dict[str, Rubric] = {}
        self._lock = asyncio.Lock()

    async def create_submission(self, submission: Submission) -> Submission:
        async with self._lock:
            self._submissions[submission.submission_id] = submission
        return submission

    async def save_rubric(self, rubric: Rubric) -> None:
        self._rubrics[rubric.assignment_id] = rubric

    async def get_submission(self, submission_id: str) -> Optional[Submission]:
        return self._submissions.get(submission_id)

    async def update_submission(
        self,
        submission_id: str,
        expected_state: ExpectedState,
        patch: SubmissionPatch,
    ) -> UpdateResult:
        expected = _expected_set(expected_state)
        async with self._lock:
            current = self._submissions.get(submission_id)
            if current is None:
                return UpdateResult(ok=False, reason="not_found")
            if current.status not in expected:
                return UpdateResult(ok=False, submission=current, reason=f"state={current.status.value}")
            try:
                updated = apply_checked_patch(current, patch)
            except PatchRejected as e:
                return UpdateResult(ok=False, submission=current, reason=str(e))
            self._submissions[submission_id] = updated
        return UpdateResult(ok=True, submission=updated)

    async def get_assignment_rubric(self, assignment_id: str) -> Optional[Rubric]:
        return self._rubrics.get(assignment_id)

    async def list_submissions(self, statuses: Iterable[SubmissionStatus]) -> List[Submission]:
        wanted = set(statuses)
        return [s for s in self._submissions.values() if s.status in wanted]


class PostgresSubmissionStore:
    """
    PostgreSQL 存储

    提交记录整体以 JSONB 文档保存，状态与版本号单独成列，
    条件更新通过 WHERE status = ... AND version = ... 实现。
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS pipeline_submissions (
            submission_id TEXT PRIMARY KEY,
            assignment_id TEXT NOT NULL,
            status TEXT NOT NULL,
            version INTEGER NOT NULL DEFAULT 0,
            document JSONB NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_pipeline_submissions_status ON pipeline_submissions (status);
        CREATE TABLE IF NOT EXISTS pipeline_rubrics (
            assignment_id TEXT PRIMARY KEY,
            document JSONB NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
    """

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    @classmethod
    async def connect(cls, database_url: str, min_size: int = 2, max_size: int = 10) -> "PostgresSubmissionStore":
        pool = AsyncConnectionPool(
            conninfo=database_url,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row},
            open=False,
        )
        await pool.open()
        store = cls(pool)
        await store.ensure_schema()
        return store

    async def close(self) -> None:
        await self.pool.close()

    async def ensure_schema(self) -> None:
        async with self.pool.connection() as conn:
            await conn.execute(self.SCHEMA)

    async def create_submission(self, submission: Submission) -> Submission:
        query = """
            INSERT INTO pipeline_submissions (submission_id, assignment_id, status, version, document)
            VALUES (%(submission_id)s, %(assignment_id)s, %(status)s, %(version)s, %(document)s)
        """
        async with self.pool.connection() as conn:
            await conn.execute(
                query,
                {
                    "submission_id": submission.submission_id,
                    "assignment_id": submission.assignment_id,
                    "status": submission.status.value,
                    "version": submission.version,
                    "document": Jsonb(submission.model_dump(mode="json")),
                },
            )
        return submission

    async def save_rubric(self, rubric: Rubric) -> None:
        query = """
            INSERT INTO pipeline_rubrics (assignment_id, document)
            VALUES (%(assignment_id)s, %(document)s)
            ON CONFLICT (assignment_id) DO UPDATE SET document = EXCLUDED.document, updated_at = NOW()
        """
        async with self.pool.connection() as conn:
            await conn.execute(
                query,
                {"assignment_id": rubric.assignment_id, "document": Jsonb(rubric.model_dump(mode="json"))},
            )

    async def get_submission(self, submission_id: str) -> Optional[Submission]:
        query = "SELECT document FROM pipeline_submissions WHERE submission_id = %(submission_id)s"
        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, {"submission_id": submission_id})
                row = await cur.fetchone()
        return Submission.model_validate(row["document"]) if row else None

    async def update_submission(
        self,
        submission_id: str,
        expected_state: ExpectedState,
        patch: SubmissionPatch,
    ) -> UpdateResult:
        expected = _expected_set(expected_state)
        current = await self.get_submission(submission_id)
        if current is None:
            return UpdateResult(ok=False, reason="not_found")
        if current.status not in expected:
            return UpdateResult(ok=False, submission=current, reason=f"state={current.status.value}")
        try:
            updated = apply_checked_patch(current, patch)
        except PatchRejected as e:
            return UpdateResult(ok=False, submission=current, reason=str(e))

        query = """
            UPDATE pipeline_submissions
            SET status = %(status)s,
                version = %(new_version)s,
                document = %(document)s,
                updated_at = NOW()
            WHERE submission_id = %(submission_id)s
              AND status = %(expected_status)s
              AND version = %(expected_version)s
        """
        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    query,
                    {
                        "submission_id": submission_id,
                        "status": updated.status.value,
                        "new_version": updated.version,
                        "document": Jsonb(updated.model_dump(mode="json")),
                        "expected_status": current.status.value,
                        "expected_version": current.version,
                    },
                )
                if cur.rowcount == 0:
                    logger.info(f"[PostgresSubmissionStore] 条件更新冲突: {submission_id}")
                    return UpdateResult(ok=False, submission=current, reason="version_conflict")
        return UpdateResult(ok=True, submission=updated)

    async def get_assignment_rubric(self, assignment_id: str) -> Optional[Rubric]:
        query = "SELECT document FROM pipeline_rubrics WHERE assignment_id = %(assignment_id)s"
        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, {"assignment_id": assignment_id})
                row = await cur.fetchone()
        return Rubric.model_validate(row["document"]) if row else None

    async def list_submissions(self, statuses: Iterable[SubmissionStatus]) -> List[Submission]:
        query = "SELECT document FROM pipeline_submissions WHERE status = ANY(%(statuses)s)"
        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, {"statuses": [s.value for s in statuses]})
                rows = await cur.fetchall()
        return [Submission.model_validate(row["document"]) for row in rows]
