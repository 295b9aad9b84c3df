"""
Execution Listing/Retrieval - read-side projections for list and detail views.

List views select only summary columns, so message bodies are never loaded
for them.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import async_session_maker, Execution, ExecutionType
from app.services.execution_store import ExecutionStore, get_execution_store


@dataclass(frozen=True)
class ExecutionSummary:
    id: str
    type: str
    title: Optional[str]
    created_at: datetime
    updated_at: datetime
    message_count: int


class ExecutionQueryService:
    def __init__(
        self,
        store: Optional[ExecutionStore] = None,
        session_factory: Callable[[], AsyncSession] = async_session_maker,
    ):
        self._store = store or get_execution_store()
        self._session_factory = session_factory

    async def list_summaries(
        self,
        user_id: str,
        execution_type: Optional[ExecutionType] = None,
    ) -> List[ExecutionSummary]:
        conditions = [Execution.user_id == user_id]
        if execution_type is not None:
            conditions.append(Execution.type == execution_type.value)

        async with self._session_factory() as db:
            result = await db.execute(
                select(
                    Execution.id,
                    Execution.type,
                    Execution.title,
                    Execution.created_at,
                    Execution.updated_at,
                    Execution.message_count,
                )
                .where(*conditions)
                .order_by(Execution.updated_at.desc(), Execution.id.desc())
            )
            return [ExecutionSummary(*row) for row in result.all()]

    async def get_detail(self, execution_id: str, user_id: str) -> Execution:
        return await self._store.get_execution(execution_id, user_id)


def get_execution_query_service() -> ExecutionQueryService:
    return ExecutionQueryService()
