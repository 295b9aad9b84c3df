"""Execution history endpoints"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.api.auth import get_current_user
from app.db import User, ExecutionType
from app.errors import BadRequest
from app.schemas import ExecutionListResponse, ExecutionSummaryResponse
from app.services.execution_query import ExecutionQueryService, get_execution_query_service

router = APIRouter(prefix="/execution", tags=["Executions"])


@router.get("", response_model=ExecutionListResponse)
async def list_executions(
    type: Optional[str] = Query(None, description="CONVERSATION or ARTICLE_SUMMARIZER"),
    current_user: User = Depends(get_current_user),
    queries: ExecutionQueryService = Depends(get_execution_query_service),
):
    """The user's executions, most recently updated first."""
    execution_type = None
    if type:
        try:
            execution_type = ExecutionType(type.upper())
        except ValueError:
            raise BadRequest(f"Unknown execution type: {type}")

    summaries = await queries.list_summaries(current_user.id, execution_type)
    return ExecutionListResponse(executions=[
        ExecutionSummaryResponse.model_validate(summary) for summary in summaries
    ])
