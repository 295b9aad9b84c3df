"""
AI API - chat turns, credits, model catalogue and conversation history

POST /ai/chat streams Server-Sent Events:
- {"conversationId", "model"}: sent once, first
- {"content": "..."}: text fragments in arrival order
- {"done": true, "conversationId", "messageId"}: turn completed
- {"error": "...", "code": "..."}: turn failed (``partial`` when some text was kept)
- [DONE]: end of stream

Validation, entitlement and credit failures are returned before the stream
opens, as ordinary JSON error responses.
"""

import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from app.api.auth import get_current_user
from app.db import User
from app.schemas import (
    ChatRequest, CreditsResponse, ModelsResponse, ModelResponse,
    ConversationEnvelope, ConversationResponse, DeleteResponse,
)
from app.services.chat_orchestrator import ChatOrchestrator, get_chat_orchestrator
from app.services.credit_ledger import CreditLedger, get_credit_ledger
from app.services.execution_query import ExecutionQueryService, get_execution_query_service
from app.services.execution_store import ExecutionStore, get_execution_store
from app.services.model_gateway import ModelGateway, get_model_gateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai", tags=["AI"])


def event_stream_response(frames: AsyncIterator[str]) -> StreamingResponse:
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"  # Disable nginx buffering
        }
    )


@router.post("/chat")
async def chat(
    request: ChatRequest,
    current_user: User = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
):
    """Run one chat turn and stream the model's reply."""
    session = await orchestrator.open_turn(
        current_user.id,
        request.message,
        request.model,
        conversation_id=request.conversation_id,
    )
    return event_stream_response(orchestrator.start(session))


@router.get("/credits", response_model=CreditsResponse)
async def get_credits(
    current_user: User = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    credits, is_premium = await ledger.get_status(current_user.id)
    return CreditsResponse(credits=credits, is_premium=is_premium)


@router.get("/models", response_model=ModelsResponse)
async def list_models(
    current_user: User = Depends(get_current_user),
    gateway: ModelGateway = Depends(get_model_gateway),
):
    """Models the user can pick from; premium ones are flagged."""
    return ModelsResponse(models=[
        ModelResponse(
            id=model.id,
            name=model.name,
            description=model.description,
            is_premium=model.is_premium,
            provider=model.vendor or model.provider,
        )
        for model in gateway.list_models()
    ])


@router.get("/conversations/{conversation_id}", response_model=ConversationEnvelope)
async def get_conversation(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    queries: ExecutionQueryService = Depends(get_execution_query_service),
):
    """A conversation with its full ordered transcript."""
    execution = await queries.get_detail(conversation_id, current_user.id)
    return ConversationEnvelope(conversation=ConversationResponse.model_validate(execution))


@router.delete("/chat/{conversation_id}", response_model=DeleteResponse)
async def delete_conversation(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    store: ExecutionStore = Depends(get_execution_store),
):
    await store.delete_execution(conversation_id, current_user.id)
    return DeleteResponse(id=conversation_id)
