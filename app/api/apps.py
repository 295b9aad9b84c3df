"""
Mini-apps built on the chat pipeline.

The article summarizer is a single turn of type ARTICLE_SUMMARIZER: same
credit charge, same persistence and the same event stream as /ai/chat.
"""

from fastapi import APIRouter, Depends

from app.api.ai import event_stream_response
from app.api.auth import get_current_user
from app.config import settings
from app.db import User, ExecutionType
from app.schemas import SummarizeRequest
from app.services.chat_orchestrator import ChatOrchestrator, get_chat_orchestrator

router = APIRouter(prefix="/apps", tags=["Apps"])

SUMMARIZER_PROMPT = """You summarize articles for busy readers.

Write a short title line, then a 2-3 sentence overview, then up to five bullet
points with the key facts, figures and conclusions. Use only information found
in the article. Match the article's language."""


@router.post("/article-summarizer")
async def summarize_article(
    request: SummarizeRequest,
    current_user: User = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
):
    session = await orchestrator.open_turn(
        current_user.id,
        request.article,
        settings.summarizer_model,
        execution_type=ExecutionType.ARTICLE_SUMMARIZER,
        system=SUMMARIZER_PROMPT,
        max_chars=settings.summarizer_max_chars,
    )
    return event_stream_response(orchestrator.start(session))
