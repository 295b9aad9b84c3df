from app.services.credit_ledger import CreditLedger, Reservation, ReservationState, get_credit_ledger
from app.services.model_gateway import (
    Chunk, ChunkKind, ModelGateway, ModelInfo, ModelRegistry, get_model_gateway,
)
from app.services.execution_store import ExecutionStore, get_execution_store
from app.services.execution_query import ExecutionQueryService, ExecutionSummary, get_execution_query_service
from app.services.chat_orchestrator import ChatOrchestrator, StreamSession, TurnState, get_chat_orchestrator
from app.services.auth_service import (
    create_access_token, decode_access_token, create_user,
    get_user_by_id, get_user_by_email,
)

__all__ = [
    "CreditLedger",
    "Reservation",
    "ReservationState",
    "get_credit_ledger",
    "Chunk",
    "ChunkKind",
    "ModelGateway",
    "ModelInfo",
    "ModelRegistry",
    "get_model_gateway",
    "ExecutionStore",
    "get_execution_store",
    "ExecutionQueryService",
    "ExecutionSummary",
    "get_execution_query_service",
    "ChatOrchestrator",
    "StreamSession",
    "TurnState",
    "get_chat_orchestrator",
    "create_access_token",
    "decode_access_token",
    "create_user",
    "get_user_by_id",
    "get_user_by_email",
]
