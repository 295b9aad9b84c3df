"""
Chat Stream Orchestrator - runs one chat turn from request to persisted transcript.

A turn moves through VALIDATING → RESERVING → STREAMING → FINALIZING and ends
COMPLETED or FAILED. Validation and the credit reservation happen inside the
request (``open_turn``) so those failures are ordinary JSON error responses.
Everything after that runs in one owner task per turn (``start``); the HTTP
response only relays frames from the owner's queue. A client disconnect
closes the relay, never the owner: the upstream is drained, the transcript
and the reservation are settled exactly once, and nothing else is sent.
Turns on the same Execution take the store's turn lock, so they run one
after the other.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from app.config import settings
from app.db import ExecutionType, MessageRole
from app.errors import (
    BadRequest,
    ChatlineError,
    ModelRequiresUpgrade,
    StorageError,
    UpstreamError,
)
from app.services.credit_ledger import CreditLedger, Reservation, get_credit_ledger
from app.services.execution_store import ExecutionStore, get_execution_store
from app.services.model_gateway import ChunkKind, ModelGateway, ModelInfo, get_model_gateway
from app.structured_logging import set_request_context

logger = logging.getLogger(__name__)

SSE_DONE = "data: [DONE]\n\n"


def sse_frame(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


class TurnState(str, Enum):
    VALIDATING = "validating"
    RESERVING = "reserving"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS = {
    TurnState.VALIDATING: {TurnState.RESERVING, TurnState.FAILED},
    TurnState.RESERVING: {TurnState.STREAMING, TurnState.FAILED},
    TurnState.STREAMING: {TurnState.FINALIZING, TurnState.FAILED},
    TurnState.FINALIZING: {TurnState.COMPLETED, TurnState.FAILED},
    TurnState.COMPLETED: set(),
    TurnState.FAILED: set(),
}


@dataclass
class StreamSession:
    """State of one turn, owned by exactly one task after ``start``."""
    user_id: str
    execution_id: str
    execution_type: ExecutionType
    message: str
    model: Optional[ModelInfo] = None
    system: Optional[str] = None
    turn_id: str = field(default_factory=lambda: str(uuid.uuid4())[:12])
    state: TurnState = TurnState.VALIDATING
    reservation: Optional[Reservation] = None
    is_new_execution: bool = False

    buffer: List[str] = field(default_factory=list)
    user_message_id: Optional[str] = None
    agent_message_id: Optional[str] = None
    error: Optional[ChatlineError] = None

    client_gone: asyncio.Event = field(default_factory=asyncio.Event)
    outbox: "asyncio.Queue[Optional[str]]" = field(default_factory=asyncio.Queue)
    task: Optional[asyncio.Task] = None

    @property
    def output(self) -> str:
        return "".join(self.buffer)

    @property
    def is_terminal(self) -> bool:
        return self.state in (TurnState.COMPLETED, TurnState.FAILED)

    def transition(self, new_state: TurnState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal turn transition {self.state.value} -> {new_state.value}")
        logger.debug(f"Turn {self.turn_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def emit(self, payload: Dict[str, Any]) -> None:
        """Queue a frame for the client; dropped once the client is gone."""
        if not self.client_gone.is_set():
            self.outbox.put_nowait(sse_frame(payload))

    def emit_error(self, error: ChatlineError) -> None:
        payload: Dict[str, Any] = {"error": error.message, "code": error.code}
        if self.agent_message_id:
            payload["partial"] = True
            payload["messageId"] = self.agent_message_id
        self.emit(payload)


class ChatOrchestrator:
    """Coordinates the credit ledger, the model gateway and the execution store."""

    def __init__(
        self,
        ledger: Optional[CreditLedger] = None,
        gateway: Optional[ModelGateway] = None,
        store: Optional[ExecutionStore] = None,
        credit_cost: Optional[int] = None,
        history_limit: Optional[int] = None,
    ):
        self.ledger = ledger or get_credit_ledger()
        self.gateway = gateway or get_model_gateway()
        self.store = store or get_execution_store()
        self.credit_cost = settings.chat_credit_cost if credit_cost is None else credit_cost
        self.history_limit = history_limit or settings.max_history_messages
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active_turns(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Validating / Reserving (request scope)
    # ------------------------------------------------------------------

    async def open_turn(
        self,
        user_id: str,
        message: Optional[str],
        model_id: Optional[str],
        conversation_id: Optional[str] = None,
        execution_type: ExecutionType = ExecutionType.CONVERSATION,
        system: Optional[str] = None,
        max_chars: Optional[int] = None,
    ) -> StreamSession:
        """
        Validate the request and reserve credit for it.

        Raises BadRequest, UnknownModel, ModelRequiresUpgrade, Forbidden or
        InsufficientCredits. On any of these no credit has been taken and no
        Execution or Message has been written.
        """
        text = (message or "").strip()
        session = StreamSession(
            user_id=user_id,
            execution_id="",
            execution_type=execution_type,
            message=text,
            system=system,
        )
        try:
            self._validate_message(text, max_chars or settings.max_message_chars)
            if not model_id:
                raise BadRequest("Model is required")
            session.model = self.gateway.resolve(model_id)
            if session.model.is_premium and not await self.ledger.is_premium(user_id):
                raise ModelRequiresUpgrade(model=model_id)
            session.execution_id = self._normalize_execution_id(conversation_id)
            existing = await self.store.check_access(user_id, session.execution_id)
            session.is_new_execution = existing is None

            session.transition(TurnState.RESERVING)
            session.reservation = await self.ledger.check_and_reserve(
                user_id, self.credit_cost, reference=session.execution_id
            )
        except ChatlineError as e:
            session.error = e
            session.transition(TurnState.FAILED)
            logger.info(f"Turn {session.turn_id} rejected for user {user_id}: {e.code} {e.message}")
            raise

        return session

    @staticmethod
    def _validate_message(text: str, max_chars: int) -> None:
        if not text:
            raise BadRequest("Message must not be empty")
        if len(text) > max_chars:
            raise BadRequest(f"Message exceeds {max_chars} characters")

    @staticmethod
    def _normalize_execution_id(conversation_id: Optional[str]) -> str:
        if not conversation_id:
            return str(uuid.uuid4())
        try:
            return str(uuid.UUID(str(conversation_id)))
        except ValueError:
            raise BadRequest("conversationId must be a UUID")

    # ------------------------------------------------------------------
    # Streaming / Finalizing (owner task)
    # ------------------------------------------------------------------

    def start(self, session: StreamSession) -> AsyncIterator[str]:
        """Spawn the owner task and return the client relay of SSE frames."""
        if session.state is not TurnState.RESERVING or session.task is not None:
            raise RuntimeError(f"Turn {session.turn_id} cannot start from {session.state.value}")
        task = asyncio.create_task(self._run_turn(session), name=f"turn-{session.turn_id}")
        session.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return self.stream_events(session)

    async def stream_events(self, session: StreamSession) -> AsyncIterator[str]:
        """Frames queued by the owner task, ending after ``[DONE]``."""
        finished = False
        try:
            while True:
                frame = await session.outbox.get()
                if frame is None:
                    finished = True
                    return
                yield frame
        finally:
            if not finished:
                session.client_gone.set()
                logger.info(
                    f"Client left turn {session.turn_id} on {session.execution_id}; "
                    f"finishing in background"
                )

    async def run(self, session: StreamSession) -> StreamSession:
        """Run a turn with no client attached and return it once terminal."""
        session.client_gone.set()
        self.start(session)
        await session.task
        return session

    async def _run_turn(self, session: StreamSession) -> None:
        set_request_context(user_id=session.user_id, execution_id=session.execution_id)
        settled = False
        try:
            session.transition(TurnState.STREAMING)
            session.emit({"conversationId": session.execution_id, "model": session.model.id})

            async with self.store.turn_lock(session.execution_id):
                try:
                    await self._stream_turn(session)
                except asyncio.CancelledError:
                    # Settle while still holding the lock so the agent message
                    # lands before the next turn's user message
                    await self._settle_cancelled(session)
                    settled = True
                    raise

        except asyncio.CancelledError:
            # Cancelled while waiting for the previous turn on this execution
            if not settled:
                await self._settle_cancelled(session)
            raise
        except Exception as e:
            logger.error(f"Turn {session.turn_id} crashed: {e}", exc_info=True)
            if not session.is_terminal:
                if not session.agent_message_id:
                    await self._refund(session)
                self._fail(session, ChatlineError())
        finally:
            if not session.client_gone.is_set():
                session.outbox.put_nowait(SSE_DONE)
            session.outbox.put_nowait(None)
            logger.info(
                f"Turn {session.turn_id} on {session.execution_id} ended {session.state.value} "
                f"({len(session.output)} chars)"
            )

    async def _stream_turn(self, session: StreamSession) -> None:
        try:
            history = await self._record_user_message(session)
        except ChatlineError as e:
            await self._refund(session)
            self._fail(session, e)
            return

        upstream_error = await self._pump(session, history)
        await self._finalize(session, upstream_error)

    async def _settle_cancelled(self, session: StreamSession) -> None:
        if session.is_terminal:
            return
        logger.warning(f"Turn {session.turn_id} cancelled in state {session.state.value}")
        if session.state is TurnState.STREAMING:
            if session.user_message_id is None:
                await self._refund(session)
                self._fail(session, UpstreamError("Turn cancelled"))
            else:
                await self._finalize(session, UpstreamError("Turn cancelled", partial=session.output))
        else:
            logger.error(
                f"RECONCILE turn={session.turn_id} execution={session.execution_id} "
                f"user={session.user_id} cancelled while {session.state.value}"
            )

    async def _record_user_message(self, session: StreamSession):
        await self.store.get_or_create_execution(
            session.user_id, session.execution_id, session.execution_type
        )
        user_message = await self.store.append_message(
            session.execution_id, MessageRole.USER, session.message
        )
        session.user_message_id = user_message.id
        return await self.store.list_messages(session.execution_id, limit=self.history_limit)

    async def _pump(self, session: StreamSession, history) -> Optional[UpstreamError]:
        """Forward upstream fragments; returns the upstream failure, if any."""
        try:
            chunks = self.gateway.stream_completion(session.model.id, history, system=session.system)
        except ChatlineError as e:
            return UpstreamError(e.message)

        try:
            async for chunk in chunks:
                if chunk.kind is ChunkKind.TEXT:
                    session.buffer.append(chunk.text)
                    session.emit({"content": chunk.text})
                elif chunk.kind is ChunkKind.ERROR:
                    return chunk.error
                else:
                    return None
        finally:
            await chunks.aclose()
        return UpstreamError("Model stream ended unexpectedly", partial=session.output)

    async def _finalize(self, session: StreamSession, upstream_error: Optional[UpstreamError]) -> None:
        session.transition(TurnState.FINALIZING)
        output = session.output

        if upstream_error is not None and not output:
            await self._refund(session)
            self._fail(session, upstream_error)
            return

        try:
            agent_message = await self.store.append_message(
                session.execution_id, MessageRole.AGENT, output, model_used=session.model.id
            )
        except ChatlineError as e:
            reservation = session.reservation
            logger.error(
                f"RECONCILE turn={session.turn_id} execution={session.execution_id} "
                f"user={session.user_id} reservation={reservation.reservation_id if reservation else None} "
                f"amount={reservation.amount if reservation else 0} chars={len(output)}: "
                f"agent message not saved: {e.message}"
            )
            self._fail(session, e if isinstance(e, StorageError) else StorageError())
            return

        session.agent_message_id = agent_message.id
        if session.reservation is not None:
            await self.ledger.commit(session.reservation)

        if upstream_error is not None:
            self._fail(session, upstream_error)
            return

        session.transition(TurnState.COMPLETED)
        session.emit({
            "done": True,
            "conversationId": session.execution_id,
            "messageId": agent_message.id,
        })

    async def _refund(self, session: StreamSession) -> None:
        if session.reservation is None:
            return
        try:
            await self.ledger.refund(session.reservation)
        except StorageError as e:
            logger.error(
                f"RECONCILE turn={session.turn_id} user={session.user_id} "
                f"reservation={session.reservation.reservation_id} "
                f"amount={session.reservation.amount}: refund failed: {e.__cause__ or e}"
            )

    def _fail(self, session: StreamSession, error: ChatlineError) -> None:
        session.error = error
        session.transition(TurnState.FAILED)
        session.emit_error(error)
        logger.warning(f"Turn {session.turn_id} failed: {error.code} {error.message}")

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def wait_idle(self, timeout: Optional[float] = None) -> int:
        """
        Wait for in-flight turns to reach a terminal state.

        Turns still running after ``timeout`` are cancelled (which finalizes
        them with whatever output they have). Returns how many were cancelled.
        """
        pending = set(self._tasks)
        if not pending:
            return 0
        logger.info(f"Waiting for {len(pending)} in-flight turn(s)")
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
        return len(still_running)


# Singleton instance
_chat_orchestrator: Optional[ChatOrchestrator] = None


def get_chat_orchestrator() -> ChatOrchestrator:
    """Get the chat orchestrator singleton."""
    global _chat_orchestrator
    if _chat_orchestrator is None:
        _chat_orchestrator = ChatOrchestrator()
    return _chat_orchestrator
