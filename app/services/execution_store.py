"""
Execution Store - durable conversations and their ordered messages.

Appends to one Execution are serialized in-process by a keyed asyncio lock;
the unique (execution_id, position) constraint catches writers in other
processes, in which case the append is retried with a fresh position.
Appends to different Executions never wait on each other.

A chat turn also holds ``turn_lock`` for its Execution from its user message
to its agent message, so concurrent turns on one conversation run one after
the other and each sees the previous reply in its history.
"""

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, List, Optional

from sqlalchemy import select, delete, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.db import async_session_maker, Execution, Message, ExecutionType, MessageRole
from app.errors import Forbidden, NotFound, StorageError

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 60
_APPEND_ATTEMPTS = 3


def infer_title(content: str, max_chars: int = TITLE_MAX_CHARS) -> Optional[str]:
    """First line of a message, whitespace-collapsed and truncated."""
    for line in content.splitlines():
        line = re.sub(r"\s+", " ", line).strip()
        if line:
            if len(line) > max_chars:
                return line[: max_chars - 1].rstrip() + "…"
            return line
    return None


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class ExecutionStore:
    """Read/append operations over executions and messages."""

    def __init__(self, session_factory: Callable[[], AsyncSession] = async_session_maker):
        self._session_factory = session_factory
        self._append_locks = KeyedLock()
        self._turn_locks = KeyedLock()

    def turn_lock(self, execution_id: str):
        """Held by a chat turn from its user message through its agent message."""
        return self._turn_locks.hold(execution_id)

    async def check_access(self, user_id: str, execution_id: str) -> Optional[Execution]:
        """Existing execution owned by ``user_id``, None if unknown, Forbidden otherwise."""
        async with self._session_factory() as db:
            execution = await db.get(Execution, execution_id)
        if execution is not None and execution.user_id != user_id:
            raise Forbidden("Conversation belongs to another user")
        return execution

    async def get_or_create_execution(
        self,
        user_id: str,
        execution_id: str,
        execution_type: ExecutionType = ExecutionType.CONVERSATION,
    ) -> Execution:
        """
        Return the execution if it exists and is owned by ``user_id``;
        otherwise create it under that id.
        """
        async with self._session_factory() as db:
            execution = await db.get(Execution, execution_id)
            if execution is not None:
                if execution.user_id != user_id:
                    raise Forbidden("Conversation belongs to another user")
                return execution

            execution = Execution(id=execution_id, user_id=user_id, type=execution_type.value)
            db.add(execution)
            try:
                await db.commit()
                logger.info(f"Created {execution_type.value} execution {execution_id} for user {user_id}")
                return execution
            except IntegrityError:
                # Another turn created the same id first
                await db.rollback()
            except SQLAlchemyError as e:
                await db.rollback()
                raise StorageError("Could not create conversation") from e

            existing = (await db.execute(
                select(Execution).where(Execution.id == execution_id)
            )).scalar_one_or_none()

        if existing is None:
            raise StorageError("Could not create conversation")
        if existing.user_id != user_id:
            raise Forbidden("Conversation belongs to another user")
        return existing

    async def append_message(
        self,
        execution_id: str,
        role: MessageRole,
        content: str,
        model_used: Optional[str] = None,
    ) -> Message:
        """
        Append one message at the end of the execution, bump ``updated_at``
        and infer the title from the first user message.
        """
        async with self._append_locks.hold(execution_id):
            for attempt in range(_APPEND_ATTEMPTS):
                try:
                    return await self._append_once(execution_id, role, content, model_used)
                except IntegrityError as e:
                    logger.warning(
                        f"Position clash appending to {execution_id} (attempt {attempt + 1}): {e}"
                    )
                except SQLAlchemyError as e:
                    raise StorageError("Could not save message") from e
        raise StorageError("Could not save message after concurrent writes")

    async def _append_once(
        self,
        execution_id: str,
        role: MessageRole,
        content: str,
        model_used: Optional[str],
    ) -> Message:
        async with self._session_factory() as db:
            execution = await db.get(Execution, execution_id)
            if execution is None:
                raise NotFound("Conversation not found")

            last_position = (await db.execute(
                select(func.max(Message.position)).where(Message.execution_id == execution_id)
            )).scalar_one_or_none()
            position = 0 if last_position is None else last_position + 1

            now = datetime.utcnow()
            message = Message(
                execution_id=execution_id,
                position=position,
                role=role.value,
                content=content,
                model_used=model_used,
                created_at=now,
            )
            db.add(message)

            execution.updated_at = now
            execution.message_count = position + 1
            if not execution.title and role is MessageRole.USER:
                execution.title = infer_title(content)

            try:
                await db.commit()
            except SQLAlchemyError:
                await db.rollback()
                raise
            return message

    async def list_messages(self, execution_id: str, limit: Optional[int] = None) -> List[Message]:
        """Ordered messages; the most recent ``limit`` when given."""
        async with self._session_factory() as db:
            query = select(Message).where(Message.execution_id == execution_id)
            if limit is not None:
                query = query.order_by(Message.position.desc()).limit(limit)
                rows = list((await db.execute(query)).scalars().all())
                rows.reverse()
                return rows
            query = query.order_by(Message.position)
            return list((await db.execute(query)).scalars().all())

    async def list_executions(
        self,
        user_id: str,
        execution_type: Optional[ExecutionType] = None,
    ) -> List[Execution]:
        """Executions of a user, most recently updated first."""
        conditions = [Execution.user_id == user_id]
        if execution_type is not None:
            conditions.append(Execution.type == execution_type.value)
        async with self._session_factory() as db:
            result = await db.execute(
                select(Execution)
                .where(*conditions)
                .order_by(Execution.updated_at.desc(), Execution.id.desc())
            )
            return list(result.scalars().all())

    async def get_execution(self, execution_id: str, user_id: str) -> Execution:
        """Execution with its full ordered message history."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Execution)
                .where(Execution.id == execution_id)
                .options(selectinload(Execution.messages))
            )
            execution = result.scalar_one_or_none()
        if execution is None:
            raise NotFound("Conversation not found")
        if execution.user_id != user_id:
            raise Forbidden("Conversation belongs to another user")
        return execution

    async def delete_execution(self, execution_id: str, user_id: str) -> None:
        """Hard-delete an execution and its messages (explicit user action)."""
        async with self._append_locks.hold(execution_id):
            async with self._session_factory() as db:
                execution = await db.get(Execution, execution_id)
                if execution is None:
                    raise NotFound("Conversation not found")
                if execution.user_id != user_id:
                    raise Forbidden("Conversation belongs to another user")
                await db.execute(delete(Message).where(Message.execution_id == execution_id))
                await db.execute(delete(Execution).where(Execution.id == execution_id))
                await db.commit()
        logger.info(f"Deleted execution {execution_id} for user {user_id}")


# Singleton instance
_execution_store: Optional[ExecutionStore] = None


def get_execution_store() -> ExecutionStore:
    """Get the execution store singleton."""
    global _execution_store
    if _execution_store is None:
        _execution_store = ExecutionStore()
    return _execution_store
