"""
Database models for the Chatline chat pipeline

- User: identity plus the credit balance and premium entitlement
- CreditTransaction: append-only audit log of every balance mutation
- Execution: a conversation (or app invocation) owned by a user
- Message: ordered transcript entries of an Execution
"""

from datetime import datetime
from typing import Optional, List
from enum import Enum
import uuid

from sqlalchemy import (
    String, Text, DateTime, Integer, Boolean, ForeignKey, Index,
    CheckConstraint, UniqueConstraint,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column, declarative_base

Base = declarative_base()


class ExecutionType(str, Enum):
    """Kinds of execution records"""
    CONVERSATION = "CONVERSATION"                # Free-form chat
    ARTICLE_SUMMARIZER = "ARTICLE_SUMMARIZER"    # Article summarizer app


class MessageRole(str, Enum):
    USER = "user"
    AGENT = "agent"


class CreditEntryType(str, Enum):
    RESERVE = "reserve"    # Debit for an in-flight turn
    REFUND = "refund"      # Reservation returned after a failed turn
    GRANT = "grant"        # Credits added (signup, purchase)
    PREMIUM = "premium"    # Premium flag changed by a verified payment event


class User(Base):
    """User model with credit balance"""
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Credits & entitlement - mutated only through CreditLedger
    credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_premium: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # OTP sign-in
    otp_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    otp_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    otp_attempts: Mapped[int] = mapped_column(Integer, default=0)

    # Billing
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    executions: Mapped[List["Execution"]] = relationship("Execution", back_populates="user")
    credit_transactions: Mapped[List["CreditTransaction"]] = relationship(
        "CreditTransaction", back_populates="user"
    )


class CreditTransaction(Base):
    """Immutable credit ledger entry, written with the balance mutation it records"""
    __tablename__ = "credit_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    entry_type: Mapped[str] = mapped_column(String(20))  # CreditEntryType value
    delta: Mapped[int] = mapped_column(Integer, default=0)
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    user: Mapped["User"] = relationship("User", back_populates="credit_transactions")


class Execution(Base):
    """Conversation / app invocation record"""
    __tablename__ = "executions"
    __table_args__ = (
        Index("ix_executions_user_updated", "user_id", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    type: Mapped[str] = mapped_column(String(40), default=ExecutionType.CONVERSATION.value, index=True)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    message_count: Mapped[int] = mapped_column(Integer, default=0)

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="executions")
    messages: Mapped[List["Message"]] = relationship(
        "Message",
        back_populates="execution",
        order_by="Message.position",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Message(Base):
    """Individual message in an execution"""
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("execution_id", "position", name="uq_messages_execution_position"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    execution_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("executions.id", ondelete="CASCADE"), index=True
    )
    position: Mapped[int] = mapped_column(Integer)  # 0-based insertion order
    role: Mapped[str] = mapped_column(String(20))  # "user" | "agent"
    content: Mapped[str] = mapped_column(Text)
    model_used: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    execution: Mapped["Execution"] = relationship("Execution", back_populates="messages")
