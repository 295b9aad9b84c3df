"""Pydantic schemas for API request/response validation"""

from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field, EmailStr


# ============ Auth Schemas ============

class SignInRequest(BaseModel):
    email: EmailStr


class SignInResponse(BaseModel):
    success: bool = True
    message: str


class VerifyOtpRequest(BaseModel):
    email: EmailStr
    otp: str = Field(..., min_length=1, max_length=12)


class TokenResponse(BaseModel):
    token: str
    token_type: str = Field("bearer", serialization_alias="tokenType")


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    credits: int
    is_premium: bool = Field(serialization_alias="isPremium")
    created_at: datetime = Field(serialization_alias="createdAt")

    class Config:
        from_attributes = True


class MeResponse(BaseModel):
    user: UserResponse


# ============ Chat Schemas ============

class ChatRequest(BaseModel):
    """One chat turn. A missing conversationId starts a new conversation."""
    message: str
    model: str
    conversation_id: Optional[str] = Field(None, alias="conversationId")

    class Config:
        populate_by_name = True


class CreditsResponse(BaseModel):
    credits: int
    is_premium: bool = Field(serialization_alias="isPremium")


class ModelResponse(BaseModel):
    id: str
    name: str
    description: str
    is_premium: bool = Field(serialization_alias="isPremium")
    provider: str


class ModelsResponse(BaseModel):
    models: List[ModelResponse]


class MessageResponse(BaseModel):
    id: str
    role: str
    content: str
    model_used: Optional[str] = Field(None, serialization_alias="modelUsed")
    created_at: datetime = Field(serialization_alias="createdAt")

    class Config:
        from_attributes = True


class ConversationResponse(BaseModel):
    id: str
    type: str
    title: Optional[str] = None
    created_at: datetime = Field(serialization_alias="createdAt")
    updated_at: datetime = Field(serialization_alias="updatedAt")
    messages: List[MessageResponse] = []

    class Config:
        from_attributes = True


class ConversationEnvelope(BaseModel):
    conversation: ConversationResponse


class DeleteResponse(BaseModel):
    success: bool = True
    id: str


# ============ Execution Schemas ============

class ExecutionSummaryResponse(BaseModel):
    id: str
    type: str
    title: Optional[str] = None
    created_at: datetime = Field(serialization_alias="createdAt")
    updated_at: datetime = Field(serialization_alias="updatedAt")
    message_count: int = Field(serialization_alias="messageCount")

    class Config:
        from_attributes = True


class ExecutionListResponse(BaseModel):
    executions: List[ExecutionSummaryResponse]


# ============ Apps Schemas ============

class SummarizeRequest(BaseModel):
    article: str


# ============ Billing Schemas ============

class PlanPrice(BaseModel):
    plan_id: str
    monthly_price: float
    annual_price: float
    currency: str
    symbol: str


class PlanResponse(BaseModel):
    name: str
    plan_id: str
    monthly_price: float
    currency: str
    symbol: str
    pricing_currency: List[PlanPrice]


class SubscribeRequest(BaseModel):
    plan_type: str = Field(..., alias="planType")

    class Config:
        populate_by_name = True


class SubscribeResponse(BaseModel):
    order_id: str = Field(serialization_alias="orderId")
    url: str


class WebhookResponse(BaseModel):
    received: bool = True
    result: str
