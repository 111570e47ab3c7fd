"""Request and response models for the HTTP surface."""

from __future__ import annotations

import re
from typing import List

from pydantic import BaseModel, Field, validator

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")
MAX_MESSAGE_LENGTH = 4000


class ChatRequest(BaseModel):
    session_id: str = Field(..., alias="sessionId", description="Client supplied conversation key.")
    message: str = Field(
        ...,
        min_length=1,
        max_length=MAX_MESSAGE_LENGTH,
        description="User message to relay to the model.",
    )

    @validator("session_id")
    def _session_shape(cls, value: str) -> str:
        if not SESSION_ID_PATTERN.match(value):
            raise ValueError("sessionId must be 1-128 characters of letters, digits, '.', '_', ':' or '-'")
        return value

    @validator("message")
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be blank")
        return value


class ChatCompletionResponse(BaseModel):
    conversationId: str
    message: str


class ConversationSummaryResponse(BaseModel):
    id: str
    sessionId: str
    createdAt: int
    updatedAt: int
    lastMessage: str = ""


class ConversationListResponse(BaseModel):
    conversations: List[ConversationSummaryResponse] = Field(default_factory=list)
    total: int
