"""
Pydantic models for Parley API requests and responses.
This module defines the request and response schemas used by the Parley API.
"""

from typing import (
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)

from parley.core.schema import (
    LLMCallRecord,
    Message,
    Usage,
)


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class ChatRequest(BaseModel):
    """Incoming user message with the conversation context the caller holds."""

    conversation_id: Optional[str] = Field(None, description="Conversation the message belongs to")
    agent_id: str = Field(..., description="Agent answering the message; selects its tools")
    user_message: str = Field(..., description="Latest user message")
    recent_history: List[Message] = Field(
        default_factory=list, description="Earlier turns, oldest first"
    )


class ChatResponse(BaseModel):
    """API response returned to the caller."""

    reply_text: str
    usage: Usage = Field(default_factory=Usage)
    debug_ledger: List[LLMCallRecord] = Field(default_factory=list)
    conversation_id: Optional[str] = None
    degraded: bool = Field(False, description="True when any stage fell back to a degraded path")
