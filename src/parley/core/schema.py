"""
Schema definitions for the messages, tool calls and results that flow through the pipeline.

These data models are the contract between the model clients, the orchestration loop and the tool
service.  We keep them separate from runtime logic so they can be imported anywhere without
side-effects.
"""

from datetime import (
    datetime,
    timezone,
)
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    model_validator,
)


class Role(str, Enum):
    """Author of a transcript message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCallRequest(BaseModel):
    """A tool invocation the model asked for."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Identifier the matching tool message must echo back")
    name: str = Field(..., description="Tool name as emitted by the model")
    arguments: Dict[str, Any] = Field(default_factory=dict)
    arguments_error: Optional[str] = Field(
        None, description="Set when the model's argument payload could not be decoded"
    )


class Message(BaseModel):
    """One turn in a transcript."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: Optional[str] = None
    tool_calls: List[ToolCallRequest] = Field(default_factory=list)
    tool_call_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_role_fields(self) -> "Message":
        if self.tool_calls and self.role is not Role.ASSISTANT:
            raise ValueError("only assistant messages may carry tool_calls")
        if self.role is Role.TOOL and not self.tool_call_id:
            raise ValueError("tool messages require a tool_call_id")
        if self.role is not Role.TOOL and self.tool_call_id is not None:
            raise ValueError("tool_call_id is only valid on tool messages")
        return self

    # Convenience constructors
    @classmethod
    def system(cls, content: str) -> "Message":
        """Build a system message."""
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        """Build a user message."""
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls, content: Optional[str] = None, tool_calls: Optional[List[ToolCallRequest]] = None
    ) -> "Message":
        """Build an assistant message, optionally requesting tools."""
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tool_calls or [])

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> "Message":
        """Build a tool-result message answering *tool_call_id*."""
        return cls(role=Role.TOOL, content=content, tool_call_id=tool_call_id)


Transcript = List[Message]


class ToolErrorKind(str, Enum):
    """Failure categories reported by the tool service."""

    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    TIMEOUT = "timeout"
    UPSTREAM = "upstream"
    INVALID_ARGUMENTS = "invalid_arguments"


class ToolErrorDetail(BaseModel):
    """Structured error attached to a failed ToolResult."""

    kind: ToolErrorKind
    message: str


class ToolResult(BaseModel):
    """Outcome of a single tool invocation."""

    call_id: str
    tool_name: str
    success: bool
    payload: Any = None
    error: Optional[ToolErrorDetail] = None
    duration_ms: float = 0.0


class Usage(BaseModel):
    """Token accounting for one or more model calls."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class ToolChoice(str, Enum):
    """How strongly the model is steered towards calling tools."""

    AUTO = "auto"
    REQUIRED = "required"
    NONE = "none"


class ModelReply(BaseModel):
    """Normalised result of a model invocation."""

    text: Optional[str] = None
    tool_calls: List[ToolCallRequest] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    model: Optional[str] = None


class CallStage(str, Enum):
    """Pipeline stage that issued a model call."""

    CONTEXTUAL_INTERPRETATION = "contextual-interpretation"
    INTENT_CLASSIFICATION = "intent-classification"
    TOOL_ENABLED_CALL = "tool-enabled-call"
    SYNTHESIS_CALL = "synthesis-call"


class LLMCallRecord(BaseModel):
    """Diagnostic snapshot of one model invocation."""

    model_config = ConfigDict(frozen=True)

    stage: CallStage
    description: str
    request: Dict[str, Any] = Field(default_factory=dict)
    response: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: float = 0.0


class AuthContext(BaseModel):
    """Caller credentials forwarded verbatim to the tool service."""

    model_config = ConfigDict(frozen=True)

    authorization: Optional[str] = Field(None, description="Raw Authorization header value")
    user_id: Optional[str] = None
