"""Chat message and completion types shared by the pipeline."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

ROLES = ("system", "user", "assistant", "function")


@dataclass
class FunctionCall:
    """A function call requested by the model."""

    name: str
    arguments: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "arguments": self.arguments}


@dataclass
class ChatMessage:
    """A single chat message.

    Attributes:
        role: One of system, user, assistant, function
        content: Text content (None for pure function calls)
        function_call: Function call carried by an assistant message
        name: Function name for function-role messages
    """

    role: str
    content: Optional[str] = None
    function_call: Optional[FunctionCall] = None
    name: Optional[str] = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Invalid message role: {self.role}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to the OpenAI-style dictionary used on the wire."""
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.function_call is not None:
            data["function_call"] = self.function_call.to_dict()
        if self.name is not None:
            data["name"] = self.name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatMessage":
        """Create from an OpenAI-style dictionary."""
        function_call = data.get("function_call")
        return cls(
            role=data.get("role", ""),
            content=data.get("content"),
            function_call=(
                FunctionCall(
                    name=function_call.get("name", ""),
                    arguments=function_call.get("arguments") or "",
                )
                if function_call
                else None
            ),
            name=data.get("name"),
        )


@dataclass
class CompletionRequest:
    """A chat completion request for a fine-tuned model."""

    model: str
    messages: list[ChatMessage]
    max_tokens: int = 4096
    temperature: float = 0.0
    n: int = 1
    stream: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CompletionRequest":
        """Create from an OpenAI-style request body.

        Missing or null sampling options fall back to the defaults.
        """
        max_tokens = data.get("max_tokens")
        temperature = data.get("temperature")
        n = data.get("n")
        return cls(
            model=data.get("model", ""),
            messages=[ChatMessage.from_dict(m) for m in data.get("messages", [])],
            max_tokens=max_tokens if max_tokens is not None else 4096,
            temperature=temperature if temperature is not None else 0.0,
            n=n if n is not None else 1,
            stream=bool(data.get("stream", False)),
        )


@dataclass
class CompletionUsage:
    """Token accounting for one completion."""

    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class CompletionSuccess:
    """A successful completion."""

    message: ChatMessage
    usage: CompletionUsage
    latency_ms: float
    model: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created: datetime = field(default_factory=datetime.now)
    success: bool = field(default=True, init=False)

    def to_dict(self) -> dict[str, Any]:
        """Convert to an OpenAI-style ``chat.completion`` object."""
        return {
            "id": self.id,
            "object": "chat.completion",
            "created": int(self.created.timestamp() * 1000),
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "message": self.message.to_dict(),
                    "finish_reason": "stop",
                }
            ],
            "usage": self.usage.to_dict(),
        }


@dataclass
class CompletionFailure:
    """A failed completion. Nothing is ever marked for automatic retry."""

    message: str
    auto_retry: bool = False
    success: bool = field(default=False, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "error", "message": self.message, "autoRetry": self.auto_retry}


CompletionResult = Union[CompletionSuccess, CompletionFailure]
