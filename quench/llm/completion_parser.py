"""Parser for fine-tuned model output.

Fine-tuned models emit function calls as plain text using two tags::

    <function>lookup_weather<arguments>{"city": "Paris"}

Anything that does not start with the function tag is ordinary content.
"""

import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
import structlog

from quench.core.errors import MalformedResponseError
from quench.llm.messages import ChatMessage, FunctionCall
from quench.llm.templating import RESPONSE_HEADER

log = structlog.get_logger()

FUNCTION_CALL_TAG = "<function>"
FUNCTION_ARGS_TAG = "<arguments>"


class InferenceResponse(BaseModel):
    """Response body returned by an inference endpoint."""

    model_config = ConfigDict(extra="ignore")

    text: list[str] = Field(min_length=1)


def parse_completion(text: str) -> ChatMessage:
    """Convert raw completion text into an assistant message.

    Args:
        text: Completion text following the response header

    Returns:
        Assistant message carrying either content or a function call
    """
    if not text.startswith(FUNCTION_CALL_TAG):
        return ChatMessage(role="assistant", content=text)

    body = text[len(FUNCTION_CALL_TAG):]
    name, tag, arguments = body.partition(FUNCTION_ARGS_TAG)
    if not tag:
        log.debug("function_call_without_arguments", name=name)

    return ChatMessage(
        role="assistant",
        function_call=FunctionCall(name=name, arguments=arguments),
    )


def render_completion(message: ChatMessage) -> str:
    """Render an assistant message back into completion text."""
    if message.function_call is not None:
        call = message.function_call
        return f"{FUNCTION_CALL_TAG}{call.name}{FUNCTION_ARGS_TAG}{call.arguments}"
    return message.content or ""


def extract_completion(payload: Any) -> str:
    """Pull the completion text out of an inference response body.

    The endpoint echoes the prompt, so the completion is whatever follows the
    response header in the first returned text.

    Args:
        payload: Decoded JSON response body

    Returns:
        Stripped completion text

    Raises:
        MalformedResponseError: If the body has an unexpected shape or no
            completion follows the response header
    """
    try:
        response = InferenceResponse.model_validate(payload)
    except ValidationError as e:
        log.warning("inference_response_invalid", errors=e.error_count())
        raise _malformed(payload) from e

    parts = response.text[0].split(RESPONSE_HEADER)
    completion = parts[1].strip() if len(parts) > 1 else ""
    if not completion:
        raise _malformed(payload)

    return completion


def _malformed(payload: Any) -> MalformedResponseError:
    raw = _dump(payload)
    return MalformedResponseError(f"Unexpected response format from model: {raw}", payload=raw)


def _dump(payload: Any) -> str:
    try:
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        return str(payload)


def format_arguments(arguments: str) -> str:
    """Pretty-print function call arguments when they are valid JSON."""
    if not arguments:
        return ""
    try:
        parsed = json.loads(arguments)
    except ValueError:
        return arguments
    return json.dumps(parsed, indent=2, ensure_ascii=False)


def format_message(message: ChatMessage, score: Optional[float] = None) -> str:
    """Format a message for display.

    Function calls are shown as the function name followed by the arguments,
    pretty-printed if they parse as JSON and verbatim otherwise.
    """
    if message.function_call is not None:
        header = message.function_call.name
        if score is not None:
            header = f"{header} ({score:.0%})"
        arguments = format_arguments(message.function_call.arguments)
        return f"{header}\n{arguments}" if arguments else header

    content = message.content or ""
    if score is not None:
        return f"{content}\n({score:.0%})"
    return content
