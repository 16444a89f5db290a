"""Prompt templating for fine-tuned models.

Fine-tuned models are trained on a single instruction/response string rather
than structured chat messages. Pruning rules are applied to the message text
first so boilerplate that was stripped from training data is stripped from
live requests too.
"""

import json
from dataclasses import replace
from typing import Sequence
import structlog

from quench.core.errors import TemplatingError
from quench.llm.messages import ChatMessage, CompletionRequest

log = structlog.get_logger()

INSTRUCTION_HEADER = "### Instruction:"
RESPONSE_HEADER = "### Response:"


def prune_messages(
    messages: Sequence[ChatMessage], strings_to_prune: Sequence[str]
) -> list[ChatMessage]:
    """Remove pruning strings from message content.

    Rules are applied in order, each removing every occurrence. Messages whose
    content is the empty string and that carry no function call are dropped;
    messages with no content at all (None) are kept. The input messages are
    not modified.

    Args:
        messages: Messages from the request
        strings_to_prune: Literal strings, in rule order

    Returns:
        New list of pruned messages
    """
    pruned = []
    for message in messages:
        content = message.content
        if content:
            for text in strings_to_prune:
                if text:
                    content = content.replace(text, "")
        pruned.append(replace(message, content=content))

    return [m for m in pruned if m.content != "" or m.function_call is not None]


def serialize_messages(messages: Sequence[ChatMessage]) -> str:
    """Serialize messages to the JSON array embedded in the prompt."""
    return json.dumps([m.to_dict() for m in messages], ensure_ascii=False, separators=(",", ":"))


def template_prompt(request: CompletionRequest, strings_to_prune: Sequence[str]) -> str:
    """Build the templated prompt for a request.

    Args:
        request: The completion request
        strings_to_prune: Pruning rule strings for the request's model

    Returns:
        ``"### Instruction:\\n{messages}\\n### Response:"``

    Raises:
        TemplatingError: If the messages cannot be serialized
    """
    pruned = prune_messages(request.messages, strings_to_prune)

    try:
        serialized = serialize_messages(pruned)
    except (TypeError, ValueError) as e:
        log.warning("prompt_serialization_failed", model=request.model, error=str(e))
        raise TemplatingError("Failed to generate prompt") from e

    prompt = f"{INSTRUCTION_HEADER}\n{serialized}\n{RESPONSE_HEADER}"

    log.debug(
        "prompt_templated",
        model=request.model,
        messages=len(request.messages),
        kept=len(pruned),
        rules=len(strings_to_prune),
    )
    return prompt
