"""Token counting used for usage reporting."""

from typing import Protocol, Sequence

import tiktoken

from quench.llm.messages import ChatMessage

# Per-message overhead of the chat format (role markers and separators)
TOKENS_PER_MESSAGE = 3
# Tokens that prime the assistant reply
TOKENS_PER_REPLY = 3


class TokenCounter(Protocol):
    """Counts tokens for prompts and completions."""

    def count_input_tokens(self, messages: Sequence[ChatMessage]) -> int:
        ...

    def count_tokens(self, text: str) -> int:
        ...


class TiktokenCounter:
    """Token counter backed by a tiktoken encoding."""

    def __init__(self, encoding_name: str = "cl100k_base"):
        self.encoding_name = encoding_name
        self._encoding = tiktoken.get_encoding(encoding_name)

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        # Special-token strings in user text are counted as plain text
        return len(self._encoding.encode(text, disallowed_special=()))

    def count_input_tokens(self, messages: Sequence[ChatMessage]) -> int:
        total = TOKENS_PER_REPLY
        for message in messages:
            total += TOKENS_PER_MESSAGE
            total += self.count_tokens(message.role)
            total += self.count_tokens(message.content or "")
            if message.name:
                total += self.count_tokens(message.name)
            if message.function_call is not None:
                total += self.count_tokens(message.function_call.name)
                total += self.count_tokens(message.function_call.arguments)
        return total
