"""Quench - completions and evaluation for fine-tuned models.

Routes chat completion requests to the inference servers of fine-tuned
models, and imports datasets with a self-correcting train/test split.
"""

__version__ = "0.3.0"

from quench.config import QuenchConfig
from quench.core.completion import CompletionService
from quench.llm.messages import ChatMessage, CompletionRequest

__all__ = [
    "__version__",
    "ChatMessage",
    "CompletionRequest",
    "CompletionService",
    "QuenchConfig",
]
