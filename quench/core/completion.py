"""Chat completions against fine-tuned models.

Ties the pipeline together: look up the model, template the prompt, send it
to an inference endpoint, parse the answer and count tokens. Every failure
comes back as a ``CompletionFailure``; nothing is raised to the caller except
cancellation.
"""

import time
from typing import TYPE_CHECKING, Optional, Protocol

import httpx
import structlog

from quench.core.errors import (
    ConfigurationError,
    MalformedResponseError,
    NetworkError,
    QuenchError,
    UnsupportedRequestError,
    classify_error,
)
from quench.llm.completion_parser import extract_completion, parse_completion
from quench.llm.messages import (
    CompletionFailure,
    CompletionRequest,
    CompletionResult,
    CompletionSuccess,
    CompletionUsage,
)
from quench.llm.router import InferenceRouter
from quench.llm.templating import template_prompt
from quench.llm.tokens import TokenCounter

if TYPE_CHECKING:
    from quench.finetuning.registry import FineTune

log = structlog.get_logger()

DEFAULT_MODEL_PREFIX = "quench:"


class FineTuneStore(Protocol):
    """Lookup of fine-tuned models and their pruning rules."""

    async def get_by_slug(self, slug: str) -> Optional["FineTune"]:
        ...

    async def get_pruning_rules(self, model_id: str) -> list[str]:
        ...


class CompletionService:
    """Runs chat completion requests against fine-tuned models."""

    def __init__(
        self,
        store: FineTuneStore,
        router: InferenceRouter,
        token_counter: TokenCounter,
        model_prefix: str = DEFAULT_MODEL_PREFIX,
    ):
        """Initialize the service.

        Args:
            store: Fine-tune lookup (endpoints and pruning rules)
            router: Router used to reach the inference endpoints
            token_counter: Counter used for usage reporting
            model_prefix: Optional prefix clients put in front of the slug
        """
        self.store = store
        self.router = router
        self.token_counter = token_counter
        self.model_prefix = model_prefix

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """Run one completion.

        Args:
            request: The completion request

        Returns:
            CompletionSuccess or CompletionFailure
        """
        start = time.perf_counter()
        try:
            success = await self._complete(request)
        except QuenchError as e:
            classified = classify_error(e)
            log.warning(
                "completion_failed",
                model=request.model,
                category=classified.category.value,
                error=e.message,
            )
            return CompletionFailure(message=e.message)
        except Exception as e:
            log.exception("completion_error", model=request.model, error=str(e))
            return CompletionFailure(message=str(e) or type(e).__name__)

        success.latency_ms = (time.perf_counter() - start) * 1000
        log.info(
            "completion_succeeded",
            model=request.model,
            prompt_tokens=success.usage.prompt_tokens,
            completion_tokens=success.usage.completion_tokens,
            latency_ms=round(success.latency_ms, 2),
        )
        return success

    async def _complete(self, request: CompletionRequest) -> CompletionSuccess:
        fine_tune = await self._resolve(request.model)

        if request.n and request.n > 1:
            raise UnsupportedRequestError("Multiple completions are not yet supported")
        if request.stream:
            raise UnsupportedRequestError("Streaming is not yet supported")

        strings_to_prune = await self.store.get_pruning_rules(fine_tune.id)
        prompt = template_prompt(request, strings_to_prune)

        body = {
            "prompt": prompt,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }

        try:
            response = await self.router.dispatch(fine_tune.inference_urls, body)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            log.error(
                "inference_request_failed",
                model=request.model,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise NetworkError("Failed to query the model", cause=e) from e

        completion_text = extract_completion(self._decode(response))
        message = parse_completion(completion_text)

        usage = CompletionUsage(
            prompt_tokens=self.token_counter.count_input_tokens(request.messages),
            completion_tokens=self.token_counter.count_tokens(completion_text),
        )
        return CompletionSuccess(message=message, usage=usage, latency_ms=0.0, model=request.model)

    async def _resolve(self, model: str) -> "FineTune":
        slug = model
        if self.model_prefix and slug.startswith(self.model_prefix):
            slug = slug[len(self.model_prefix):]

        fine_tune = await self.store.get_by_slug(slug)
        if fine_tune is None:
            raise ConfigurationError("The model does not exist")
        if not fine_tune.inference_urls:
            raise ConfigurationError("The model is not set up for inference")
        return fine_tune

    def _decode(self, response: httpx.Response):
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"Unexpected response format from model: {response.text}",
                payload=response.text,
            ) from e
