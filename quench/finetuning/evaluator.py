"""Evaluation of fine-tuned models against a dataset's test entries.

Each TEST entry's input messages are sent through the completion service and
the model's answer is stored next to the entry, together with an error
message when the completion failed and a score comparing the answer with the
entry's expected output.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
import structlog

from quench.core.completion import CompletionService
from quench.core.errors import ConfigurationError
from quench.finetuning.importer import DatasetEntry, DatasetStore
from quench.finetuning.registry import FineTuneRegistry
from quench.finetuning.splits import EntryType
from quench.llm.messages import ChatMessage, CompletionFailure, CompletionRequest

log = structlog.get_logger()


@dataclass
class EntryEvaluation:
    """Outcome of one test entry for one fine-tune."""

    fine_tune_id: str
    dataset_entry_id: str
    output: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    score: Optional[float] = None
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class EvaluationSummary:
    """Aggregate outcome of an evaluation run."""

    fine_tune_id: str
    dataset_id: str
    results: list[EntryEvaluation] = field(default_factory=list)

    @property
    def completed(self) -> int:
        return sum(1 for r in self.results if r.error_message is None)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.error_message is not None)

    @property
    def avg_score(self) -> float:
        scores = [r.score for r in self.results if r.score is not None]
        return sum(scores) / len(scores) if scores else 0.0


def score_output(expected: dict[str, Any], actual: ChatMessage) -> float:
    """Score a model answer against the expected assistant message.

    Function calls match when the names are equal and the arguments are
    equal as JSON (or as text when either side is not valid JSON). Content
    matches when the stripped texts are equal.

    Returns:
        1.0 for a match, 0.0 otherwise
    """
    expected_call = expected.get("function_call")
    if expected_call or actual.function_call is not None:
        if not expected_call or actual.function_call is None:
            return 0.0
        if expected_call.get("name") != actual.function_call.name:
            return 0.0
        return 1.0 if _same_arguments(
            expected_call.get("arguments") or "", actual.function_call.arguments
        ) else 0.0

    expected_content = (expected.get("content") or "").strip()
    return 1.0 if expected_content == (actual.content or "").strip() else 0.0


def _same_arguments(expected: str, actual: str) -> bool:
    try:
        return json.loads(expected) == json.loads(actual)
    except ValueError:
        return expected.strip() == actual.strip()


class FineTuneEvaluator:
    """Runs a fine-tune over a dataset's test entries and stores the results."""

    def __init__(
        self,
        service: CompletionService,
        registry: FineTuneRegistry,
        datasets: DatasetStore,
        concurrency: int = 4,
        timeout: float = 120.0,
    ):
        """Initialize the evaluator.

        Args:
            service: Completion service used to query the model
            registry: Fine-tune registry
            datasets: Dataset store holding the test entries
            concurrency: Maximum completions in flight
            timeout: Timeout per entry in seconds
        """
        self.service = service
        self.registry = registry
        self.datasets = datasets
        self.concurrency = max(1, concurrency)
        self.timeout = timeout

    async def evaluate(self, slug: str, dataset_id: str) -> EvaluationSummary:
        """Evaluate a fine-tune on every TEST entry of a dataset.

        Raises:
            ConfigurationError: If the fine-tune does not exist
        """
        fine_tune = await self.registry.get_by_slug(slug)
        if fine_tune is None:
            raise ConfigurationError("The model does not exist")

        entries = await self.datasets.list_entries(dataset_id, EntryType.TEST)
        log.info("evaluation_started", slug=slug, dataset_id=dataset_id, entries=len(entries))

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(entry: DatasetEntry) -> EntryEvaluation:
            async with semaphore:
                return await self._evaluate_entry(fine_tune.id, slug, entry)

        with structlog.contextvars.bound_contextvars(slug=slug, dataset_id=dataset_id):
            results = await asyncio.gather(*(run(entry) for entry in entries))
        await self._save_results(results)

        summary = EvaluationSummary(fine_tune.id, dataset_id, list(results))
        log.info(
            "evaluation_complete",
            slug=slug,
            completed=summary.completed,
            failed=summary.failed,
            avg_score=round(summary.avg_score, 3),
        )
        return summary

    async def _evaluate_entry(
        self, fine_tune_id: str, slug: str, entry: DatasetEntry
    ) -> EntryEvaluation:
        result = EntryEvaluation(fine_tune_id=fine_tune_id, dataset_entry_id=entry.id)
        try:
            messages = [ChatMessage.from_dict(m) for m in entry.messages]
        except ValueError as e:
            result.error_message = f"Invalid input messages: {e}"
            return result

        request = CompletionRequest(model=slug, messages=messages)
        try:
            completion = await asyncio.wait_for(self.service.complete(request), self.timeout)
        except asyncio.TimeoutError:
            log.warning("evaluation_entry_timeout", entry_id=entry.id, timeout=self.timeout)
            result.error_message = f"Timed out after {self.timeout} seconds"
            return result

        if isinstance(completion, CompletionFailure):
            result.error_message = completion.message
            return result

        result.output = completion.message.to_dict()
        result.score = score_output(entry.output, completion.message)
        return result

    async def _save_results(self, results: list[EntryEvaluation]) -> None:
        async with self.registry.db.get_connection() as conn:
            await conn.executemany(
                """
                INSERT INTO fine_tune_test_entries
                (fine_tune_id, dataset_entry_id, output_json, error_message, score, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (fine_tune_id, dataset_entry_id) DO UPDATE SET
                    output_json = excluded.output_json,
                    error_message = excluded.error_message,
                    score = excluded.score,
                    updated_at = excluded.updated_at
                """,
                [
                    (
                        r.fine_tune_id,
                        r.dataset_entry_id,
                        json.dumps(r.output) if r.output is not None else None,
                        r.error_message,
                        r.score,
                        r.updated_at.isoformat(),
                    )
                    for r in results
                ],
            )
            await conn.commit()

    async def get_results(self, fine_tune_id: str) -> list[EntryEvaluation]:
        """Get stored results of a fine-tune."""
        async with self.registry.db.get_connection() as conn:
            async with conn.execute(
                "SELECT * FROM fine_tune_test_entries WHERE fine_tune_id = ?",
                (fine_tune_id,),
            ) as cursor:
                return [
                    EntryEvaluation(
                        fine_tune_id=row["fine_tune_id"],
                        dataset_entry_id=row["dataset_entry_id"],
                        output=json.loads(row["output_json"]) if row["output_json"] else None,
                        error_message=row["error_message"],
                        score=row["score"],
                        updated_at=datetime.fromisoformat(row["updated_at"]),
                    )
                    async for row in cursor
                ]
