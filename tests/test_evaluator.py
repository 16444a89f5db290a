"""Tests for fine-tune evaluation."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from quench.core.errors import ConfigurationError
from quench.finetuning.evaluator import FineTuneEvaluator, score_output
from quench.finetuning.importer import DatasetImporter, RowToImport
from quench.llm.messages import (
    ChatMessage,
    CompletionFailure,
    CompletionSuccess,
    CompletionUsage,
    FunctionCall,
)


def success(message):
    return CompletionSuccess(message=message, usage=CompletionUsage(1, 1), latency_ms=1.0)


# ============================================================
# score_output
# ============================================================


def test_score_matching_function_call_ignores_json_formatting():
    expected = {
        "role": "assistant",
        "function_call": {"name": "lookup_weather", "arguments": '{"city": "Paris"}'},
    }
    actual = ChatMessage(
        role="assistant",
        function_call=FunctionCall(name="lookup_weather", arguments='{"city":"Paris"}'),
    )

    assert score_output(expected, actual) == 1.0


def test_score_wrong_function_name():
    expected = {"function_call": {"name": "lookup_weather", "arguments": "{}"}}
    actual = ChatMessage(role="assistant", function_call=FunctionCall(name="get_time", arguments="{}"))

    assert score_output(expected, actual) == 0.0


def test_score_function_call_versus_content():
    expected = {"role": "assistant", "content": "Sunny"}
    actual = ChatMessage(role="assistant", function_call=FunctionCall(name="lookup"))

    assert score_output(expected, actual) == 0.0


def test_score_content():
    expected = {"role": "assistant", "content": "Sunny "}

    assert score_output(expected, ChatMessage(role="assistant", content="Sunny")) == 1.0
    assert score_output(expected, ChatMessage(role="assistant", content="Rainy")) == 0.0


def test_score_non_json_arguments():
    expected = {"function_call": {"name": "f", "arguments": "not json"}}
    actual = ChatMessage(role="assistant", function_call=FunctionCall(name="f", arguments="not json"))

    assert score_output(expected, actual) == 1.0


# ============================================================
# FineTuneEvaluator
# ============================================================


@pytest.fixture
async def eval_dataset(dataset_store):
    """Dataset whose entries are all TEST entries."""
    dataset = await dataset_store.create_dataset("weather", training_ratio=1.0)
    # Import at ratio 1.0 (all TRAIN) and then move every entry to TEST
    rows = [
        RowToImport(
            messages=[{"role": "user", "content": city}],
            output={"role": "assistant", "content": f"Sunny in {city}"},
        )
        for city in ["Paris", "Oslo", "Lima"]
    ]
    importer = DatasetImporter(dataset_store)
    entries = await importer.import_rows(dataset.id, rows)
    async with dataset_store.db.get_connection() as conn:
        await conn.execute("UPDATE dataset_entries SET type = 'TEST' WHERE dataset_id = ?", (dataset.id,))
        await conn.commit()
    return dataset, entries


@pytest.fixture
def service():
    """Completion service stub answering by the user's city."""
    stub = MagicMock()

    async def complete(request):
        city = request.messages[0].content
        if city == "Lima":
            return CompletionFailure(message="Failed to query the model")
        return success(ChatMessage(role="assistant", content=f"Sunny in {city}"))

    stub.complete = AsyncMock(side_effect=complete)
    return stub


@pytest.mark.asyncio
async def test_evaluate_scores_and_stores(registry, dataset_store, service, eval_dataset):
    dataset, _ = eval_dataset
    fine_tune = await registry.create_fine_tune("weather", "llama-2-7b", ["http://gpu-1"])
    evaluator = FineTuneEvaluator(service, registry, dataset_store, concurrency=2)

    summary = await evaluator.evaluate("weather", dataset.id)

    assert summary.completed == 2
    assert summary.failed == 1
    assert summary.avg_score == 1.0
    assert service.complete.await_count == 3
    assert {c.args[0].model for c in service.complete.await_args_list} == {"weather"}

    stored = await evaluator.get_results(fine_tune.id)
    assert len(stored) == 3
    errors = [r.error_message for r in stored if r.error_message]
    assert errors == ["Failed to query the model"]


@pytest.mark.asyncio
async def test_evaluate_again_overwrites_results(registry, dataset_store, service, eval_dataset):
    dataset, _ = eval_dataset
    fine_tune = await registry.create_fine_tune("weather", "llama-2-7b", ["http://gpu-1"])
    evaluator = FineTuneEvaluator(service, registry, dataset_store)

    await evaluator.evaluate("weather", dataset.id)
    await evaluator.evaluate("weather", dataset.id)

    assert len(await evaluator.get_results(fine_tune.id)) == 3


@pytest.mark.asyncio
async def test_evaluate_skips_train_entries(registry, dataset_store, service):
    dataset = await dataset_store.create_dataset("train-only", training_ratio=1.0)
    await DatasetImporter(dataset_store).import_rows(
        dataset.id, [RowToImport(messages=[{"role": "user", "content": "Paris"}])]
    )
    await registry.create_fine_tune("weather", "llama-2-7b", ["http://gpu-1"])

    summary = await FineTuneEvaluator(service, registry, dataset_store).evaluate(
        "weather", dataset.id
    )

    assert summary.results == []
    service.complete.assert_not_awaited()


@pytest.mark.asyncio
async def test_evaluate_unknown_model(registry, dataset_store, service):
    evaluator = FineTuneEvaluator(service, registry, dataset_store)

    with pytest.raises(ConfigurationError):
        await evaluator.evaluate("missing", "ds")


@pytest.mark.asyncio
async def test_evaluate_entry_timeout(registry, dataset_store, eval_dataset):
    dataset, _ = eval_dataset
    await registry.create_fine_tune("weather", "llama-2-7b", ["http://gpu-1"])

    slow = MagicMock()

    async def hang(request):
        await asyncio.sleep(10)

    slow.complete = hang
    evaluator = FineTuneEvaluator(slow, registry, dataset_store, timeout=0.05)

    summary = await evaluator.evaluate("weather", dataset.id)

    assert summary.failed == 3
    assert all("Timed out" in r.error_message for r in summary.results)
