"""Tests for CLI commands."""

import asyncio
import json
import re
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from quench.cli import cli
from quench.core.completion import CompletionService
from quench.finetuning.importer import DatasetStore
from quench.finetuning.registry import FineTuneRegistry
from quench.llm.messages import (
    ChatMessage,
    CompletionFailure,
    CompletionSuccess,
    CompletionUsage,
    FunctionCall,
)
from quench.persistence.database import Database


@pytest.fixture(autouse=True)
def quiet_logging(mocker):
    """Keep log handlers off the runner's streams."""
    return mocker.patch("quench.cli.setup_logging")


@pytest.fixture
def config_file(temp_dir):
    path = temp_dir / "quench.toml"
    path.write_text(f'data_dir = "{temp_dir}"\n')
    return str(path)


@pytest.fixture
def run(config_file):
    """Invoke the CLI against the temp config."""
    runner = CliRunner()

    def invoke(*args):
        return runner.invoke(cli, ["--config", config_file, *args])

    return invoke


@pytest.fixture
def database(temp_dir):
    return Database(temp_dir / "quench.db")


def test_version():
    result = CliRunner().invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert "0.3.0" in result.output


class TestFineTuneCommands:
    def test_create_and_list(self, run):
        result = run("finetune", "create", "weather", "-b", "llama-2-7b", "--url", "http://gpu-1")
        assert result.exit_code == 0
        assert "Registered weather" in result.output

        result = run("finetune", "list")
        assert result.exit_code == 0
        assert "weather" in result.output
        assert "llama-2-7b" in result.output

    def test_list_empty(self, run):
        result = run("finetune", "list")

        assert result.exit_code == 0
        assert "No fine-tuned models found" in result.output

    def test_duplicate_create_fails(self, run):
        run("finetune", "create", "weather", "-b", "llama-2-7b")

        result = run("finetune", "create", "weather", "-b", "llama-2-7b")

        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_add_url(self, run, database):
        run("finetune", "create", "weather", "-b", "llama-2-7b")

        result = run("finetune", "add-url", "weather", "http://gpu-2")

        assert result.exit_code == 0
        endpoints = asyncio.run(FineTuneRegistry(database).get_endpoints("weather"))
        assert endpoints == ["http://gpu-2"]

    def test_add_url_unknown_model(self, run):
        result = run("finetune", "add-url", "missing", "http://gpu-2")

        assert result.exit_code == 1
        assert "not found" in result.output


class TestPruneCommands:
    def test_add_list_delete(self, run, database):
        run("finetune", "create", "weather", "-b", "llama-2-7b")

        result = run("prune", "add", "weather", "BOILERPLATE")
        assert result.exit_code == 0
        rule_id = re.search(r"pruning rule (\S+)", result.output).group(1)

        result = run("prune", "list", "weather")
        assert result.exit_code == 0
        assert "BOILERPLATE" in result.output

        result = run("prune", "delete", rule_id)
        assert result.exit_code == 0

        fine_tune = asyncio.run(FineTuneRegistry(database).get_by_slug("weather"))
        assert asyncio.run(FineTuneRegistry(database).get_pruning_rules(fine_tune.id)) == []

    def test_add_to_unknown_model(self, run):
        result = run("prune", "add", "missing", "text")

        assert result.exit_code == 1

    def test_delete_unknown_rule(self, run):
        result = run("prune", "delete", "nope")

        assert result.exit_code == 1


class TestDatasetCommands:
    def test_import_and_stats(self, run, database, temp_dir):
        dataset = asyncio.run(DatasetStore(database).create_dataset("weather", 0.8))
        rows = temp_dir / "rows.jsonl"
        rows.write_text(
            "\n".join(
                json.dumps({"input": {"messages": [{"role": "user", "content": f"q{i}"}]}})
                for i in range(10)
            )
        )

        result = run("dataset", "import", dataset.id, str(rows))
        assert result.exit_code == 0
        assert "Imported 10 rows" in result.output
        assert "8 train, 2 test" in result.output

        result = run("dataset", "stats", dataset.id)
        assert result.exit_code == 0
        assert "Train: 8" in result.output
        assert "Test: 2" in result.output

    def test_import_bad_file(self, run, database, temp_dir):
        dataset = asyncio.run(DatasetStore(database).create_dataset("weather"))
        rows = temp_dir / "rows.jsonl"
        rows.write_text("{broken\n")

        result = run("dataset", "import", dataset.id, str(rows))

        assert result.exit_code == 1
        assert "line 1" in result.output

    def test_create_rejects_bad_ratio(self, run):
        result = run("dataset", "create", "weather", "--ratio", "2")

        assert result.exit_code == 1

    def test_stats_unknown_dataset(self, run):
        result = run("dataset", "stats", "missing")

        assert result.exit_code == 1


class TestCompleteCommand:
    @pytest.fixture(autouse=True)
    def no_tokenizer(self, mocker):
        return mocker.patch("quench.cli.TiktokenCounter")

    def test_function_call_output(self, run):
        success = CompletionSuccess(
            message=ChatMessage(
                role="assistant",
                function_call=FunctionCall(name="lookup_weather", arguments='{"city":"Paris"}'),
            ),
            usage=CompletionUsage(12, 5),
            latency_ms=42.0,
        )

        with patch.object(CompletionService, "complete", new_callable=AsyncMock) as mock_complete:
            mock_complete.return_value = success
            result = run("complete", "quench:weather", "-m", "user:Weather in Paris?")

        assert result.exit_code == 0
        assert "lookup_weather" in result.output
        assert '"city": "Paris"' in result.output
        request = mock_complete.call_args.args[0]
        assert request.model == "quench:weather"
        assert request.messages == [ChatMessage(role="user", content="Weather in Paris?")]

    def test_json_output(self, run):
        success = CompletionSuccess(
            message=ChatMessage(role="assistant", content="Sunny"),
            usage=CompletionUsage(3, 1),
            latency_ms=1.0,
        )

        with patch.object(CompletionService, "complete", new_callable=AsyncMock) as mock_complete:
            mock_complete.return_value = success
            result = run("complete", "weather", "-m", "user:hi", "--json")

        assert result.exit_code == 0
        assert '"object": "chat.completion"' in result.output

    def test_failure_exit_code(self, run):
        with patch.object(CompletionService, "complete", new_callable=AsyncMock) as mock_complete:
            mock_complete.return_value = CompletionFailure(message="The model does not exist")
            result = run("complete", "missing", "-m", "user:hi")

        assert result.exit_code == 1
        assert "The model does not exist" in result.output

    def test_request_file(self, run, temp_dir):
        request_file = temp_dir / "request.json"
        request_file.write_text(
            json.dumps({"messages": [{"role": "user", "content": "hi"}], "max_tokens": 32})
        )

        with patch.object(CompletionService, "complete", new_callable=AsyncMock) as mock_complete:
            mock_complete.return_value = CompletionFailure(message="x")
            run("complete", "weather", "-f", str(request_file), "--temperature", "0.7")

        request = mock_complete.call_args.args[0]
        assert request.model == "weather"
        assert request.max_tokens == 32
        assert request.temperature == 0.7

    def test_requires_messages(self, run):
        result = run("complete", "weather")

        assert result.exit_code == 2

    def test_bad_message_format(self, run):
        result = run("complete", "weather", "-m", "no separator")

        assert result.exit_code == 2


def test_evaluate_unknown_model(run, mocker):
    mocker.patch("quench.cli.TiktokenCounter")

    result = run("evaluate", "missing", "ds")

    assert result.exit_code == 1
    assert "does not exist" in result.output


def test_doctor(run):
    result = run("doctor")

    assert result.exit_code == 0
    assert "Configuration OK" in result.output
