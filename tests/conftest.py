"""Shared test fixtures."""

import pytest
import random
import tempfile
from pathlib import Path
from unittest.mock import Mock

import httpx


@pytest.fixture
def temp_dir():
    """Temporary directory for tests."""
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def db(temp_dir):
    """Test database."""
    from quench.persistence.database import Database

    return Database(temp_dir / "test.db")


@pytest.fixture
def registry(db):
    """Fine-tune registry on the test database."""
    from quench.finetuning.registry import FineTuneRegistry

    return FineTuneRegistry(db)


@pytest.fixture
def dataset_store(db):
    """Dataset store on the test database."""
    from quench.finetuning.importer import DatasetStore

    return DatasetStore(db)


class FakeTokenCounter:
    """Counts whitespace-separated words instead of real tokens."""

    def __init__(self):
        self.counted_messages = []

    def count_tokens(self, text):
        return len(text.split()) if text else 0

    def count_input_tokens(self, messages):
        self.counted_messages.append(list(messages))
        return sum(self.count_tokens(m.content or "") for m in messages)


@pytest.fixture
def token_counter():
    """Deterministic token counter."""
    return FakeTokenCounter()


@pytest.fixture
def config(temp_dir):
    """Test configuration."""
    from quench.config import QuenchConfig

    return QuenchConfig(data_dir=temp_dir)


class RecordingTransport(httpx.MockTransport):
    """Mock transport that records every request it receives."""

    def __init__(self, handler):
        self.requests = []

        def record(request):
            self.requests.append(request)
            return handler(request)

        super().__init__(record)

    @property
    def urls(self):
        return [str(r.url) for r in self.requests]


@pytest.fixture
def make_router():
    """Build an InferenceRouter over a recording mock transport.

    ``start`` fixes the endpoint index the router picks first.
    """
    from quench.llm.router import InferenceRouter

    def make(handler, start=0):
        transport = RecordingTransport(handler)
        client = httpx.AsyncClient(transport=transport)
        rng = Mock(spec=random.Random)
        rng.randrange.return_value = start
        return InferenceRouter(client=client, rng=rng), transport

    return make


class StrictEncoding:
    """Stand-in for a tiktoken encoding, splitting on whitespace.

    Like tiktoken, it refuses special-token text unless the caller allows it.
    """

    def encode(self, text, *, allowed_special=frozenset(), disallowed_special="all"):
        if disallowed_special == "all" and "<|endoftext|>" in text:
            raise ValueError(
                "Encountered text corresponding to disallowed special token '<|endoftext|>'"
            )
        return text.split()


@pytest.fixture
def offline_encoding(mocker):
    """Serve TiktokenCounter a local encoding instead of downloading one."""
    return mocker.patch(
        "quench.llm.tokens.tiktoken.get_encoding", return_value=StrictEncoding()
    )
