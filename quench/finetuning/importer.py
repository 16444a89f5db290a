"""Dataset import with ratio-convergent train/test assignment.

This module provides functionality for:
- Reading rows to import from JSONL
- Creating datasets and counting their entries per partition
- Turning rows into dataset entries with split assignment and sort keys
- Inserting a batch atomically with the counts it was split against
"""

import json
import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional
import structlog

from quench.core.errors import DatasetImportError
from quench.finetuning.splits import EntryType, assign_split_types
from quench.persistence.database import Database

log = structlog.get_logger()

DEFAULT_TRAINING_RATIO = 0.8
DEFAULT_UPDATE_FREQUENCY = 1000
EMPTY_OUTPUT = {"role": "assistant", "content": ""}

ProgressCallback = Callable[[int], Awaitable[None]]


@dataclass
class RowToImport:
    """A row read from an import file.

    Attributes:
        messages: Input chat messages (OpenAI-style dicts)
        function_call: Requested function call setting, if any
        functions: Function definitions offered to the model, if any
        output: Expected assistant message, if any
    """

    messages: list[dict[str, Any]]
    function_call: Optional[Any] = None
    functions: Optional[list[dict[str, Any]]] = None
    output: Optional[dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RowToImport":
        """Create from ``{"input": {...}, "output": {...}}``."""
        input_data = data.get("input")
        if not isinstance(input_data, dict) or not isinstance(input_data.get("messages"), list):
            raise ValueError("row must have an input object with a messages list")
        return cls(
            messages=input_data["messages"],
            function_call=input_data.get("function_call"),
            functions=input_data.get("functions"),
            output=data.get("output"),
        )


@dataclass
class DatasetEntry:
    """A dataset entry as persisted."""

    dataset_id: str
    messages: list[dict[str, Any]]
    output: dict[str, Any]
    type: EntryType
    sort_key: str
    persistent_id: str
    function_call: Optional[Any] = None
    functions: Optional[list[dict[str, Any]]] = None
    input_tokens: int = 0
    output_tokens: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class Dataset:
    """A named collection of dataset entries."""

    name: str
    training_ratio: Optional[float] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)


def parse_rows_to_import(text: str) -> list[RowToImport]:
    """Parse JSONL import data.

    Args:
        text: One JSON object per line; blank lines are skipped

    Returns:
        Parsed rows in file order

    Raises:
        DatasetImportError: Naming the first line that cannot be read
    """
    rows = []
    for line_number, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            data = json.loads(line)
            if not isinstance(data, dict):
                raise ValueError("row must be a JSON object")
            rows.append(RowToImport.from_dict(data))
        except ValueError as e:
            raise DatasetImportError(f"Invalid row on line {line_number}: {e}") from e
    return rows


async def prepare_entries_for_import(
    dataset_id: str,
    existing_train: int,
    existing_test: int,
    rows: list[RowToImport],
    training_ratio: float = DEFAULT_TRAINING_RATIO,
    batch_timestamp: Optional[int] = None,
    rng: Optional[random.Random] = None,
    update_callback: Optional[ProgressCallback] = None,
    update_frequency: int = DEFAULT_UPDATE_FREQUENCY,
) -> list[DatasetEntry]:
    """Build dataset entries for a batch of rows.

    Args:
        dataset_id: Target dataset
        existing_train: TRAIN entries already in the dataset
        existing_test: TEST entries already in the dataset
        rows: Rows to import
        training_ratio: Target fraction of TRAIN entries
        batch_timestamp: Millisecond timestamp shared by the batch's sort keys
        rng: Random source for the split order
        update_callback: Awaited with the number of rows prepared so far
        update_frequency: Rows between progress callbacks

    Returns:
        One entry per row, in row order
    """
    types = assign_split_types(existing_train, existing_test, len(rows), training_ratio, rng)
    batch_timestamp = batch_timestamp if batch_timestamp is not None else int(time.time() * 1000)

    entries = []
    for i, (row, entry_type) in enumerate(zip(rows, types)):
        if update_callback and i % update_frequency == 0:
            await update_callback(i)

        persistent_id = str(uuid.uuid4())
        entries.append(
            DatasetEntry(
                dataset_id=dataset_id,
                messages=row.messages,
                function_call=row.function_call,
                functions=row.functions,
                output=row.output if row.output is not None else dict(EMPTY_OUTPUT),
                type=entry_type,
                sort_key=f"{batch_timestamp}-{persistent_id}",
                persistent_id=persistent_id,
            )
        )

    return entries


class DatasetStore:
    """Datasets and their entries in SQLite."""

    def __init__(self, database: Optional[Database] = None):
        self.db = database or Database()

    async def create_dataset(self, name: str, training_ratio: Optional[float] = None) -> Dataset:
        """Create a dataset.

        Raises:
            ValueError: If the training ratio is outside (0, 1]
        """
        if training_ratio is not None and not 0 < training_ratio <= 1:
            raise ValueError(f"Training ratio must be in (0, 1], got {training_ratio}")

        dataset = Dataset(name=name, training_ratio=training_ratio)
        async with self.db.get_connection() as conn:
            await conn.execute(
                "INSERT INTO datasets (id, name, training_ratio, created_at) VALUES (?, ?, ?, ?)",
                (dataset.id, dataset.name, dataset.training_ratio, dataset.created_at.isoformat()),
            )
            await conn.commit()

        log.info("dataset_created", dataset_id=dataset.id, name=name)
        return dataset

    async def get_dataset(self, dataset_id: str, conn=None) -> Optional[Dataset]:
        """Get a dataset by ID, or None if unknown."""
        if conn is None:
            async with self.db.get_connection() as conn:
                return await self.get_dataset(dataset_id, conn)

        async with conn.execute("SELECT * FROM datasets WHERE id = ?", (dataset_id,)) as cursor:
            row = await cursor.fetchone()
            if not row:
                return None
            return Dataset(
                id=row["id"],
                name=row["name"],
                training_ratio=row["training_ratio"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )

    async def count_entries(self, dataset_id: str, conn=None) -> dict[EntryType, int]:
        """Count a dataset's entries per partition."""
        if conn is None:
            async with self.db.get_connection() as conn:
                return await self.count_entries(dataset_id, conn)

        counts = {EntryType.TRAIN: 0, EntryType.TEST: 0}
        async with conn.execute(
            "SELECT type, COUNT(*) AS n FROM dataset_entries WHERE dataset_id = ? GROUP BY type",
            (dataset_id,),
        ) as cursor:
            async for row in cursor:
                counts[EntryType(row["type"])] = row["n"]
        return counts

    async def insert_entries(self, entries: list[DatasetEntry], conn) -> None:
        """Insert entries on an open connection (the caller commits)."""
        await conn.executemany(
            """
            INSERT INTO dataset_entries
            (id, dataset_id, messages_json, function_call_json, functions_json,
             output_json, input_tokens, output_tokens, type, sort_key, persistent_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    entry.id,
                    entry.dataset_id,
                    json.dumps(entry.messages),
                    json.dumps(entry.function_call) if entry.function_call is not None else None,
                    json.dumps(entry.functions) if entry.functions is not None else None,
                    json.dumps(entry.output),
                    entry.input_tokens,
                    entry.output_tokens,
                    entry.type.value,
                    entry.sort_key,
                    entry.persistent_id,
                )
                for entry in entries
            ],
        )

    async def list_entries(
        self,
        dataset_id: str,
        entry_type: Optional[EntryType] = None,
    ) -> list[DatasetEntry]:
        """List a dataset's entries ordered by sort key."""
        query = "SELECT * FROM dataset_entries WHERE dataset_id = ?"
        params: list[Any] = [dataset_id]
        if entry_type is not None:
            query += " AND type = ?"
            params.append(entry_type.value)
        query += " ORDER BY sort_key ASC"

        async with self.db.get_connection() as conn:
            async with conn.execute(query, params) as cursor:
                return [self._row_to_entry(row) async for row in cursor]

    def _row_to_entry(self, row) -> DatasetEntry:
        return DatasetEntry(
            id=row["id"],
            dataset_id=row["dataset_id"],
            messages=json.loads(row["messages_json"]),
            function_call=json.loads(row["function_call_json"]) if row["function_call_json"] else None,
            functions=json.loads(row["functions_json"]) if row["functions_json"] else None,
            output=json.loads(row["output_json"]),
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            type=EntryType(row["type"]),
            sort_key=row["sort_key"],
            persistent_id=row["persistent_id"],
        )


class DatasetImporter:
    """Imports rows into a dataset.

    The partition counts are read and the new entries inserted inside one
    write-locked transaction, so concurrent imports into the same dataset
    each split against the counts left by the previous one.
    """

    def __init__(
        self,
        store: DatasetStore,
        default_training_ratio: float = DEFAULT_TRAINING_RATIO,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.default_training_ratio = default_training_ratio
        self.rng = rng

    async def import_rows(
        self,
        dataset_id: str,
        rows: list[RowToImport],
        update_callback: Optional[ProgressCallback] = None,
        update_frequency: int = DEFAULT_UPDATE_FREQUENCY,
    ) -> list[DatasetEntry]:
        """Import rows into a dataset.

        Raises:
            DatasetImportError: If the dataset does not exist
            SplitConfigurationError: If the existing counts cannot reach the
                dataset's training ratio
        """
        async with self.store.db.transaction() as conn:
            dataset = await self.store.get_dataset(dataset_id, conn)
            if dataset is None:
                raise DatasetImportError(f"Dataset not found: {dataset_id}")

            counts = await self.store.count_entries(dataset_id, conn)
            training_ratio = (
                dataset.training_ratio
                if dataset.training_ratio is not None
                else self.default_training_ratio
            )

            entries = await prepare_entries_for_import(
                dataset_id,
                counts[EntryType.TRAIN],
                counts[EntryType.TEST],
                rows,
                training_ratio=training_ratio,
                rng=self.rng,
                update_callback=update_callback,
                update_frequency=update_frequency,
            )
            await self.store.insert_entries(entries, conn)

        log.info(
            "dataset_rows_imported",
            dataset_id=dataset_id,
            rows=len(entries),
            train=sum(1 for e in entries if e.type == EntryType.TRAIN),
            test=sum(1 for e in entries if e.type == EntryType.TEST),
            training_ratio=training_ratio,
        )
        return entries
