"""Fine-tuned model management for Quench.

Key components:

- registry: Fine-tuned models, their inference endpoints and pruning rules
- splits: Ratio-convergent train/test assignment
- importer: Dataset import into SQLite
- evaluator: Run a fine-tune over a dataset's test entries
"""

from quench.finetuning.registry import FineTuneRegistry, FineTune, PruningRule
from quench.finetuning.splits import EntryType, assign_split_types
from quench.finetuning.importer import (
    DatasetEntry,
    DatasetImporter,
    DatasetStore,
    RowToImport,
    parse_rows_to_import,
)
from quench.finetuning.evaluator import FineTuneEvaluator, EvaluationSummary

__all__ = [
    "FineTuneRegistry",
    "FineTune",
    "PruningRule",
    "EntryType",
    "assign_split_types",
    "DatasetEntry",
    "DatasetImporter",
    "DatasetStore",
    "RowToImport",
    "parse_rows_to_import",
    "FineTuneEvaluator",
    "EvaluationSummary",
]
