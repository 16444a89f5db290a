"""Train/test split assignment for imported dataset rows.

New rows are not assigned independently at the target ratio. Instead the
number of new TRAIN rows is chosen so that the dataset as a whole lands on
``floor(ratio * total)`` TRAIN rows, which keeps the overall ratio from
drifting across repeated imports. Only the order of the labels is random.
"""

import math
import random
from enum import Enum
from typing import Optional

from quench.core.errors import SplitConfigurationError


class EntryType(str, Enum):
    """Dataset partition of an entry."""

    TRAIN = "TRAIN"
    TEST = "TEST"


def split_counts(
    existing_train: int,
    existing_test: int,
    num_new_rows: int,
    training_ratio: float,
) -> tuple[int, int]:
    """Compute how many new rows go to each partition.

    Args:
        existing_train: TRAIN entries already in the dataset
        existing_test: TEST entries already in the dataset
        num_new_rows: Number of rows being imported
        training_ratio: Target fraction of TRAIN entries (0-1)

    Returns:
        ``(num_train, num_test)`` for the new rows

    Raises:
        SplitConfigurationError: If either count would be negative
    """
    new_total = existing_train + existing_test + num_new_rows
    num_train = math.floor(training_ratio * new_total) - existing_train
    num_test = num_new_rows - num_train

    if num_train < 0 or num_test < 0:
        raise SplitConfigurationError(
            f"Cannot split {num_new_rows} new rows at training ratio {training_ratio} "
            f"with {existing_train} TRAIN and {existing_test} TEST entries "
            f"(would add {num_train} TRAIN, {num_test} TEST)"
        )

    return num_train, num_test


def assign_split_types(
    existing_train: int,
    existing_test: int,
    num_new_rows: int,
    training_ratio: float,
    rng: Optional[random.Random] = None,
) -> list[EntryType]:
    """Assign a partition to each new row.

    Returns:
        One EntryType per new row, in row order
    """
    num_train, num_test = split_counts(
        existing_train, existing_test, num_new_rows, training_ratio
    )
    types = [EntryType.TRAIN] * num_train + [EntryType.TEST] * num_test
    (rng or random.Random()).shuffle(types)
    return types
