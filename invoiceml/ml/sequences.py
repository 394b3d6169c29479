"""Sliding-window sequence construction for the revenue forecaster."""

from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np

from invoiceml.ml.features import SEQUENCE_FEATURE_NAMES, FeatureVector

DEFAULT_WINDOW = 7
FEATURE_COUNT = len(SEQUENCE_FEATURE_NAMES)


@dataclass
class SequenceBatch:
    """Supervised pairs for time-series learning.

    Attributes:
        sequences: One window of normalized feature tuples per sample
        targets: Raw (unnormalized) total of the invoice following each window
        window: Window length used to build the batch
    """

    sequences: list[list[tuple[float, ...]]] = field(default_factory=list)
    targets: list[float] = field(default_factory=list)
    window: int = DEFAULT_WINDOW

    def __len__(self) -> int:
        return len(self.targets)

    @property
    def is_empty(self) -> bool:
        return len(self.targets) == 0

    @property
    def inputs(self) -> np.ndarray:
        """Sequences as a float32 array of shape (n, window, features)."""
        return np.asarray(self.sequences, dtype=np.float32).reshape(
            len(self.sequences), self.window, FEATURE_COUNT
        )

    @property
    def target_array(self) -> np.ndarray:
        """Targets as a float64 array of shape (n,)."""
        return np.asarray(self.targets, dtype=np.float64)


class SequenceBuilder:
    """Slices a chronological feature stream into (window, next total) pairs.

    Sample i covers vectors ``[i, i + window)`` and targets the raw total of
    vector ``i + window``, giving ``max(0, N - window)`` samples.

    Example:
        >>> batch = SequenceBuilder(window=7).build(features)
        >>> if batch.is_empty:
        ...     raise InsufficientDataError(...)
    """

    def __init__(self, window: int = DEFAULT_WINDOW):
        if window < 1:
            raise ValueError("window must be >= 1")
        self.window = window

    def build(self, features: Sequence[FeatureVector] | None) -> SequenceBatch:
        """Build the sequence/target pairs.

        Args:
            features: Chronologically sorted feature vectors (None is empty)

        Returns:
            SequenceBatch, empty when there are not more than ``window`` vectors
        """
        batch = SequenceBatch(window=self.window)
        if not features:
            return batch

        normalized = [vector.normalized() for vector in features]

        for end in range(self.window, len(features)):
            batch.sequences.append(normalized[end - self.window : end])
            batch.targets.append(features[end].total)

        return batch

    def last_window(self, features: Sequence[FeatureVector]) -> list[tuple[float, ...]]:
        """Normalized tuples of the most recent ``window`` vectors."""
        return [vector.normalized() for vector in features[-self.window :]]
