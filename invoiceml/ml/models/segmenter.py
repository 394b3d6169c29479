"""Customer segmentation.

A small dense classifier assigns each customer to one of ``k`` segments from
four spending features (total spent, invoice count, average invoice value,
recency).

Two label sources are supported:

- ``round_robin`` (default): customer ``i`` is labelled ``i mod k``. The
  labels carry no information about the customer, so the network learns an
  arbitrary partition. Kept for compatibility with existing dashboards.
- ``kmeans``: labels come from scikit-learn ``KMeans`` fitted on the same
  normalized features, so segments group customers with similar spending.
"""

import asyncio
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import numpy as np
import pandas as pd
import torch
import torch.nn.functional as F
from sklearn.cluster import KMeans
from torch import nn

from invoiceml.exceptions import InsufficientDataError, NotTrainedError, ValidationError
from invoiceml.ml.config import SEGMENT_LABELING_STRATEGIES
from invoiceml.ml.features import CustomerAggregate, FeatureExtractor, customer_matrix
from invoiceml.ml.records import InvoiceRecord
from invoiceml.ml.runtime import (
    LoggingCallback,
    ProgressCallback,
    ProgressFn,
    TrainableNetwork,
    TrainingHistory,
)
from invoiceml.utils.logging import LogPerformance, get_logger

logger = get_logger(__name__)

MODEL_NAME = "customer_segmenter"


class SegmentClassifierNetwork(TrainableNetwork):
    """Dense(hidden, relu) → Dense(k) with softmax applied at prediction time."""

    name = MODEL_NAME

    def __init__(self, *, segments: int, hidden_units: int = 10, **kwargs: Any):
        super().__init__(**kwargs)
        self.segments = segments
        self.hidden_units = hidden_units

    def build_module(self) -> nn.Module:
        module = nn.Sequential(
            nn.Linear(4, self.hidden_units),
            nn.ReLU(),
            nn.Linear(self.hidden_units, self.segments),
        )
        for layer in module:
            if isinstance(layer, nn.Linear):
                nn.init.xavier_uniform_(layer.weight)
                nn.init.zeros_(layer.bias)
        return module

    def compute_loss(self, outputs: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
        return F.cross_entropy(outputs, targets)

    def batch_metrics(self, outputs: torch.Tensor, targets: torch.Tensor) -> dict[str, float]:
        accuracy = (outputs.argmax(dim=1) == targets).float().mean().item()
        return {"accuracy": accuracy}

    def prepare_targets(self, targets: Any) -> torch.Tensor:
        return torch.as_tensor(np.asarray(targets), dtype=torch.long).reshape(-1)

    def transform_output(self, outputs: torch.Tensor) -> torch.Tensor:
        return torch.softmax(outputs, dim=1)


@dataclass
class SegmentedCustomer:
    """A customer with its predicted segment."""

    name: str
    total_spent: float
    invoice_count: int
    avg_invoice_value: float
    unique_item_count: int
    days_since_last_purchase: int | None
    last_purchase: datetime | None
    segment: int
    confidence: float

    @classmethod
    def from_aggregate(
        cls, customer: CustomerAggregate, segment: int, confidence: float
    ) -> "SegmentedCustomer":
        return cls(
            name=customer.name,
            total_spent=customer.total_spent,
            invoice_count=customer.invoice_count,
            avg_invoice_value=customer.avg_invoice_value,
            unique_item_count=customer.unique_item_count,
            days_since_last_purchase=customer.days_since_last_purchase,
            last_purchase=customer.last_purchase,
            segment=segment,
            confidence=confidence,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "total_spent": float(self.total_spent),
            "invoice_count": self.invoice_count,
            "avg_invoice_value": float(self.avg_invoice_value),
            "unique_item_count": self.unique_item_count,
            "days_since_last_purchase": self.days_since_last_purchase,
            "last_purchase": self.last_purchase.isoformat() if self.last_purchase else None,
            "segment": self.segment,
            "confidence": float(self.confidence),
        }


def round_robin_labels(count: int, segments: int) -> np.ndarray:
    return np.arange(count) % segments


def kmeans_labels(features: np.ndarray, segments: int, seed: int) -> np.ndarray:
    """Cluster ids from KMeans on the normalized customer features."""
    kmeans = KMeans(n_clusters=segments, random_state=seed, n_init=10)
    return kmeans.fit_predict(features.astype(np.float64))


class CustomerSegmenter:
    """Groups customers into ``k`` segments.

    Example:
        >>> segmenter = CustomerSegmenter(labeling="kmeans")
        >>> await segmenter.train(invoices, k=3)
        >>> for customer in await segmenter.predict_segments():
        ...     print(customer.name, customer.segment)
    """

    def __init__(
        self,
        epochs: int = 30,
        learning_rate: float = 0.01,
        hidden_units: int = 10,
        labeling: str = "round_robin",
        validation_split: float = 0.2,
        batch_size: int = 16,
        seed: int = 42,
    ):
        if labeling not in SEGMENT_LABELING_STRATEGIES:
            raise ValidationError(
                f"Unknown segment labeling '{labeling}'",
                field="labeling",
                value=labeling,
                constraint=f"one of {list(SEGMENT_LABELING_STRATEGIES)}",
            )

        self.epochs = epochs
        self.learning_rate = learning_rate
        self.hidden_units = hidden_units
        self.labeling = labeling
        self.validation_split = validation_split
        self.batch_size = batch_size
        self.seed = seed

        self.extractor = FeatureExtractor()
        self.network: SegmentClassifierNetwork | None = None
        self.history: TrainingHistory | None = None
        self.customers: list[CustomerAggregate] = []
        self.segments = 0
        self.fitted_ = False
        self._stop_event = threading.Event()

    @property
    def trained(self) -> bool:
        return self.fitted_

    def request_stop(self) -> None:
        self._stop_event.set()

    async def train(
        self,
        invoices: Sequence[InvoiceRecord],
        k: int = 3,
        progress_callback: ProgressFn | None = None,
        reference_time: datetime | None = None,
    ) -> TrainingHistory:
        """Aggregate customers and train the segment classifier.

        Args:
            invoices: Invoice records
            k: Number of segments
            progress_callback: Called with (percent, logs) after each epoch
            reference_time: Instant recency is measured from (default: now)

        Returns:
            TrainingHistory

        Raises:
            InsufficientDataError: If there are fewer customers than segments
        """
        self._stop_event.clear()
        return await asyncio.to_thread(
            self._train_sync, list(invoices), k, progress_callback, reference_time
        )

    def _train_sync(
        self,
        invoices: list[InvoiceRecord],
        k: int,
        progress_callback: ProgressFn | None,
        reference_time: datetime | None,
    ) -> TrainingHistory:
        if k < 2:
            raise ValidationError("At least two segments are required", field="k", value=k)

        aggregates = self.extractor.aggregate_customers(invoices, reference_time=reference_time)
        customers = list((aggregates or {}).values())
        if len(customers) < k:
            raise InsufficientDataError(
                "Not enough customers for segmentation",
                model=MODEL_NAME,
                required=k,
                available=len(customers),
            )

        features = customer_matrix(customers)
        if self.labeling == "kmeans":
            labels = kmeans_labels(features, k, self.seed)
        else:
            labels = round_robin_labels(len(customers), k)

        network = SegmentClassifierNetwork(
            segments=k,
            hidden_units=self.hidden_units,
            learning_rate=self.learning_rate,
            seed=self.seed,
            stop_event=self._stop_event,
        ).build()

        callbacks = [LoggingCallback(MODEL_NAME)]
        if progress_callback is not None:
            callbacks.append(ProgressCallback(progress_callback))

        logger.info(
            "training_segmenter",
            customers=len(customers),
            segments=k,
            labeling=self.labeling,
        )

        with LogPerformance("segmenter_training", logger):
            history = network.fit(
                features,
                labels,
                epochs=self.epochs,
                batch_size=self.batch_size,
                validation_split=self.validation_split,
                callbacks=callbacks,
            )

        self.history = history
        if history.interrupted:
            network.dispose()
            logger.warning("segmenter_training_discarded", epochs_run=history.epochs_run)
            return history

        if self.network is not None:
            self.network.dispose()
        self.network = network
        self.customers = customers
        self.segments = k
        self.fitted_ = True

        logger.info("segmenter_trained", epochs_run=history.epochs_run, segments=k)
        return history

    async def predict_segments(self) -> list[SegmentedCustomer]:
        """Segment of every customer seen during training, in first-seen order.

        Raises:
            NotTrainedError: If the model was never trained
        """
        if not self.fitted_ or self.network is None:
            raise NotTrainedError(
                "Model must be trained before use",
                model=MODEL_NAME,
                attempted_action="predict_segments",
            )
        return await asyncio.to_thread(self._predict_sync, self.network)

    def _predict_sync(self, network: SegmentClassifierNetwork) -> list[SegmentedCustomer]:
        probabilities = network.predict(customer_matrix(self.customers))
        segments = probabilities.argmax(axis=1)

        segmented = [
            SegmentedCustomer.from_aggregate(
                customer,
                segment=int(segment),
                confidence=float(probabilities[i, segment]),
            )
            for i, (customer, segment) in enumerate(zip(self.customers, segments))
        ]
        logger.debug("segments_predicted", customers=len(segmented))
        return segmented

    def summary(self) -> dict[str, Any] | None:
        if self.network is None:
            return None
        return self.network.summary()


def summarize_segments(segmented: Sequence[SegmentedCustomer]) -> list[dict[str, Any]]:
    """Customer count, total and average spending per segment.

    Returns:
        One dict per non-empty segment, ordered by segment id
    """
    if not segmented:
        return []

    frame = pd.DataFrame(
        {
            "segment": [customer.segment for customer in segmented],
            "total_spent": [customer.total_spent for customer in segmented],
        }
    )
    grouped = (
        frame.groupby("segment")["total_spent"]
        .agg(customer_count="count", total_spent="sum", avg_spent="mean")
        .reset_index()
        .sort_values("segment")
    )

    return [
        {
            "segment": int(row.segment),
            "customer_count": int(row.customer_count),
            "total_spent": float(row.total_spent),
            "avg_spent": float(row.avg_spent),
        }
        for row in grouped.itertuples(index=False)
    ]
