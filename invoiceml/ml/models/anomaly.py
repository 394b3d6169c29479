"""Invoice anomaly detection with a dense autoencoder.

The autoencoder learns to reconstruct four normalized amount features of an
invoice. Invoices whose reconstruction error exceeds a fixed threshold are
flagged as anomalous.
"""

import asyncio
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np
from torch import nn

from invoiceml.exceptions import InsufficientDataError, NotTrainedError
from invoiceml.ml.features import (
    ANOMALY_FEATURE_NAMES,
    AnomalyFeatures,
    FeatureExtractor,
    anomaly_matrix,
)
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

MODEL_NAME = "anomaly_detector"


class AutoencoderNetwork(TrainableNetwork):
    """4 → 8 → 4 → 8 → 4 dense autoencoder (MSE loss)."""

    name = MODEL_NAME

    def build_module(self) -> nn.Module:
        module = nn.Sequential(
            nn.Linear(4, 8),
            nn.ReLU(),
            nn.Linear(8, 4),
            nn.ReLU(),
            nn.Linear(4, 8),
            nn.ReLU(),
            nn.Linear(8, 4),
        )
        for layer in module:
            if isinstance(layer, nn.Linear):
                nn.init.xavier_uniform_(layer.weight)
                nn.init.zeros_(layer.bias)
        return module


@dataclass
class AnomalyScore:
    """Reconstruction error of one invoice.

    Attributes:
        invoice: Scored invoice
        features: Normalized features the autoencoder reconstructed
        reconstruction_error: Mean squared error over the four features
        is_anomaly: True when the error exceeds the detector threshold
    """

    invoice: InvoiceRecord
    features: AnomalyFeatures
    reconstruction_error: float
    is_anomaly: bool

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "invoice_id": self.invoice.id,
            "customer_name": self.invoice.customer_name,
            "total": float(self.invoice.total),
            "features": dict(zip(ANOMALY_FEATURE_NAMES, self.features.as_tuple())),
            "reconstruction_error": float(self.reconstruction_error),
            "is_anomaly": self.is_anomaly,
        }


class AnomalyDetector:
    """Flags invoices that the autoencoder reconstructs poorly.

    Example:
        >>> detector = AnomalyDetector(threshold=0.95)
        >>> await detector.train(invoices)
        >>> scores = await detector.detect_anomalies(invoices)
        >>> flagged = [s for s in scores if s.is_anomaly]
    """

    def __init__(
        self,
        epochs: int = 50,
        learning_rate: float = 0.001,
        threshold: float = 0.95,
        min_invoices: int = 10,
        validation_split: float = 0.2,
        batch_size: int = 16,
        seed: int = 42,
    ):
        self.epochs = epochs
        self.learning_rate = learning_rate
        self.threshold = threshold
        self.min_invoices = min_invoices
        self.validation_split = validation_split
        self.batch_size = batch_size
        self.seed = seed

        self.extractor = FeatureExtractor()
        self.network: AutoencoderNetwork | None = None
        self.history: TrainingHistory | None = None
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
        progress_callback: ProgressFn | None = None,
    ) -> TrainingHistory:
        """Train the autoencoder to reconstruct the invoices' features.

        Raises:
            InsufficientDataError: If fewer than ``min_invoices`` invoices
        """
        self._stop_event.clear()
        return await asyncio.to_thread(self._train_sync, list(invoices), progress_callback)

    def _train_sync(
        self,
        invoices: list[InvoiceRecord],
        progress_callback: ProgressFn | None,
    ) -> TrainingHistory:
        if len(invoices) < self.min_invoices:
            raise InsufficientDataError(
                "Not enough invoices for anomaly detection",
                model=MODEL_NAME,
                required=self.min_invoices,
                available=len(invoices),
            )

        features = anomaly_matrix(self.extractor.extract_anomaly_features(invoices))

        network = AutoencoderNetwork(
            learning_rate=self.learning_rate,
            seed=self.seed,
            stop_event=self._stop_event,
        ).build()

        callbacks = [LoggingCallback(MODEL_NAME)]
        if progress_callback is not None:
            callbacks.append(ProgressCallback(progress_callback))

        logger.info("training_anomaly_detector", invoices=len(invoices), epochs=self.epochs)

        with LogPerformance("anomaly_training", logger):
            history = network.fit(
                features,
                features,
                epochs=self.epochs,
                batch_size=self.batch_size,
                validation_split=self.validation_split,
                callbacks=callbacks,
            )

        self.history = history
        if history.interrupted:
            network.dispose()
            logger.warning("anomaly_training_discarded", epochs_run=history.epochs_run)
            return history

        if self.network is not None:
            self.network.dispose()
        self.network = network
        self.fitted_ = True

        logger.info(
            "anomaly_detector_trained",
            epochs_run=history.epochs_run,
            final_loss=history.final_logs.get("loss"),
        )
        return history

    async def detect_anomalies(self, invoices: Sequence[InvoiceRecord]) -> list[AnomalyScore]:
        """Score every invoice, in input order.

        Raises:
            NotTrainedError: If the model was never trained
        """
        if not self.fitted_ or self.network is None:
            raise NotTrainedError(
                "Model must be trained before use",
                model=MODEL_NAME,
                attempted_action="detect_anomalies",
            )
        return await asyncio.to_thread(self._detect_sync, self.network, list(invoices))

    def _detect_sync(
        self, network: AutoencoderNetwork, invoices: list[InvoiceRecord]
    ) -> list[AnomalyScore]:
        if not invoices:
            return []

        extracted = self.extractor.extract_anomaly_features(invoices)
        features = anomaly_matrix(extracted)
        reconstructed = network.predict(features)
        errors = np.mean(np.square(features - reconstructed), axis=1)

        scores = [
            AnomalyScore(
                invoice=invoice,
                features=invoice_features,
                reconstruction_error=float(error),
                is_anomaly=bool(error > self.threshold),
            )
            for invoice, invoice_features, error in zip(invoices, extracted, errors)
        ]

        logger.info(
            "anomalies_detected",
            invoices=len(scores),
            anomalies=sum(score.is_anomaly for score in scores),
            threshold=self.threshold,
        )
        return scores

    def summary(self) -> dict[str, Any] | None:
        if self.network is None:
            return None
        return self.network.summary()


def summarize_anomalies(scores: Sequence[AnomalyScore]) -> dict[str, Any]:
    """Counts, anomaly rate and the flagged invoices, worst first."""
    flagged = sorted(
        (score for score in scores if score.is_anomaly),
        key=lambda score: score.reconstruction_error,
        reverse=True,
    )
    total = len(scores)
    return {
        "total": total,
        "anomalies": len(flagged),
        "normal": total - len(flagged),
        "anomaly_rate": len(flagged) / total if total else 0.0,
        "flagged": [score.to_dict() for score in flagged],
    }
