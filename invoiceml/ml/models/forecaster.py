"""LSTM revenue forecaster.

Learns the next invoice total from a window of the previous invoices and
rolls the prediction forward to build a daily revenue forecast.

The rollout is stochastic: every step adds a little Gaussian noise to the
normalized prediction, and several rollouts are averaged per day. Noise comes
from a dedicated seeded ``torch.Generator`` so forecasts are reproducible.
When the stochastic path fails (torch runtime error, non-finite values) the
forecaster falls back to a single deterministic rollout.

Example:
    >>> forecaster = RevenueForecaster(seed=7)
    >>> history = await forecaster.train(invoices, epochs=50)
    >>> forecast = await forecaster.forecast(invoices, days=30)
    >>> evaluation = await forecaster.evaluate_model(invoices)
    >>> print(f"R²: {evaluation.r2:.3f}")
"""

import asyncio
import threading
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any

import numpy as np
import torch
from torch import nn

from invoiceml.exceptions import (
    ForecastSimulationError,
    InsufficientDataError,
    NotTrainedError,
)
from invoiceml.ml.features import TOTAL_SCALE, FeatureExtractor, normalize_calendar
from invoiceml.ml.metrics import calculate_metrics
from invoiceml.ml.records import InvoiceRecord
from invoiceml.ml.runtime import (
    EarlyStopping,
    LoggingCallback,
    ProgressCallback,
    ProgressFn,
    TrainableNetwork,
    TrainingHistory,
    batch_size_for,
    tensor_scope,
)
from invoiceml.ml.sequences import FEATURE_COUNT, SequenceBuilder
from invoiceml.utils.logging import LogPerformance, get_logger

logger = get_logger(__name__)

MODEL_NAME = "revenue_forecaster"

# Positions of the carried-forward features in a normalized vector
ITEM_COUNT_INDEX = 4
AVG_ITEM_PRICE_INDEX = 5


def init_lstm(lstm: nn.LSTM) -> None:
    """Glorot-normal input kernels, orthogonal recurrent kernels, forget bias 1."""
    hidden = lstm.hidden_size
    for name, param in lstm.named_parameters():
        if name.startswith("weight_ih"):
            nn.init.xavier_normal_(param)
        elif name.startswith("weight_hh"):
            nn.init.orthogonal_(param)
        elif name.startswith("bias"):
            nn.init.zeros_(param)
            # Gate order is input, forget, cell, output; bias_hh stays 0
            if name.startswith("bias_ih"):
                with torch.no_grad():
                    param[hidden : 2 * hidden].fill_(1.0)


class StackedLSTM(nn.Module):
    """LSTM(64) → Dropout → LSTM(32) → Dropout → Dense(16, relu) → Dense(1)."""

    def __init__(self, n_features: int = FEATURE_COUNT, dropout: float = 0.3):
        super().__init__()
        self.lstm_1 = nn.LSTM(n_features, 64, batch_first=True)
        self.dropout_1 = nn.Dropout(dropout)
        self.lstm_2 = nn.LSTM(64, 32, batch_first=True)
        self.dropout_2 = nn.Dropout(dropout)
        self.dense = nn.Linear(32, 16)
        self.output = nn.Linear(16, 1)

        init_lstm(self.lstm_1)
        init_lstm(self.lstm_2)
        for layer in (self.dense, self.output):
            nn.init.xavier_uniform_(layer.weight)
            nn.init.zeros_(layer.bias)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x, _ = self.lstm_1(x)
        x = self.dropout_1(x)
        x, _ = self.lstm_2(x)
        x = self.dropout_2(x[:, -1, :])
        x = torch.relu(self.dense(x))
        return self.output(x)


class SequenceRegressorNetwork(TrainableNetwork):
    """Trainable wrapper around ``StackedLSTM`` (MSE loss, MAE metric)."""

    name = MODEL_NAME

    def __init__(self, *, dropout: float = 0.3, **kwargs: Any):
        super().__init__(**kwargs)
        self.dropout = dropout

    def build_module(self) -> nn.Module:
        return StackedLSTM(n_features=FEATURE_COUNT, dropout=self.dropout)


@dataclass
class EvaluationResult:
    """Forecaster evaluation on a set of invoices.

    Attributes:
        loss: Network MSE on normalized targets
        mae_normalized: Network MAE on normalized targets
        mse: MSE of denormalized predictions against raw totals
        rmse: Root of ``mse``
        mae: MAE against raw totals
        r2: Coefficient of determination against raw totals
        mape: MAE relative to the mean total, in percent
        sample_count: Number of evaluated sequences
    """

    loss: float
    mae_normalized: float
    mse: float
    rmse: float
    mae: float
    r2: float
    mape: float
    sample_count: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RevenueForecaster:
    """Revenue forecaster backed by a two-layer LSTM.

    The model is untrained after construction. ``train`` may be called again
    at any time; it replaces the network and the stored target statistics.
    A run stopped through ``request_stop`` is discarded.

    Args:
        sequence_length: Invoices per input window
        learning_rate: Adam learning rate
        dropout: Dropout rate after each LSTM layer
        simulations: Noisy rollouts averaged per forecast
        noise_std: Std of the Gaussian noise added to normalized predictions
        validation_split: Fraction of sequences held out from the tail
        max_batch_size: Upper bound of the mini-batch size
        early_stopping_warmup: Epochs before early stopping may count
        early_stopping_patience: Non-improving epochs tolerated after warmup
        log_every_n_epochs: Training log interval
        seed: Seed for weights, dropout, shuffling and forecast noise
    """

    def __init__(
        self,
        sequence_length: int = 7,
        learning_rate: float = 0.001,
        dropout: float = 0.3,
        simulations: int = 3,
        noise_std: float = 0.01,
        validation_split: float = 0.2,
        max_batch_size: int = 16,
        early_stopping_warmup: int = 10,
        early_stopping_patience: int = 10,
        log_every_n_epochs: int = 10,
        seed: int = 42,
    ):
        self.sequence_length = sequence_length
        self.learning_rate = learning_rate
        self.dropout = dropout
        self.simulations = simulations
        self.noise_std = noise_std
        self.validation_split = validation_split
        self.max_batch_size = max_batch_size
        self.early_stopping_warmup = early_stopping_warmup
        self.early_stopping_patience = early_stopping_patience
        self.log_every_n_epochs = log_every_n_epochs
        self.seed = seed

        self.extractor = FeatureExtractor()
        self.sequence_builder = SequenceBuilder(window=sequence_length)

        self.network: SequenceRegressorNetwork | None = None
        self.history: TrainingHistory | None = None
        self.fitted_ = False
        self._target_mean: float | None = None
        self._target_std: float | None = None
        self._stop_event = threading.Event()

    @property
    def trained(self) -> bool:
        return self.fitted_

    @property
    def target_mean(self) -> float | None:
        return self._target_mean

    @property
    def target_std(self) -> float | None:
        return self._target_std

    def request_stop(self) -> None:
        """Stop a running ``train`` at the next epoch boundary."""
        self._stop_event.set()

    async def train(
        self,
        invoices: Sequence[InvoiceRecord],
        epochs: int = 50,
        progress_callback: ProgressFn | None = None,
    ) -> TrainingHistory:
        """Train on the invoice history.

        Args:
            invoices: Invoice records; undated ones are ignored
            epochs: Maximum number of epochs
            progress_callback: Called with (percent, logs) after each epoch

        Returns:
            TrainingHistory

        Raises:
            InsufficientDataError: If fewer than ``sequence_length + 1``
                dated invoices are available
        """
        self._stop_event.clear()
        return await asyncio.to_thread(self._train_sync, list(invoices), epochs, progress_callback)

    def _train_sync(
        self,
        invoices: list[InvoiceRecord],
        epochs: int,
        progress_callback: ProgressFn | None,
    ) -> TrainingHistory:
        features = self.extractor.extract_invoice_features(invoices)
        batch = self.sequence_builder.build(features)
        if batch.is_empty:
            raise InsufficientDataError(
                "Not enough invoices for training",
                model=MODEL_NAME,
                required=self.sequence_length + 1,
                available=len(features or []),
            )

        targets = batch.target_array
        mean = float(targets.mean())
        std = float(targets.std())
        if std == 0:
            std = 1.0

        network = SequenceRegressorNetwork(
            dropout=self.dropout,
            learning_rate=self.learning_rate,
            seed=self.seed,
            stop_event=self._stop_event,
        ).build()

        callbacks = [
            EarlyStopping(
                warmup=self.early_stopping_warmup,
                patience=self.early_stopping_patience,
            ),
            LoggingCallback(MODEL_NAME, every=self.log_every_n_epochs),
        ]
        if progress_callback is not None:
            callbacks.append(ProgressCallback(progress_callback))

        logger.info(
            "training_forecaster",
            sequences=len(batch),
            epochs=epochs,
            target_mean=mean,
            target_std=std,
        )

        with LogPerformance("forecaster_training", logger):
            history = network.fit(
                batch.inputs,
                (targets - mean) / std,
                epochs=epochs,
                batch_size=batch_size_for(len(batch), self.max_batch_size),
                validation_split=self.validation_split,
                shuffle=True,
                callbacks=callbacks,
            )

        self.history = history
        if history.interrupted:
            # Keep the previously trained state, if any
            network.dispose()
            logger.warning("forecaster_training_discarded", epochs_run=history.epochs_run)
            return history

        if self.network is not None:
            self.network.dispose()
        self.network = network
        self._target_mean = mean
        self._target_std = std
        self.fitted_ = True

        logger.info(
            "forecaster_trained",
            epochs_run=history.epochs_run,
            stopped_early=history.stopped_early,
            final_loss=history.final_logs.get("loss"),
        )
        return history

    def _require_trained(self, action: str) -> SequenceRegressorNetwork:
        if not self.fitted_ or self.network is None:
            raise NotTrainedError(
                "Model must be trained before use",
                model=MODEL_NAME,
                attempted_action=action,
            )
        return self.network

    async def forecast(self, invoices: Sequence[InvoiceRecord], days: int = 30) -> list[float]:
        """Forecast daily revenue after the most recent invoice.

        Args:
            invoices: Invoice history to start from
            days: Forecast horizon

        Returns:
            ``days`` non-negative values, one per day

        Raises:
            NotTrainedError: If the model was never trained
            InsufficientDataError: If fewer than ``sequence_length`` dated
                invoices are available
        """
        self._require_trained("forecast")
        return await asyncio.to_thread(self._forecast_sync, list(invoices), days)

    def _forecast_sync(self, invoices: list[InvoiceRecord], days: int) -> list[float]:
        network = self._require_trained("forecast")
        features = self.extractor.extract_invoice_features(invoices) or []
        if len(features) < self.sequence_length:
            raise InsufficientDataError(
                "Not enough invoices for forecasting",
                model=MODEL_NAME,
                required=self.sequence_length,
                available=len(features),
            )

        window = self.sequence_builder.last_window(features)
        last_timestamp = features[-1].timestamp

        try:
            generator = torch.Generator().manual_seed(self.seed)
            runs = [
                self._rollout(network, window, last_timestamp, days, generator)
                for _ in range(self.simulations)
            ]
            forecast = np.mean(np.asarray(runs), axis=0)
        except (RuntimeError, ForecastSimulationError) as e:
            logger.warning(
                "forecast_simulation_failed",
                error=str(e),
                error_type=type(e).__name__,
                fallback="deterministic",
            )
            forecast = np.asarray(self._rollout(network, window, last_timestamp, days, None))

        logger.info("forecast_generated", days=days, total=float(forecast.sum()))
        return [float(value) for value in forecast]

    def _rollout(
        self,
        network: SequenceRegressorNetwork,
        window: list[tuple[float, ...]],
        last_timestamp: Any,
        days: int,
        generator: torch.Generator | None,
    ) -> list[float]:
        """One autoregressive rollout; no noise when ``generator`` is None."""
        assert self._target_mean is not None and self._target_std is not None
        window = list(window)
        values = []

        with tensor_scope() as scope:
            for step in range(days):
                inputs = np.asarray([window], dtype=np.float32)
                normalized = float(network.predict(inputs)[0, 0])
                if generator is not None and self.noise_std > 0:
                    noise = scope.track(torch.randn(1, generator=generator))
                    normalized += float(noise.item()) * self.noise_std

                value = normalized * self._target_std + self._target_mean
                if not np.isfinite(value):
                    raise ForecastSimulationError(
                        "Forecast rollout produced a non-finite value",
                        context={"step": step},
                    )
                values.append(max(0.0, value))

                last = window[-1]
                next_moment = last_timestamp + timedelta(days=step + 1)
                window = window[1:] + [
                    (
                        *normalize_calendar(next_moment),
                        last[ITEM_COUNT_INDEX],
                        last[AVG_ITEM_PRICE_INDEX],
                        value / TOTAL_SCALE,
                    )
                ]

        return values

    async def evaluate_model(self, invoices: Sequence[InvoiceRecord]) -> EvaluationResult:
        """Evaluate the trained model against the invoices' actual totals.

        Raises:
            NotTrainedError: If the model was never trained
            InsufficientDataError: If no sequence can be built
        """
        self._require_trained("evaluate")
        return await asyncio.to_thread(self._evaluate_sync, list(invoices))

    def _evaluate_sync(self, invoices: list[InvoiceRecord]) -> EvaluationResult:
        network = self._require_trained("evaluate")
        assert self._target_mean is not None and self._target_std is not None

        features = self.extractor.extract_invoice_features(invoices)
        batch = self.sequence_builder.build(features)
        if batch.is_empty:
            raise InsufficientDataError(
                "Not enough invoices for evaluation",
                model=MODEL_NAME,
                required=self.sequence_length + 1,
                available=len(features or []),
            )

        actuals = batch.target_array
        normalized_targets = (actuals - self._target_mean) / self._target_std
        scores = network.evaluate(batch.inputs, normalized_targets)

        predictions = network.predict(batch.inputs).reshape(-1).astype(np.float64)
        predictions = predictions * self._target_std + self._target_mean
        metrics = calculate_metrics(predictions, actuals)

        result = EvaluationResult(
            loss=scores["loss"],
            mae_normalized=scores["mae"],
            mse=metrics.mse,
            rmse=metrics.rmse,
            mae=metrics.mae,
            r2=metrics.r2,
            mape=metrics.mape,
            sample_count=len(batch),
        )
        logger.info("forecaster_evaluated", **result.to_dict())
        return result

    def summary(self) -> dict[str, Any] | None:
        """Network layers and parameter counts, None until trained."""
        if self.network is None:
            return None
        return self.network.summary()

    def get_params(self) -> dict[str, Any]:
        return {
            "sequence_length": self.sequence_length,
            "learning_rate": self.learning_rate,
            "dropout": self.dropout,
            "simulations": self.simulations,
            "noise_std": self.noise_std,
            "validation_split": self.validation_split,
            "max_batch_size": self.max_batch_size,
            "early_stopping_warmup": self.early_stopping_warmup,
            "early_stopping_patience": self.early_stopping_patience,
            "log_every_n_epochs": self.log_every_n_epochs,
            "seed": self.seed,
        }
