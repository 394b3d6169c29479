"""Trainable network runtime shared by the analytics models.

The three models (forecaster, segmenter, anomaly detector) all follow the
same life cycle: build a small torch module, fit it with Adam for a number of
epochs on mini-batches, then predict or evaluate under ``torch.no_grad()``.
``TrainableNetwork`` implements that cycle once; concrete networks only
provide their module (and a loss when it is not MSE).

Training follows Keras conventions so that results are comparable with the
models this package replaces:

1. The validation slice is taken from the tail of the data before shuffling
2. Training batches are reshuffled every epoch
3. Callbacks receive ``(epoch, logs)`` after each epoch and can stop training

Randomness is always seeded explicitly. Weight initialisation and dropout run
inside a forked RNG scope, and batch shuffling uses its own
``torch.Generator``, so the global torch RNG is never left modified.
"""

import math
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import torch
import torch.nn.functional as F
from torch import nn

from invoiceml.utils.logging import get_logger

logger = get_logger(__name__)

ProgressFn = Callable[[float, dict[str, float]], None]


@dataclass
class TrainingHistory:
    """Per-epoch training logs.

    Attributes:
        epochs: One logs dict per completed epoch (``loss``, ``val_loss``, ...)
        stopped_early: True when a callback ended training before ``epochs``
        interrupted: True when training ended because a stop was requested
    """

    epochs: list[dict[str, float]] = field(default_factory=list)
    stopped_early: bool = False
    interrupted: bool = False

    @property
    def epochs_run(self) -> int:
        return len(self.epochs)

    @property
    def final_logs(self) -> dict[str, float]:
        return dict(self.epochs[-1]) if self.epochs else {}

    def metric(self, name: str) -> list[float]:
        """Values of one metric across epochs (missing epochs are skipped)."""
        return [logs[name] for logs in self.epochs if name in logs]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "epochs_run": self.epochs_run,
            "stopped_early": self.stopped_early,
            "interrupted": self.interrupted,
            "final": self.final_logs,
            "loss": self.metric("loss"),
            "val_loss": self.metric("val_loss"),
        }


# =============================================================================
# Callbacks
# =============================================================================


class Callback:
    """Base class for training callbacks. All hooks are optional."""

    def on_train_begin(self, network: "TrainableNetwork", epochs: int) -> None:
        pass

    def on_epoch_end(self, epoch: int, logs: dict[str, float]) -> None:
        pass

    def on_train_end(self, history: TrainingHistory) -> None:
        pass


class EarlyStopping(Callback):
    """Stop training once the monitored loss stops improving.

    During the first ``warmup`` epochs every epoch resets the reference.
    Afterwards an epoch whose loss is worse than the best seen increments a
    counter, any other epoch becomes the new best and resets the counter.
    Training stops when the counter reaches ``patience``.

    ``monitor`` falls back to the training loss when the logs carry no
    validation loss (for example when the data was too small to split).
    """

    def __init__(self, warmup: int = 10, patience: int = 10, monitor: str = "val_loss"):
        self.warmup = warmup
        self.patience = patience
        self.monitor = monitor
        self.network: TrainableNetwork | None = None
        self.best = math.inf
        self.wait = 0
        self.stopped_epoch: int | None = None

    def on_train_begin(self, network: "TrainableNetwork", epochs: int) -> None:
        self.network = network
        self.best = math.inf
        self.wait = 0
        self.stopped_epoch = None

    def on_epoch_end(self, epoch: int, logs: dict[str, float]) -> None:
        current = logs.get(self.monitor, logs.get("loss"))
        if current is None:
            return

        if epoch > self.warmup and current > self.best:
            self.wait += 1
            if self.wait >= self.patience:
                self.stopped_epoch = epoch
                if self.network is not None:
                    self.network.stop_training = True
                logger.info(
                    "early_stopping_triggered",
                    epoch=epoch,
                    best=self.best,
                    monitor=self.monitor,
                )
        else:
            self.best = current
            self.wait = 0


class ProgressCallback(Callback):
    """Report training progress as a percentage of the planned epochs."""

    def __init__(self, report: ProgressFn):
        self.report = report
        self.epochs = 0

    def on_train_begin(self, network: "TrainableNetwork", epochs: int) -> None:
        self.epochs = max(epochs, 1)
        self.report(0.0, {})

    def on_epoch_end(self, epoch: int, logs: dict[str, float]) -> None:
        self.report(min(100.0, (epoch + 1) / self.epochs * 100), logs)

    def on_train_end(self, history: TrainingHistory) -> None:
        # Early stopping finishes a model too
        self.report(100.0, history.final_logs)


class LoggingCallback(Callback):
    """Log the epoch logs every ``every`` epochs."""

    def __init__(self, model: str, every: int = 10):
        self.model = model
        self.every = max(every, 1)

    def on_epoch_end(self, epoch: int, logs: dict[str, float]) -> None:
        if epoch % self.every == 0:
            logger.info("training_epoch", model=self.model, epoch=epoch, **logs)


# =============================================================================
# Resource helpers
# =============================================================================


class TensorScope:
    """Collects intermediate tensors so they can be released together."""

    def __init__(self) -> None:
        self._tensors: list[torch.Tensor] = []

    def track(self, tensor: torch.Tensor) -> torch.Tensor:
        self._tensors.append(tensor)
        return tensor

    @property
    def tracked(self) -> int:
        return len(self._tensors)

    def release(self) -> None:
        self._tensors.clear()


@contextmanager
def tensor_scope() -> Iterator[TensorScope]:
    """Release every tensor tracked in the block, however the block exits.

    Example:
        >>> with tensor_scope() as scope:
        ...     outputs = scope.track(module(inputs))
    """
    scope = TensorScope()
    try:
        yield scope
    finally:
        scope.release()


@contextmanager
def seeded(seed: int) -> Iterator[None]:
    """Run the block with the CPU RNG seeded, restoring the previous state after."""
    with torch.random.fork_rng(devices=[]):
        torch.manual_seed(seed)
        yield


def batch_size_for(sample_count: int, cap: int = 16) -> int:
    """Mini-batch size: a quarter of the samples, between 1 and ``cap``."""
    return max(1, min(cap, sample_count // 4))


def split_validation(
    sample_count: int, validation_split: float
) -> tuple[slice, slice | None]:
    """Train/validation slices with the validation part taken from the tail.

    Returns ``(slice(None), None)`` when either side would be empty.
    """
    if validation_split <= 0:
        return slice(None), None
    split_at = int(sample_count * (1.0 - validation_split))
    if split_at <= 0 or split_at >= sample_count:
        return slice(None), None
    return slice(0, split_at), slice(split_at, None)


# =============================================================================
# Network base class
# =============================================================================


class TrainableNetwork(ABC):
    """Build / fit / predict / evaluate / dispose life cycle for a torch module.

    Subclasses implement ``build_module()`` and may override ``compute_loss``,
    ``batch_metrics``, ``prepare_targets`` and ``transform_output``.

    Example:
        >>> network = SequenceRegressorNetwork(seed=7).build()
        >>> history = network.fit(inputs, targets, epochs=50, batch_size=4)
        >>> predictions = network.predict(inputs)
        >>> network.dispose()
    """

    name = "network"

    def __init__(
        self,
        *,
        learning_rate: float = 0.001,
        seed: int = 42,
        stop_event: threading.Event | None = None,
    ):
        self.learning_rate = learning_rate
        self.seed = seed
        self.module: nn.Module | None = None
        self.optimizer: torch.optim.Optimizer | None = None
        self.stop_training = False
        self._stop_event = stop_event or threading.Event()

    @abstractmethod
    def build_module(self) -> nn.Module:
        """Create the torch module with initialised weights."""

    def build_optimizer(self, module: nn.Module) -> torch.optim.Optimizer:
        return torch.optim.Adam(
            module.parameters(),
            lr=self.learning_rate,
            betas=(0.9, 0.999),
            eps=1e-7,
        )

    def compute_loss(self, outputs: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
        return F.mse_loss(outputs, targets)

    def batch_metrics(self, outputs: torch.Tensor, targets: torch.Tensor) -> dict[str, float]:
        """Extra metrics reported next to the loss (MAE by default)."""
        return {"mae": F.l1_loss(outputs, targets).item()}

    def prepare_targets(self, targets: Any) -> torch.Tensor:
        tensor = torch.as_tensor(np.asarray(targets), dtype=torch.float32)
        return tensor.reshape(tensor.shape[0], -1)

    def transform_output(self, outputs: torch.Tensor) -> torch.Tensor:
        """Map raw module outputs to predictions (identity by default)."""
        return outputs

    @property
    def built(self) -> bool:
        return self.module is not None

    def build(self) -> "TrainableNetwork":
        """Create module and optimizer under the network's seed."""
        with seeded(self.seed):
            self.module = self.build_module()
        self.optimizer = self.build_optimizer(self.module)
        logger.debug("network_built", network=self.name, parameters=self.parameter_count())
        return self

    def _require_module(self) -> nn.Module:
        if self.module is None:
            raise RuntimeError(f"{self.name} is not built. Call build() first.")
        return self.module

    def request_stop(self) -> None:
        """Ask a running ``fit`` to stop at the next epoch boundary."""
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def fit(
        self,
        inputs: Any,
        targets: Any,
        *,
        epochs: int,
        batch_size: int,
        validation_split: float = 0.0,
        shuffle: bool = True,
        callbacks: Sequence[Callback] = (),
    ) -> TrainingHistory:
        """Train the module.

        Args:
            inputs: Array-like of model inputs, first axis is the sample axis
            targets: Array-like of targets, same sample count
            epochs: Maximum number of epochs
            batch_size: Mini-batch size
            validation_split: Fraction of samples held out from the tail
            shuffle: Reshuffle training samples every epoch
            callbacks: Callbacks notified after each epoch

        Returns:
            TrainingHistory
        """
        module = self._require_module()
        assert self.optimizer is not None

        x = torch.as_tensor(np.asarray(inputs), dtype=torch.float32)
        y = self.prepare_targets(targets)

        train_slice, val_slice = split_validation(x.shape[0], validation_split)
        x_train, y_train = x[train_slice], y[train_slice]
        x_val = y_val = None
        if val_slice is not None:
            x_val, y_val = x[val_slice], y[val_slice]

        sample_count = x_train.shape[0]
        generator = torch.Generator().manual_seed(self.seed)
        history = TrainingHistory()
        self.stop_training = False

        for callback in callbacks:
            callback.on_train_begin(self, epochs)

        with seeded(self.seed):
            for epoch in range(epochs):
                if self.stop_requested:
                    history.interrupted = True
                    logger.info("training_interrupted", network=self.name, epoch=epoch)
                    break

                module.train()
                if shuffle:
                    order = torch.randperm(sample_count, generator=generator)
                else:
                    order = torch.arange(sample_count)

                totals: dict[str, float] = {}
                with tensor_scope() as scope:
                    for start in range(0, sample_count, batch_size):
                        index = order[start : start + batch_size]
                        x_batch = scope.track(x_train[index])
                        y_batch = scope.track(y_train[index])

                        self.optimizer.zero_grad()
                        outputs = scope.track(module(x_batch))
                        loss = self.compute_loss(outputs, y_batch)
                        loss.backward()
                        self.optimizer.step()

                        weight = len(index)
                        totals["loss"] = totals.get("loss", 0.0) + loss.item() * weight
                        for key, value in self.batch_metrics(outputs.detach(), y_batch).items():
                            totals[key] = totals.get(key, 0.0) + value * weight

                logs = {key: value / sample_count for key, value in totals.items()}
                if x_val is not None:
                    for key, value in self.evaluate(x_val, y_val).items():
                        logs[f"val_{key}"] = value

                history.epochs.append(logs)
                for callback in callbacks:
                    callback.on_epoch_end(epoch, logs)

                if self.stop_training:
                    history.stopped_early = True
                    break

        for callback in callbacks:
            callback.on_train_end(history)

        return history

    def predict(self, inputs: Any) -> np.ndarray:
        """Run inference in eval mode without gradient tracking."""
        module = self._require_module()
        module.eval()
        with torch.no_grad(), tensor_scope() as scope:
            x = scope.track(torch.as_tensor(np.asarray(inputs), dtype=torch.float32))
            outputs = scope.track(self.transform_output(module(x)))
            return outputs.numpy().copy()

    def evaluate(self, inputs: Any, targets: Any) -> dict[str, float]:
        """Loss and metrics on the given data, in eval mode.

        ``targets`` may already be a prepared tensor.
        """
        module = self._require_module()
        module.eval()
        with torch.no_grad(), tensor_scope() as scope:
            x = scope.track(torch.as_tensor(np.asarray(inputs), dtype=torch.float32))
            y = targets if isinstance(targets, torch.Tensor) else self.prepare_targets(targets)
            outputs = scope.track(module(x))
            results = {"loss": self.compute_loss(outputs, y).item()}
            results.update(self.batch_metrics(outputs, y))
        return results

    def parameter_count(self) -> int:
        if self.module is None:
            return 0
        return sum(p.numel() for p in self.module.parameters())

    def summary(self) -> dict[str, Any] | None:
        """Layer names, types and parameter counts; None until built."""
        if self.module is None:
            return None
        layers = [
            {
                "name": name,
                "type": type(child).__name__,
                "parameters": sum(p.numel() for p in child.parameters()),
            }
            for name, child in self.module.named_children()
        ]
        return {
            "network": self.name,
            "layers": layers,
            "total_parameters": self.parameter_count(),
        }

    def dispose(self) -> None:
        """Drop module and optimizer state."""
        if self.module is not None:
            logger.debug("network_disposed", network=self.name)
        self.module = None
        self.optimizer = None
