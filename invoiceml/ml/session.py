"""Analytics session: trains and runs the three models on one invoice snapshot.

Stages run strictly one after another, each awaiting the previous one:

1. forecast: train the forecaster, forecast, evaluate, assess quality
2. segmentation: train the segmenter, predict segments, summarize
3. anomaly: train the detector, score invoices, summarize

A failing stage is recorded in ``report.errors`` and the session moves on to
the next one, unless the session is strict.

Example:
    >>> session = AnalyticsSession(invoices, progress_callback=print)
    >>> report = await session.run(days=30)
    >>> report.to_dict()["quality"]["overall"]
    'fair'
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from invoiceml.exceptions import InsufficientDataError, InvoiceMLError, TrainingTimeoutError
from invoiceml.ml.config import MLConfig, get_ml_config
from invoiceml.ml.metrics import QualityAssessment, assess_model_quality
from invoiceml.ml.models.anomaly import AnomalyDetector, AnomalyScore, summarize_anomalies
from invoiceml.ml.models.forecaster import EvaluationResult, RevenueForecaster
from invoiceml.ml.models.segmenter import (
    CustomerSegmenter,
    SegmentedCustomer,
    summarize_segments,
)
from invoiceml.ml.records import InvoiceRecord
from invoiceml.ml.runtime import TrainingHistory
from invoiceml.utils.logging import (
    LogPerformance,
    clear_correlation_id,
    get_correlation_id,
    get_logger,
    set_correlation_id,
)

logger = get_logger(__name__)

FORECAST_STAGE = "forecast"
SEGMENTATION_STAGE = "segmentation"
ANOMALY_STAGE = "anomaly"
STAGES = (FORECAST_STAGE, SEGMENTATION_STAGE, ANOMALY_STAGE)


class Stoppable(Protocol):
    def request_stop(self) -> None: ...


@dataclass
class TrainingProgress:
    """Progress update for one model.

    Attributes:
        model: Stage name (forecast, segmentation, anomaly)
        percent: Progress of that model, 0 to 100
        overall: Mean progress of the three models
        logs: Latest epoch logs, empty outside training
    """

    model: str
    percent: float
    overall: float
    logs: dict[str, float] = field(default_factory=dict)


ProgressListener = Callable[[TrainingProgress], None]


@dataclass
class AnalyticsReport:
    """Results of one analytics session."""

    invoice_count: int
    correlation_id: str | None = None
    forecast: list[float] | None = None
    evaluation: EvaluationResult | None = None
    quality: QualityAssessment | None = None
    segments: list[SegmentedCustomer] | None = None
    segment_summary: list[dict[str, Any]] = field(default_factory=list)
    anomalies: list[AnomalyScore] | None = None
    anomaly_summary: dict[str, Any] | None = None
    histories: dict[str, TrainingHistory] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "invoice_count": self.invoice_count,
            "correlation_id": self.correlation_id,
            "forecast": self.forecast,
            "evaluation": self.evaluation.to_dict() if self.evaluation else None,
            "quality": self.quality.to_dict() if self.quality else None,
            "segments": [s.to_dict() for s in self.segments] if self.segments is not None else None,
            "segment_summary": self.segment_summary,
            "anomalies": self.anomaly_summary,
            "training": {stage: history.to_dict() for stage, history in self.histories.items()},
            "errors": dict(self.errors),
        }


class AnalyticsSession:
    """Runs forecasting, segmentation and anomaly detection on a snapshot.

    Args:
        invoices: Invoice snapshot
        config: ML configuration (default: ``get_ml_config()``)
        progress_callback: Receives a TrainingProgress after every epoch of
            every model, on the event loop thread
        strict: Re-raise stage failures instead of recording them
        reference_time: Instant customer recency is measured from
    """

    def __init__(
        self,
        invoices: Sequence[InvoiceRecord],
        config: MLConfig | None = None,
        progress_callback: ProgressListener | None = None,
        *,
        strict: bool = False,
        reference_time: datetime | None = None,
    ):
        self.invoices = list(invoices)
        self.config = config or get_ml_config()
        self.progress_callback = progress_callback
        self.strict = strict
        self.reference_time = reference_time

        self.forecaster = RevenueForecaster(**self.config.get_forecaster_params())
        self.segmenter = CustomerSegmenter(**self.config.get_segmenter_params())
        self.detector = AnomalyDetector(**self.config.get_anomaly_params())

        self.progress: dict[str, float] = {stage: 0.0 for stage in STAGES}
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def overall_progress(self) -> float:
        return sum(self.progress.values()) / len(self.progress)

    async def run(
        self,
        days: int | None = None,
        epochs: int | None = None,
        k: int | None = None,
    ) -> AnalyticsReport:
        """Train and run all three models.

        Args:
            days: Forecast horizon (default: config.forecast_days)
            epochs: Forecaster epochs (default: config.forecast_epochs)
            k: Number of customer segments (default: config.segment_count)

        Returns:
            AnalyticsReport

        Raises:
            InsufficientDataError: If the snapshot is below the session minimum
            InvoiceMLError: Any stage failure when the session is strict
        """
        days = self.config.forecast_days if days is None else days
        epochs = self.config.forecast_epochs if epochs is None else epochs
        k = self.config.segment_count if k is None else k

        previous_id = get_correlation_id()
        correlation_id = set_correlation_id()
        self._loop = asyncio.get_running_loop()
        self.progress = {stage: 0.0 for stage in STAGES}

        try:
            if len(self.invoices) < self.config.min_session_invoices:
                raise InsufficientDataError(
                    "Not enough invoices for analytics",
                    model="session",
                    required=self.config.min_session_invoices,
                    available=len(self.invoices),
                )

            report = AnalyticsReport(
                invoice_count=len(self.invoices),
                correlation_id=correlation_id,
            )
            logger.info("analytics_session_started", invoices=len(self.invoices), days=days, k=k)

            with LogPerformance("analytics_session", logger):
                await self._run_stage(
                    report, FORECAST_STAGE, lambda: self._forecast(report, days, epochs)
                )
                await self._run_stage(
                    report, SEGMENTATION_STAGE, lambda: self._segment(report, k)
                )
                await self._run_stage(report, ANOMALY_STAGE, lambda: self._detect(report))

            logger.info(
                "analytics_session_completed",
                failed_stages=sorted(report.errors),
                overall_progress=self.overall_progress,
            )
            return report
        finally:
            self._loop = None
            if previous_id:
                set_correlation_id(previous_id)
            else:
                clear_correlation_id()

    async def _run_stage(
        self,
        report: AnalyticsReport,
        stage: str,
        action: Callable[[], Awaitable[None]],
    ) -> None:
        try:
            await action()
        except InvoiceMLError as e:
            logger.error(
                "analytics_stage_failed",
                stage=stage,
                error=str(e),
                error_type=type(e).__name__,
            )
            if self.strict:
                raise
            report.errors[stage] = str(e)
        finally:
            # A failed stage is finished too, so overall progress can reach 100
            self._emit(stage, 100.0, {})

    async def _forecast(self, report: AnalyticsReport, days: int, epochs: int) -> None:
        report.histories[FORECAST_STAGE] = await self._train(
            self.forecaster,
            FORECAST_STAGE,
            self.forecaster.train(
                self.invoices,
                epochs=epochs,
                progress_callback=self._progress_for(FORECAST_STAGE),
            ),
        )
        report.forecast = await self.forecaster.forecast(self.invoices, days=days)
        report.evaluation = await self.forecaster.evaluate_model(self.invoices)
        report.quality = assess_model_quality(report.evaluation, len(self.invoices))

    async def _segment(self, report: AnalyticsReport, k: int) -> None:
        report.histories[SEGMENTATION_STAGE] = await self._train(
            self.segmenter,
            SEGMENTATION_STAGE,
            self.segmenter.train(
                self.invoices,
                k=k,
                progress_callback=self._progress_for(SEGMENTATION_STAGE),
                reference_time=self.reference_time,
            ),
        )
        report.segments = await self.segmenter.predict_segments()
        report.segment_summary = summarize_segments(report.segments)

    async def _detect(self, report: AnalyticsReport) -> None:
        report.histories[ANOMALY_STAGE] = await self._train(
            self.detector,
            ANOMALY_STAGE,
            self.detector.train(
                self.invoices,
                progress_callback=self._progress_for(ANOMALY_STAGE),
            ),
        )
        report.anomalies = await self.detector.detect_anomalies(self.invoices)
        report.anomaly_summary = summarize_anomalies(report.anomalies)

    async def _train(
        self,
        model: Stoppable,
        stage: str,
        training: Awaitable[TrainingHistory],
    ) -> TrainingHistory:
        """Await a training call, enforcing the configured time budget.

        On expiry the model is asked to stop at its next epoch boundary and
        the call is awaited to completion before the timeout is raised, so
        two trainings never overlap.
        """
        timeout = self.config.training_timeout_seconds
        if timeout is None:
            return await training

        task = asyncio.ensure_future(training)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            model.request_stop()
            history = await task
            logger.warning(
                "training_timed_out",
                stage=stage,
                timeout_seconds=timeout,
                epochs_run=history.epochs_run,
            )
            raise TrainingTimeoutError(
                "Training exceeded its time budget",
                model=stage,
                timeout_seconds=timeout,
            ) from None

    def _progress_for(self, stage: str) -> Callable[[float, dict[str, float]], None]:
        """Progress hook for a model; hops from the training thread to the loop."""
        loop = self._loop

        def report(percent: float, logs: dict[str, float]) -> None:
            if loop is None:
                self._emit(stage, percent, logs)
            else:
                loop.call_soon_threadsafe(self._emit, stage, percent, dict(logs))

        return report

    def _emit(self, stage: str, percent: float, logs: dict[str, float]) -> None:
        self.progress[stage] = max(self.progress[stage], percent)
        if self.progress_callback is not None:
            self.progress_callback(
                TrainingProgress(
                    model=stage,
                    percent=self.progress[stage],
                    overall=self.overall_progress,
                    logs=logs,
                )
            )
