"""Analytics models.

- RevenueForecaster: LSTM over invoice windows, daily revenue forecast
- CustomerSegmenter: dense classifier assigning customers to k segments
- AnomalyDetector: autoencoder flagging invoices it reconstructs poorly

All three train and predict asynchronously; the torch work runs in a worker
thread.
"""

from invoiceml.ml.models.anomaly import (
    AnomalyDetector,
    AnomalyScore,
    AutoencoderNetwork,
    summarize_anomalies,
)
from invoiceml.ml.models.forecaster import (
    EvaluationResult,
    RevenueForecaster,
    SequenceRegressorNetwork,
)
from invoiceml.ml.models.segmenter import (
    CustomerSegmenter,
    SegmentClassifierNetwork,
    SegmentedCustomer,
    summarize_segments,
)

__all__ = [
    # Forecasting
    "RevenueForecaster",
    "EvaluationResult",
    "SequenceRegressorNetwork",
    # Segmentation
    "CustomerSegmenter",
    "SegmentedCustomer",
    "SegmentClassifierNetwork",
    "summarize_segments",
    # Anomalies
    "AnomalyDetector",
    "AnomalyScore",
    "AutoencoderNetwork",
    "summarize_anomalies",
]
