"""Regression metrics and model quality assessment.

``calculate_metrics`` scores predictions against actual values;
``assess_model_quality`` turns the scores plus the amount of training data
into a qualitative verdict with recommendations. The assessment is a fixed
decision table, not a learned component.

Example:
    >>> metrics = calculate_metrics([110.0, 190.0], [100.0, 200.0])
    >>> assessment = assess_model_quality(metrics, sample_size=25)
    >>> assessment.overall
    <QualityTier.POOR: 'poor'>
"""

from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

import numpy as np

from invoiceml.exceptions import ShapeMismatchError
from invoiceml.utils.logging import get_logger

logger = get_logger(__name__)

RECOMMEND_MORE_DATA = "Collect more invoice data (aim for 20+ invoices)"
RECOMMEND_DATA_QUALITY = "Consider adding more features or improving data quality"
RECOMMEND_CONSISTENCY = "High prediction errors - review data consistency"
RECOMMEND_USE_MODEL = "Model is performing well - consider using for business decisions"


class QualityTier(Enum):
    """Qualitative rating used for R², data volume and the overall verdict."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


@dataclass
class RegressionMetrics:
    """Regression quality metrics.

    Attributes:
        mse: Mean squared error
        rmse: Root mean squared error
        mae: Mean absolute error
        r2: Coefficient of determination
        mape: MAE relative to the mean actual value, in percent
    """

    mse: float
    rmse: float
    mae: float
    r2: float
    mape: float

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass
class QualityAssessment:
    """Verdict produced by ``assess_model_quality``."""

    overall: QualityTier
    r2_score: QualityTier
    data_quality: QualityTier
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "overall": self.overall.value,
            "r2_score": self.r2_score.value,
            "data_quality": self.data_quality.value,
            "recommendations": list(self.recommendations),
        }


def calculate_metrics(
    predictions: Sequence[float] | np.ndarray,
    actuals: Sequence[float] | np.ndarray,
) -> RegressionMetrics:
    """Compute MSE, RMSE, MAE, R² and MAPE.

    R² is 1 - SS_res / SS_tot. When every actual value is the same (SS_tot
    is 0) R² is reported as 1.0 for a perfect fit and 0.0 otherwise.
    MAPE is (MAE / mean(actuals)) * 100; with a zero mean it is 0.0 for a
    perfect fit and infinity otherwise.

    Args:
        predictions: Predicted values
        actuals: Observed values, same length as predictions

    Returns:
        RegressionMetrics

    Raises:
        ShapeMismatchError: If the arrays differ in length or are empty
    """
    y_pred = np.asarray(predictions, dtype=np.float64).ravel()
    y_true = np.asarray(actuals, dtype=np.float64).ravel()

    if y_pred.shape[0] != y_true.shape[0]:
        raise ShapeMismatchError(
            "Predictions and actuals must have the same length",
            predictions_length=int(y_pred.shape[0]),
            actuals_length=int(y_true.shape[0]),
        )
    if y_true.shape[0] == 0:
        raise ShapeMismatchError(
            "Cannot compute metrics on empty arrays",
            predictions_length=0,
            actuals_length=0,
        )

    residuals = y_pred - y_true

    mse = float(np.mean(np.square(residuals)))
    rmse = float(np.sqrt(mse))
    mae = float(np.mean(np.abs(residuals)))

    mean_actual = float(np.mean(y_true))
    ss_res = float(np.sum(np.square(residuals)))
    ss_tot = float(np.sum(np.square(y_true - mean_actual)))
    if ss_tot != 0:
        r2 = 1.0 - ss_res / ss_tot
    else:
        r2 = 1.0 if ss_res == 0 else 0.0

    if mean_actual != 0:
        mape = mae / mean_actual * 100
    else:
        mape = 0.0 if mae == 0 else float("inf")

    return RegressionMetrics(mse=mse, rmse=rmse, mae=mae, r2=r2, mape=mape)


def _rate_r2(r2: float) -> QualityTier:
    if r2 > 0.8:
        return QualityTier.EXCELLENT
    if r2 > 0.6:
        return QualityTier.GOOD
    if r2 > 0.4:
        return QualityTier.FAIR
    return QualityTier.POOR


def _rate_sample_size(sample_size: int) -> QualityTier:
    if sample_size >= 50:
        return QualityTier.EXCELLENT
    if sample_size >= 20:
        return QualityTier.GOOD
    if sample_size >= 10:
        return QualityTier.FAIR
    return QualityTier.POOR


def assess_model_quality(metrics: Any, sample_size: int) -> QualityAssessment:
    """Rate a model from its metrics and the amount of data it saw.

    Args:
        metrics: Anything exposing ``r2`` and ``mape`` attributes
            (RegressionMetrics, EvaluationResult)
        sample_size: Number of invoices available for training

    Returns:
        QualityAssessment with tiers and recommendations
    """
    r2_tier = _rate_r2(metrics.r2)
    data_tier = _rate_sample_size(sample_size)

    if r2_tier is QualityTier.EXCELLENT and data_tier is QualityTier.EXCELLENT:
        overall = QualityTier.EXCELLENT
    elif r2_tier is QualityTier.GOOD and data_tier is QualityTier.GOOD:
        overall = QualityTier.GOOD
    elif r2_tier is QualityTier.FAIR or data_tier is QualityTier.FAIR:
        overall = QualityTier.FAIR
    else:
        overall = QualityTier.POOR

    recommendations = []
    if sample_size < 20:
        recommendations.append(RECOMMEND_MORE_DATA)
    if metrics.r2 < 0.6:
        recommendations.append(RECOMMEND_DATA_QUALITY)
    if metrics.mape > 20:
        recommendations.append(RECOMMEND_CONSISTENCY)
    if overall is QualityTier.EXCELLENT:
        recommendations.append(RECOMMEND_USE_MODEL)

    assessment = QualityAssessment(
        overall=overall,
        r2_score=r2_tier,
        data_quality=data_tier,
        recommendations=recommendations,
    )

    logger.info(
        "model_quality_assessed",
        overall=overall.value,
        r2_score=r2_tier.value,
        data_quality=data_tier.value,
        sample_size=sample_size,
    )

    return assessment
