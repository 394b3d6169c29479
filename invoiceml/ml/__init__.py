"""Machine learning analytics for invoice histories.

Pipeline:
1. records: validated invoice snapshot
2. features / sequences: normalized model inputs
3. models: forecaster, segmenter, anomaly detector
4. metrics: regression metrics and quality assessment
5. session: trains and runs the three models in order
"""

from invoiceml.ml.config import MLConfig, get_ml_config
from invoiceml.ml.metrics import (
    QualityAssessment,
    QualityTier,
    RegressionMetrics,
    assess_model_quality,
    calculate_metrics,
)
from invoiceml.ml.records import InvoiceItem, InvoiceRecord, load_invoices, parse_invoices

__all__ = [
    "MLConfig",
    "get_ml_config",
    "InvoiceItem",
    "InvoiceRecord",
    "load_invoices",
    "parse_invoices",
    "RegressionMetrics",
    "QualityAssessment",
    "QualityTier",
    "calculate_metrics",
    "assess_model_quality",
]
