"""ML Analytics Configuration.

Pydantic-based configuration for the revenue forecaster, customer segmenter
and anomaly detector. Every field can be overridden through an environment
variable with the ``INVOICEML_ML_`` prefix.

Environment Variables (selection):
- INVOICEML_ML_SEED: Seed for weight init, shuffling and forecast noise (default: 42)
- INVOICEML_ML_FORECAST_EPOCHS: Forecaster training epochs (default: 50)
- INVOICEML_ML_FORECAST_DAYS: Forecast horizon in days (default: 30)
- INVOICEML_ML_SEGMENT_COUNT: Number of customer segments (default: 3)
- INVOICEML_ML_SEGMENT_LABELING: round_robin | kmeans (default: round_robin)
- INVOICEML_ML_ANOMALY_THRESHOLD: Reconstruction error threshold (default: 0.95)
- INVOICEML_ML_TRAINING_TIMEOUT_SECONDS: Per-model training budget (default: unset)
"""

from typing import Any

from pydantic import Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from invoiceml.exceptions import ConfigurationError
from invoiceml.utils.logging import get_logger

logger = get_logger(__name__)

SEGMENT_LABELING_STRATEGIES = ("round_robin", "kmeans")


class MLConfig(BaseSettings):
    """Configuration for the analytics models.

    Example:
        >>> config = MLConfig()
        >>> config.sequence_length
        7
        >>>
        >>> # Override via environment
        >>> os.environ['INVOICEML_ML_FORECAST_EPOCHS'] = '20'
        >>> MLConfig().forecast_epochs
        20
    """

    model_config = SettingsConfigDict(
        env_prefix="INVOICEML_ML_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Reproducibility
    seed: int = Field(default=42, ge=0, description="Seed threaded into every model")

    # Revenue forecaster
    sequence_length: int = Field(
        default=7,
        ge=1,
        le=60,
        description="Number of past invoices in one input window",
    )
    forecast_epochs: int = Field(default=50, ge=1, le=1000)
    forecast_days: int = Field(default=30, ge=1, le=365, description="Forecast horizon")
    forecast_learning_rate: float = Field(default=0.001, gt=0.0, le=1.0)
    forecast_dropout: float = Field(default=0.3, ge=0.0, lt=1.0)
    forecast_simulations: int = Field(
        default=3,
        ge=1,
        le=100,
        description="Stochastic rollouts averaged per forecast",
    )
    forecast_noise_std: float = Field(
        default=0.01,
        ge=0.0,
        description="Gaussian noise added to each normalized step prediction",
    )

    # Shared training loop
    validation_split: float = Field(default=0.2, ge=0.0, lt=1.0)
    max_batch_size: int = Field(default=16, ge=1, le=1024)
    early_stopping_warmup: int = Field(
        default=10,
        ge=0,
        description="Epoch index after which non-improving epochs count against patience",
    )
    early_stopping_patience: int = Field(default=10, ge=1)
    log_every_n_epochs: int = Field(default=10, ge=1)

    # Customer segmenter
    segment_count: int = Field(default=3, ge=2, le=20)
    segment_epochs: int = Field(default=30, ge=1, le=1000)
    segment_learning_rate: float = Field(default=0.01, gt=0.0, le=1.0)
    segment_hidden_units: int = Field(default=10, ge=1)
    segment_labeling: str = Field(
        default="round_robin",
        description="Label source for the segment classifier: round_robin or kmeans",
    )

    # Anomaly detector
    anomaly_epochs: int = Field(default=50, ge=1, le=1000)
    anomaly_learning_rate: float = Field(default=0.001, gt=0.0, le=1.0)
    anomaly_threshold: float = Field(default=0.95, gt=0.0)
    anomaly_min_invoices: int = Field(default=10, ge=2)

    # Session
    min_session_invoices: int = Field(
        default=10,
        ge=1,
        description="Invoices required before a session trains anything",
    )
    training_timeout_seconds: float | None = Field(
        default=None,
        gt=0.0,
        description="Caller-level timeout applied to each training call",
    )

    @field_validator("segment_labeling")
    @classmethod
    def validate_segment_labeling(cls, v: str) -> str:
        """Validate segment labeling strategy."""
        if v.lower() not in SEGMENT_LABELING_STRATEGIES:
            raise ValueError(
                f"segment_labeling must be one of {list(SEGMENT_LABELING_STRATEGIES)}, got {v}"
            )
        return v.lower()

    def get_forecaster_params(self) -> dict[str, Any]:
        """Get RevenueForecaster constructor parameters."""
        return {
            "sequence_length": self.sequence_length,
            "learning_rate": self.forecast_learning_rate,
            "dropout": self.forecast_dropout,
            "simulations": self.forecast_simulations,
            "noise_std": self.forecast_noise_std,
            "validation_split": self.validation_split,
            "max_batch_size": self.max_batch_size,
            "early_stopping_warmup": self.early_stopping_warmup,
            "early_stopping_patience": self.early_stopping_patience,
            "log_every_n_epochs": self.log_every_n_epochs,
            "seed": self.seed,
        }

    def get_segmenter_params(self) -> dict[str, Any]:
        """Get CustomerSegmenter constructor parameters."""
        return {
            "epochs": self.segment_epochs,
            "learning_rate": self.segment_learning_rate,
            "hidden_units": self.segment_hidden_units,
            "labeling": self.segment_labeling,
            "validation_split": self.validation_split,
            "batch_size": self.max_batch_size,
            "seed": self.seed,
        }

    def get_anomaly_params(self) -> dict[str, Any]:
        """Get AnomalyDetector constructor parameters."""
        return {
            "epochs": self.anomaly_epochs,
            "learning_rate": self.anomaly_learning_rate,
            "threshold": self.anomaly_threshold,
            "min_invoices": self.anomaly_min_invoices,
            "validation_split": self.validation_split,
            "batch_size": self.max_batch_size,
            "seed": self.seed,
        }


def load_ml_config(**overrides: Any) -> MLConfig:
    """Build an MLConfig from the environment plus explicit overrides.

    Raises:
        ConfigurationError: If a value fails validation
    """
    try:
        return MLConfig(**overrides)
    except PydanticValidationError as e:
        error = e.errors()[0]
        setting = ".".join(str(part) for part in error.get("loc", ()))
        raise ConfigurationError(
            f"Invalid ML configuration: {error['msg']}",
            setting=setting or None,
            original_error=e,
        ) from e


# Global config instance (singleton pattern)
_config: MLConfig | None = None


def get_ml_config(force_reload: bool = False) -> MLConfig:
    """Get or create ML configuration.

    Args:
        force_reload: Force reload from environment

    Returns:
        MLConfig instance
    """
    global _config

    if _config is None or force_reload:
        _config = load_ml_config()
        logger.debug(
            "ml_config_loaded",
            seed=_config.seed,
            forecast_epochs=_config.forecast_epochs,
            segment_labeling=_config.segment_labeling,
        )

    return _config
