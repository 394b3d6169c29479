"""Tests for ML configuration."""

import pytest

from invoiceml.exceptions import ConfigurationError
from invoiceml.ml.config import MLConfig, get_ml_config, load_ml_config
from invoiceml.ml.models import AnomalyDetector, CustomerSegmenter, RevenueForecaster

pytestmark = pytest.mark.unit


class TestMLConfig:
    """Test defaults, validation and environment overrides."""

    def test_defaults(self):
        config = MLConfig()

        assert config.sequence_length == 7
        assert config.forecast_days == 30
        assert config.forecast_simulations == 3
        assert config.anomaly_threshold == 0.95
        assert config.segment_labeling == "round_robin"
        assert config.training_timeout_seconds is None

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("INVOICEML_ML_FORECAST_EPOCHS", "20")
        monkeypatch.setenv("INVOICEML_ML_SEGMENT_LABELING", "KMeans")

        config = MLConfig()

        assert config.forecast_epochs == 20
        assert config.segment_labeling == "kmeans"

    def test_unknown_labeling_rejected(self):
        with pytest.raises(ValueError, match="segment_labeling"):
            MLConfig(segment_labeling="random")

    @pytest.mark.parametrize(
        "field,value",
        [("segment_count", 1), ("validation_split", 1.0), ("training_timeout_seconds", 0)],
    )
    def test_range_validation(self, field, value):
        with pytest.raises(ValueError):
            MLConfig(**{field: value})

    def test_params_build_models(self):
        config = MLConfig(seed=9)

        forecaster = RevenueForecaster(**config.get_forecaster_params())
        segmenter = CustomerSegmenter(**config.get_segmenter_params())
        detector = AnomalyDetector(**config.get_anomaly_params())

        assert forecaster.seed == segmenter.seed == detector.seed == 9
        assert forecaster.get_params() == config.get_forecaster_params()

    def test_singleton(self, monkeypatch):
        first = get_ml_config(force_reload=True)
        assert get_ml_config() is first

        monkeypatch.setenv("INVOICEML_ML_SEED", "3")
        assert get_ml_config(force_reload=True).seed == 3


class TestLoadMLConfig:
    def test_overrides_applied(self):
        assert load_ml_config(seed=5, segment_labeling="kmeans").seed == 5

    def test_invalid_value_raises_configuration_error(self):
        with pytest.raises(ConfigurationError, match="Invalid ML configuration") as exc_info:
            load_ml_config(segment_labeling="random")

        assert exc_info.value.context["setting"] == "segment_labeling"
        assert exc_info.value.original_error is not None

    def test_invalid_environment_raises_configuration_error(self, monkeypatch):
        monkeypatch.setenv("INVOICEML_ML_SEED", "-1")

        with pytest.raises(ConfigurationError):
            get_ml_config(force_reload=True)
