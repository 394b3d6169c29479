"""Tests for the analytics session."""

import json
from datetime import datetime, timezone

import pytest

from invoiceml.exceptions import InsufficientDataError, NotTrainedError, TrainingTimeoutError
from invoiceml.ml.session import STAGES, AnalyticsSession
from invoiceml.utils.logging import get_correlation_id

pytestmark = pytest.mark.integration

REFERENCE_TIME = datetime(2024, 4, 1, tzinfo=timezone.utc)


class TestAnalyticsSession:
    """Test the sequential training pipeline."""

    @pytest.mark.asyncio
    async def test_requires_ten_invoices(self, linear_invoices, fast_config):
        session = AnalyticsSession(linear_invoices[:9], fast_config)

        with pytest.raises(InsufficientDataError) as exc_info:
            await session.run()

        assert exc_info.value.required == 10

    @pytest.mark.asyncio
    async def test_full_run(self, linear_invoices, fast_config):
        session = AnalyticsSession(linear_invoices, fast_config, reference_time=REFERENCE_TIME)

        report = await session.run(k=3)

        assert report.succeeded
        assert report.invoice_count == 15
        assert len(report.forecast) == fast_config.forecast_days
        assert report.evaluation.sample_count == 8
        assert report.quality.data_quality.value == "fair"
        assert len(report.segments) == 4
        assert sum(row["customer_count"] for row in report.segment_summary) == 4
        assert report.anomaly_summary["total"] == 15
        assert list(report.histories) == list(STAGES)

    @pytest.mark.asyncio
    async def test_arguments_override_config(self, linear_invoices, fast_config):
        report = await AnalyticsSession(linear_invoices, fast_config).run(days=3, epochs=2, k=2)

        assert len(report.forecast) == 3
        assert report.histories["forecast"].epochs_run == 2
        assert {customer.segment for customer in report.segments} <= {0, 1}

    @pytest.mark.asyncio
    async def test_progress_reported_in_stage_order(self, linear_invoices, fast_config):
        updates = []
        session = AnalyticsSession(linear_invoices, fast_config, updates.append)

        await session.run()

        first_seen = list(dict.fromkeys(update.model for update in updates))
        assert first_seen == list(STAGES)
        assert updates[-1].overall == 100.0
        assert session.progress == {stage: 100.0 for stage in STAGES}
        overall = [update.overall for update in updates]
        assert overall == sorted(overall)

    @pytest.mark.asyncio
    async def test_failed_stage_is_recorded(self, linear_invoices, fast_config):
        # Four customers cannot fill five segments
        report = await AnalyticsSession(linear_invoices, fast_config).run(k=5)

        assert set(report.errors) == {"segmentation"}
        assert report.segments is None
        assert report.forecast is not None
        assert report.anomaly_summary is not None

    @pytest.mark.asyncio
    async def test_strict_session_raises(self, linear_invoices, fast_config):
        session = AnalyticsSession(linear_invoices, fast_config, strict=True)

        with pytest.raises(InsufficientDataError):
            await session.run(k=5)

    @pytest.mark.asyncio
    async def test_training_timeout(self, linear_invoices, fast_config):
        config = fast_config.model_copy(
            update={"training_timeout_seconds": 1e-6, "forecast_epochs": 200}
        )
        session = AnalyticsSession(linear_invoices, config, strict=True)

        with pytest.raises(TrainingTimeoutError):
            await session.run()

        assert session.forecaster.history.epochs_run < 200
        assert session.forecaster.trained is False
        with pytest.raises(NotTrainedError):
            await session.forecaster.forecast(linear_invoices, days=3)

    @pytest.mark.asyncio
    async def test_correlation_id_scoped_to_run(self, linear_invoices, fast_config):
        report = await AnalyticsSession(linear_invoices, fast_config).run()

        assert report.correlation_id
        assert get_correlation_id() is None

    @pytest.mark.asyncio
    async def test_report_is_json_serializable(self, linear_invoices, fast_config):
        report = await AnalyticsSession(
            linear_invoices, fast_config, reference_time=REFERENCE_TIME
        ).run()

        data = json.loads(json.dumps(report.to_dict()))

        assert data["quality"]["overall"] in {"excellent", "good", "fair", "poor"}
        assert data["training"]["forecast"]["epochs_run"] == fast_config.forecast_epochs
        assert data["errors"] == {}
