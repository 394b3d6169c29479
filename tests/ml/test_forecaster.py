"""Tests for the LSTM revenue forecaster."""

import math

import pytest
import pytest_asyncio

from invoiceml.exceptions import InsufficientDataError, NotTrainedError
from invoiceml.ml.metrics import calculate_metrics
from invoiceml.ml.models.forecaster import EvaluationResult, RevenueForecaster

pytestmark = pytest.mark.unit


@pytest.fixture
def forecaster() -> RevenueForecaster:
    return RevenueForecaster(seed=7)


@pytest_asyncio.fixture
async def trained(forecaster, linear_invoices) -> RevenueForecaster:
    await forecaster.train(linear_invoices, epochs=3)
    return forecaster


class TestTraining:
    """Test forecaster training."""

    @pytest.mark.asyncio
    async def test_train_sets_state(self, forecaster, linear_invoices):
        history = await forecaster.train(linear_invoices, epochs=3)

        assert forecaster.trained is True
        assert history.epochs_run == 3
        assert forecaster.target_mean == pytest.approx(310.0)
        assert forecaster.target_std > 0

    @pytest.mark.asyncio
    async def test_requires_eight_dated_invoices(self, forecaster, daily_invoices_factory):
        with pytest.raises(InsufficientDataError) as exc_info:
            await forecaster.train(daily_invoices_factory([100.0] * 7), epochs=1)

        assert exc_info.value.required == 8
        assert exc_info.value.available == 7
        assert forecaster.trained is False

    @pytest.mark.asyncio
    async def test_undated_invoices_do_not_count(
        self, forecaster, daily_invoices_factory, invoice_factory
    ):
        invoices = daily_invoices_factory([100.0] * 7) + [invoice_factory(100.0)] * 5

        with pytest.raises(InsufficientDataError):
            await forecaster.train(invoices, epochs=1)

    @pytest.mark.asyncio
    async def test_eight_invoices_train_on_single_sequence(
        self, forecaster, daily_invoices_factory
    ):
        history = await forecaster.train(
            daily_invoices_factory([100.0 + i for i in range(8)]), epochs=2
        )

        assert history.epochs_run == 2
        assert "val_loss" not in history.final_logs

    @pytest.mark.asyncio
    async def test_constant_totals_use_unit_std(self, forecaster, daily_invoices_factory):
        await forecaster.train(daily_invoices_factory([200.0] * 10), epochs=2)

        assert forecaster.target_mean == 200.0
        assert forecaster.target_std == 1.0

    @pytest.mark.asyncio
    async def test_progress_callback(self, forecaster, linear_invoices):
        reports = []

        await forecaster.train(
            linear_invoices,
            epochs=4,
            progress_callback=lambda percent, logs: reports.append(percent),
        )

        assert reports[-1] == 100.0

    @pytest.mark.asyncio
    async def test_stopped_run_leaves_model_untrained(self, forecaster, linear_invoices):
        def stop_after_first_epoch(percent, logs):
            if percent > 0:
                forecaster.request_stop()

        history = await forecaster.train(
            linear_invoices, epochs=4, progress_callback=stop_after_first_epoch
        )

        assert history.interrupted is True
        assert history.epochs_run == 1
        assert forecaster.trained is False
        assert forecaster.target_mean is None
        with pytest.raises(NotTrainedError):
            await forecaster.forecast(linear_invoices, days=3)

    @pytest.mark.asyncio
    async def test_stopped_retrain_keeps_previous_model(self, trained, daily_invoices_factory):
        network = trained.network
        mean = trained.target_mean

        history = await trained.train(
            daily_invoices_factory([10.0] * 12),
            epochs=4,
            progress_callback=lambda percent, logs: trained.request_stop(),
        )

        assert history.interrupted is True
        assert trained.trained is True
        assert trained.network is network
        assert trained.target_mean == mean

    @pytest.mark.asyncio
    async def test_summary(self, forecaster, linear_invoices):
        assert forecaster.summary() is None

        await forecaster.train(linear_invoices, epochs=1)
        summary = forecaster.summary()

        assert [layer["name"] for layer in summary["layers"]] == [
            "lstm_1",
            "dropout_1",
            "lstm_2",
            "dropout_2",
            "dense",
            "output",
        ]
        assert summary["total_parameters"] > 0


class TestForecast:
    """Test the autoregressive rollout."""

    @pytest.mark.asyncio
    async def test_untrained_model_refuses(self, forecaster, linear_invoices):
        with pytest.raises(NotTrainedError):
            await forecaster.forecast(linear_invoices)

    @pytest.mark.asyncio
    async def test_horizon_and_non_negative(self, trained, linear_invoices):
        forecast = await trained.forecast(linear_invoices, days=30)

        assert len(forecast) == 30
        assert all(value >= 0 and math.isfinite(value) for value in forecast)

    @pytest.mark.asyncio
    async def test_reproducible(self, trained, linear_invoices):
        first = await trained.forecast(linear_invoices, days=10)
        second = await trained.forecast(linear_invoices, days=10)

        assert first == second

    @pytest.mark.asyncio
    async def test_needs_a_full_window(self, trained, daily_invoices_factory):
        with pytest.raises(InsufficientDataError) as exc_info:
            await trained.forecast(daily_invoices_factory([100.0] * 6), days=5)

        assert exc_info.value.required == 7

    @pytest.mark.asyncio
    async def test_exactly_one_window_is_enough(self, trained, daily_invoices_factory):
        forecast = await trained.forecast(daily_invoices_factory([100.0] * 7), days=3)

        assert len(forecast) == 3

    @pytest.mark.asyncio
    async def test_failed_simulation_falls_back_to_deterministic_rollout(
        self, trained, linear_invoices
    ):
        trained.noise_std = 0.0
        deterministic = await trained.forecast(linear_invoices, days=5)

        trained.noise_std = float("inf")
        recovered = await trained.forecast(linear_invoices, days=5)

        assert recovered == pytest.approx(deterministic)


class TestEvaluation:
    """Test evaluation against actual totals."""

    @pytest.mark.asyncio
    async def test_untrained_model_refuses(self, forecaster, linear_invoices):
        with pytest.raises(NotTrainedError):
            await forecaster.evaluate_model(linear_invoices)

    @pytest.mark.asyncio
    async def test_result_fields(self, trained, linear_invoices):
        result = await trained.evaluate_model(linear_invoices)

        assert isinstance(result, EvaluationResult)
        assert result.sample_count == 8
        assert result.rmse == pytest.approx(math.sqrt(result.mse))
        assert set(result.to_dict()) == {
            "loss",
            "mae_normalized",
            "mse",
            "rmse",
            "mae",
            "r2",
            "mape",
            "sample_count",
        }

    @pytest.mark.asyncio
    async def test_too_few_invoices(self, trained, daily_invoices_factory):
        with pytest.raises(InsufficientDataError):
            await trained.evaluate_model(daily_invoices_factory([100.0] * 7))


class TestEndToEnd:
    """Train, forecast and evaluate on a linear revenue trend."""

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_beats_mean_baseline(self, linear_invoices):
        forecaster = RevenueForecaster(
            seed=11,
            learning_rate=0.01,
            validation_split=0.0,
            early_stopping_patience=1000,
        )

        await forecaster.train(linear_invoices, epochs=200)
        forecast = await forecaster.forecast(linear_invoices, days=30)
        result = await forecaster.evaluate_model(linear_invoices)

        actuals = [100.0 + 20 * i for i in range(7, 15)]
        baseline = calculate_metrics([sum(actuals) / len(actuals)] * len(actuals), actuals)

        assert len(forecast) == 30
        assert all(value >= 0 for value in forecast)
        assert result.r2 > baseline.r2
