"""Tests for customer segmentation."""

from datetime import datetime, timezone

import pytest

from invoiceml.exceptions import InsufficientDataError, NotTrainedError, ValidationError
from invoiceml.ml.models.segmenter import (
    CustomerSegmenter,
    SegmentedCustomer,
    round_robin_labels,
    summarize_segments,
)

pytestmark = pytest.mark.unit

REFERENCE_TIME = datetime(2024, 4, 1, tzinfo=timezone.utc)


def segmented(name: str, segment: int, total_spent: float) -> SegmentedCustomer:
    return SegmentedCustomer(
        name=name,
        total_spent=total_spent,
        invoice_count=1,
        avg_invoice_value=total_spent,
        unique_item_count=1,
        days_since_last_purchase=None,
        last_purchase=None,
        segment=segment,
        confidence=1.0,
    )


class TestRoundRobinLabels:
    def test_labels_cycle(self):
        assert round_robin_labels(5, 3).tolist() == [0, 1, 2, 0, 1]


class TestCustomerSegmenter:
    """Test segmenter training and prediction."""

    @pytest.mark.asyncio
    async def test_fewer_customers_than_segments(self, daily_invoices_factory):
        invoices = daily_invoices_factory([100.0] * 10, customers=["Acme", "Beta"])

        with pytest.raises(InsufficientDataError) as exc_info:
            await CustomerSegmenter(epochs=2).train(invoices, k=3)

        assert exc_info.value.required == 3
        assert exc_info.value.available == 2

    @pytest.mark.asyncio
    async def test_three_customers_three_segments(self, daily_invoices_factory):
        invoices = daily_invoices_factory(
            [100.0, 900.0, 5000.0] * 3, customers=["Acme", "Beta", "Gamma"]
        )
        segmenter = CustomerSegmenter(epochs=3, seed=5)

        await segmenter.train(invoices, k=3, reference_time=REFERENCE_TIME)
        result = await segmenter.predict_segments()

        assert [customer.name for customer in result] == ["Acme", "Beta", "Gamma"]
        assert all(customer.segment in {0, 1, 2} for customer in result)
        assert all(0.0 < customer.confidence <= 1.0 for customer in result)
        assert result[0].days_since_last_purchase is not None

    @pytest.mark.asyncio
    async def test_kmeans_labeling(self, linear_invoices):
        segmenter = CustomerSegmenter(epochs=3, labeling="kmeans", seed=5)

        history = await segmenter.train(linear_invoices, k=2, reference_time=REFERENCE_TIME)
        result = await segmenter.predict_segments()

        assert history.epochs_run == 3
        assert len(result) == 4
        assert all(customer.segment in {0, 1} for customer in result)

    @pytest.mark.asyncio
    async def test_predict_requires_training(self):
        with pytest.raises(NotTrainedError):
            await CustomerSegmenter().predict_segments()

    @pytest.mark.asyncio
    async def test_stopped_run_leaves_model_untrained(self, linear_invoices):
        segmenter = CustomerSegmenter(epochs=5)

        history = await segmenter.train(
            linear_invoices,
            k=2,
            progress_callback=lambda percent, logs: segmenter.request_stop(),
            reference_time=REFERENCE_TIME,
        )

        assert history.interrupted is True
        assert segmenter.trained is False
        with pytest.raises(NotTrainedError):
            await segmenter.predict_segments()

    @pytest.mark.asyncio
    async def test_single_segment_rejected(self, linear_invoices):
        with pytest.raises(ValidationError):
            await CustomerSegmenter(epochs=1).train(linear_invoices, k=1)

    def test_unknown_labeling_rejected(self):
        with pytest.raises(ValidationError):
            CustomerSegmenter(labeling="random")

    @pytest.mark.asyncio
    async def test_to_dict(self, linear_invoices):
        segmenter = CustomerSegmenter(epochs=1)
        await segmenter.train(linear_invoices, k=3, reference_time=REFERENCE_TIME)

        data = (await segmenter.predict_segments())[0].to_dict()

        assert data["name"] == "Acme Srl"
        assert isinstance(data["segment"], int)
        assert data["last_purchase"].startswith("2024-03")


class TestSummarizeSegments:
    def test_per_segment_aggregates(self):
        customers = [
            segmented("a", 1, 100.0),
            segmented("b", 0, 50.0),
            segmented("c", 1, 300.0),
        ]

        summary = summarize_segments(customers)

        assert summary == [
            {"segment": 0, "customer_count": 1, "total_spent": 50.0, "avg_spent": 50.0},
            {"segment": 1, "customer_count": 2, "total_spent": 400.0, "avg_spent": 200.0},
        ]

    def test_empty(self):
        assert summarize_segments([]) == []
