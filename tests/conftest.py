"""
Pytest configuration and global fixtures.

This module provides invoice factories shared by the ML, CLI and utils tests.
"""

import json
import os
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from invoiceml.ml.config import MLConfig
from invoiceml.ml.records import InvoiceItem, InvoiceRecord


def make_invoice(
    total: float,
    created_at: datetime | None = None,
    customer: str | None = "Acme Srl",
    items: list[tuple[str, float, float]] | None = None,
    invoice_id: str | None = None,
) -> InvoiceRecord:
    """Build an invoice; items are (product, quantity, price) triples."""
    lines = items if items is not None else [("Consulting", 1, total)]
    return InvoiceRecord(
        id=invoice_id,
        customer_name=customer,
        total=total,
        items=tuple(
            InvoiceItem(product_name=name, quantity=qty, price=price) for name, qty, price in lines
        ),
        created_at=created_at,
    )


def make_daily_invoices(
    totals: list[float],
    start: datetime = datetime(2024, 3, 1, tzinfo=timezone.utc),
    customers: list[str] | None = None,
) -> list[InvoiceRecord]:
    """One invoice per consecutive day, customers assigned round-robin."""
    names = customers or ["Acme Srl"]
    return [
        make_invoice(
            total,
            created_at=start + timedelta(days=i),
            customer=names[i % len(names)],
            invoice_id=f"INV-{i + 1:03d}",
        )
        for i, total in enumerate(totals)
    ]


@pytest.fixture
def invoice_factory() -> Callable[..., InvoiceRecord]:
    return make_invoice


@pytest.fixture
def daily_invoices_factory() -> Callable[..., list[InvoiceRecord]]:
    return make_daily_invoices


@pytest.fixture
def linear_invoices() -> list[InvoiceRecord]:
    """15 invoices in March 2024, totals 100 to 380 in steps of 20."""
    return make_daily_invoices(
        [100.0 + 20 * i for i in range(15)],
        customers=["Acme Srl", "Beta SpA", "Gamma Snc", "Delta Srl"],
    )


@pytest.fixture
def fast_config() -> MLConfig:
    """Config with short training runs."""
    return MLConfig(
        forecast_epochs=3,
        segment_epochs=3,
        anomaly_epochs=3,
        forecast_days=5,
        seed=7,
    )


@pytest.fixture
def snapshot_file(tmp_path: Path, linear_invoices: list[InvoiceRecord]) -> Path:
    """Invoice snapshot written in the application's camelCase format."""
    documents = [
        {
            "id": invoice.id,
            "customerName": invoice.customer_name,
            "total": invoice.total,
            "items": [
                {"productName": item.product_name, "quantity": item.quantity, "price": item.price}
                for item in invoice.items
            ],
            "createdAt": invoice.created_at.isoformat(),
        }
        for invoice in linear_invoices
    ]
    path = tmp_path / "invoices.json"
    path.write_text(json.dumps(documents), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def reset_env():
    """Reset environment variables after each test."""
    original_env = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original_env)


# Markers for test categorization
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
