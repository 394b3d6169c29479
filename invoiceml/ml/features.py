"""Feature extraction for invoice analytics.

Turns invoice records into the numeric inputs of the three models:

1. Per-invoice calendar/amount features, chronologically sorted (forecaster)
2. Per-customer aggregates (segmenter)
3. Per-invoice amount features, dates not required (anomaly detector)

Normalization divides every feature by a fixed constant sized for typical
small-business invoices. The constants are not fitted to the data, so
outliers produce values above 1; the networks tolerate this.
"""

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import numpy as np

from invoiceml.ml.records import InvoiceRecord
from invoiceml.utils.logging import get_logger

logger = get_logger(__name__)

# Normalization divisors
DAY_OF_WEEK_SCALE = 6.0
DAY_OF_MONTH_SCALE = 31.0
MONTH_SCALE = 11.0
QUARTER_SCALE = 3.0
ITEM_COUNT_SCALE = 10.0
ITEM_PRICE_SCALE = 1000.0
TOTAL_SCALE = 10000.0

# Customer aggregate divisors
TOTAL_SPENT_SCALE = 10000.0
INVOICE_COUNT_SCALE = 10.0
AVG_INVOICE_VALUE_SCALE = 1000.0
RECENCY_SCALE = 365.0

UNKNOWN_CUSTOMER = "Unknown"
UNKNOWN_PRODUCT = "Unknown"

SEQUENCE_FEATURE_NAMES = (
    "day_of_week",
    "day_of_month",
    "month",
    "quarter",
    "item_count",
    "avg_item_price",
    "total",
)
CUSTOMER_FEATURE_NAMES = (
    "total_spent",
    "invoice_count",
    "avg_invoice_value",
    "days_since_last_purchase",
)
ANOMALY_FEATURE_NAMES = ("total", "item_count", "avg_item_price", "max_item_price")


def calendar_features(moment: datetime) -> tuple[int, int, int, int]:
    """Calendar decomposition of a timestamp.

    Returns:
        (day_of_week with 0=Sunday, day_of_month 1-31, month 0-11, quarter 0-3)
    """
    day_of_week = (moment.weekday() + 1) % 7
    month = moment.month - 1
    return day_of_week, moment.day, month, month // 3


def normalize_calendar(moment: datetime) -> tuple[float, float, float, float]:
    """Normalized calendar features of a timestamp."""
    day_of_week, day_of_month, month, quarter = calendar_features(moment)
    return (
        day_of_week / DAY_OF_WEEK_SCALE,
        day_of_month / DAY_OF_MONTH_SCALE,
        month / MONTH_SCALE,
        quarter / QUARTER_SCALE,
    )


@dataclass(frozen=True)
class FeatureVector:
    """Per-invoice features for time-series learning.

    Attributes:
        day_of_week: 0 (Sunday) to 6 (Saturday)
        day_of_month: 1 to 31
        month: 0 (January) to 11 (December)
        quarter: 0 to 3
        total: Raw invoice total
        item_count: Number of invoice lines
        avg_item_price: total / item_count, 0 for invoices without lines
        sequence_index: Position in chronological order
        timestamp: Resolved invoice timestamp (UTC)
    """

    day_of_week: int
    day_of_month: int
    month: int
    quarter: int
    total: float
    item_count: int
    avg_item_price: float
    sequence_index: int
    timestamp: datetime

    def normalized(self) -> tuple[float, ...]:
        """The seven normalized model inputs, in SEQUENCE_FEATURE_NAMES order."""
        return (
            self.day_of_week / DAY_OF_WEEK_SCALE,
            self.day_of_month / DAY_OF_MONTH_SCALE,
            self.month / MONTH_SCALE,
            self.quarter / QUARTER_SCALE,
            self.item_count / ITEM_COUNT_SCALE,
            self.avg_item_price / ITEM_PRICE_SCALE,
            self.total / TOTAL_SCALE,
        )


@dataclass
class CustomerAggregate:
    """Spending profile of one customer.

    Built while folding a user's invoices and not modified afterwards.
    """

    name: str
    total_spent: float = 0.0
    invoice_count: int = 0
    avg_invoice_value: float = 0.0
    unique_item_count: int = 0
    days_since_last_purchase: int | None = None
    last_purchase: datetime | None = None
    products: set[str] = field(default_factory=set, repr=False)

    def normalized(self) -> tuple[float, float, float, float]:
        """The four normalized model inputs, in CUSTOMER_FEATURE_NAMES order."""
        recency = self.days_since_last_purchase or 0
        return (
            self.total_spent / TOTAL_SPENT_SCALE,
            self.invoice_count / INVOICE_COUNT_SCALE,
            self.avg_invoice_value / AVG_INVOICE_VALUE_SCALE,
            recency / RECENCY_SCALE,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "total_spent": float(self.total_spent),
            "invoice_count": self.invoice_count,
            "avg_invoice_value": float(self.avg_invoice_value),
            "unique_item_count": self.unique_item_count,
            "days_since_last_purchase": self.days_since_last_purchase,
            "last_purchase": self.last_purchase.isoformat() if self.last_purchase else None,
        }


@dataclass(frozen=True)
class AnomalyFeatures:
    """Normalized amount features of one invoice, with its source record."""

    total: float
    item_count: float
    avg_item_price: float
    max_item_price: float
    invoice: InvoiceRecord = field(compare=False, repr=False)

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.total, self.item_count, self.avg_item_price, self.max_item_price)


class FeatureExtractor:
    """Converts invoice records into feature vectors.

    None of the methods raise on empty or undated input; they return None
    (or an empty list) and leave the decision to the caller.

    Example:
        >>> extractor = FeatureExtractor()
        >>> features = extractor.extract_invoice_features(invoices)
        >>> if features is None:
        ...     print("No dated invoices")
    """

    def extract_invoice_features(
        self, invoices: Iterable[InvoiceRecord]
    ) -> list[FeatureVector] | None:
        """Chronologically sorted per-invoice features.

        Args:
            invoices: Invoice records in any order

        Returns:
            Feature vectors sorted by timestamp, or None when there is
            nothing dated to extract
        """
        dated = [invoice for invoice in invoices if invoice.timestamp is not None]
        if not dated:
            return None

        # Stable sort: invoices sharing a timestamp keep input order
        dated.sort(key=lambda invoice: invoice.timestamp)

        features = []
        for index, invoice in enumerate(dated):
            moment = invoice.timestamp
            day_of_week, day_of_month, month, quarter = calendar_features(moment)
            item_count = invoice.item_count
            avg_item_price = invoice.total / item_count if item_count > 0 else 0.0

            features.append(
                FeatureVector(
                    day_of_week=day_of_week,
                    day_of_month=day_of_month,
                    month=month,
                    quarter=quarter,
                    total=invoice.total,
                    item_count=item_count,
                    avg_item_price=avg_item_price,
                    sequence_index=index,
                    timestamp=moment,
                )
            )

        logger.debug("invoice_features_extracted", count=len(features))
        return features

    def aggregate_customers(
        self,
        invoices: Iterable[InvoiceRecord],
        reference_time: datetime | None = None,
    ) -> dict[str, CustomerAggregate] | None:
        """Fold invoices into one aggregate per customer name.

        Names are matched exactly (case sensitive). Recency is measured
        against ``reference_time``, which defaults to the wall clock at call
        time, so results drift if they are kept around.

        Args:
            invoices: Invoice records
            reference_time: Instant recency is measured from

        Returns:
            Aggregates keyed by customer name in first-seen order, or None
            when there are no invoices
        """
        reference_time = reference_time or datetime.now(timezone.utc)
        if reference_time.tzinfo is None:
            reference_time = reference_time.replace(tzinfo=timezone.utc)

        customers: dict[str, CustomerAggregate] = {}

        for invoice in invoices:
            name = invoice.customer_name or UNKNOWN_CUSTOMER
            customer = customers.get(name)
            if customer is None:
                customer = customers[name] = CustomerAggregate(name=name)

            customer.total_spent += invoice.total
            customer.invoice_count += 1

            moment = invoice.timestamp
            if moment is not None and (
                customer.last_purchase is None or moment > customer.last_purchase
            ):
                customer.last_purchase = moment

            for item in invoice.items:
                customer.products.add(item.product_name or UNKNOWN_PRODUCT)

        if not customers:
            return None

        for customer in customers.values():
            customer.avg_invoice_value = customer.total_spent / customer.invoice_count
            customer.unique_item_count = len(customer.products)
            if customer.last_purchase is not None:
                elapsed = reference_time - customer.last_purchase
                customer.days_since_last_purchase = math.floor(elapsed / timedelta(days=1))

        logger.debug("customers_aggregated", count=len(customers))
        return customers

    def extract_anomaly_features(self, invoices: Iterable[InvoiceRecord]) -> list[AnomalyFeatures]:
        """Normalized amount features for every invoice, in input order."""
        features = []
        for invoice in invoices:
            item_count = invoice.item_count
            avg_item_price = invoice.total / item_count if item_count > 0 else 0.0
            max_item_price = max((item.price for item in invoice.items), default=0.0)

            features.append(
                AnomalyFeatures(
                    total=invoice.total / TOTAL_SCALE,
                    item_count=item_count / ITEM_COUNT_SCALE,
                    avg_item_price=avg_item_price / ITEM_PRICE_SCALE,
                    max_item_price=max_item_price / ITEM_PRICE_SCALE,
                    invoice=invoice,
                )
            )
        return features


def customer_matrix(customers: Sequence[CustomerAggregate]) -> np.ndarray:
    """Stack normalized customer features into a (n, 4) float32 array."""
    return np.asarray([c.normalized() for c in customers], dtype=np.float32).reshape(-1, 4)


def anomaly_matrix(features: Sequence[AnomalyFeatures]) -> np.ndarray:
    """Stack anomaly features into a (n, 4) float32 array."""
    return np.asarray([f.as_tuple() for f in features], dtype=np.float32).reshape(-1, 4)
