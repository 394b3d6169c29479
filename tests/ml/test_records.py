"""Tests for invoice record validation and snapshot loading."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from invoiceml.exceptions import FileFormatError, ValidationError
from invoiceml.ml.records import InvoiceRecord, load_invoices, parse_invoices

pytestmark = pytest.mark.unit


class TestInvoiceRecord:
    """Test InvoiceRecord parsing."""

    def test_camel_case_document(self):
        record = InvoiceRecord.model_validate(
            {
                "id": "INV-1",
                "customerName": "Acme Srl",
                "total": 250.0,
                "items": [{"productName": "Design", "quantity": 2, "price": 125.0}],
                "createdAt": "2024-03-01T10:00:00Z",
            }
        )

        assert record.customer_name == "Acme Srl"
        assert record.item_count == 1
        assert record.items[0].product_name == "Design"
        assert record.timestamp == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)

    def test_integer_id_accepted(self):
        assert InvoiceRecord.model_validate({"id": 42, "total": 1}).id == 42

    def test_created_at_preferred_over_date(self):
        record = InvoiceRecord(
            created_at=datetime(2024, 3, 2, tzinfo=timezone.utc),
            date=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )

        assert record.timestamp.month == 3

    def test_date_used_when_created_at_missing(self):
        record = InvoiceRecord.model_validate({"date": "2024-01-15T09:00:00"})

        assert record.timestamp.day == 15

    def test_undated_record(self):
        assert InvoiceRecord(total=10).timestamp is None

    def test_naive_timestamp_treated_as_utc(self):
        record = InvoiceRecord(created_at=datetime(2024, 3, 1, 12))

        assert record.timestamp.tzinfo == timezone.utc
        assert record.timestamp.hour == 12

    def test_aware_timestamp_converted_to_utc(self):
        cet = timezone(timedelta(hours=1))
        record = InvoiceRecord(created_at=datetime(2024, 3, 1, 12, tzinfo=cet))

        assert record.timestamp.hour == 11

    def test_negative_total_rejected(self):
        with pytest.raises(ValueError):
            InvoiceRecord(total=-1)

    def test_null_total_and_items_default_to_empty(self):
        record = InvoiceRecord.model_validate(
            {"total": None, "items": None, "date": "2024-01-01T00:00:00Z"}
        )

        assert record.total == 0.0
        assert record.items == ()
        assert record.item_count == 0

    def test_records_are_frozen(self):
        record = InvoiceRecord(total=10)

        with pytest.raises(ValueError):
            record.total = 20


class TestParseInvoices:
    def test_invalid_document_reports_position(self):
        with pytest.raises(ValidationError, match="position 1"):
            parse_invoices([{"total": 1}, {"total": "lots"}])

    def test_null_fields_do_not_reject_snapshot(self):
        records = parse_invoices(
            [
                {"total": None, "items": None, "date": "2024-01-01T00:00:00Z"},
                {"total": 10.0, "date": "2024-01-02T00:00:00Z"},
            ]
        )

        assert [record.total for record in records] == [0.0, 10.0]


class TestLoadInvoices:
    """Test snapshot loading from JSON files."""

    def test_array_snapshot(self, snapshot_file):
        invoices = load_invoices(snapshot_file)

        assert len(invoices) == 15
        assert invoices[0].customer_name == "Acme Srl"

    def test_object_snapshot(self, tmp_path):
        path = tmp_path / "snapshot.json"
        path.write_text(json.dumps({"invoices": [{"total": 5}, {"total": 7}]}))

        assert [invoice.total for invoice in load_invoices(path)] == [5, 7]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileFormatError) as exc_info:
            load_invoices(tmp_path / "missing.json")

        assert exc_info.value.original_error is not None

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("[{")

        with pytest.raises(FileFormatError, match="not valid JSON"):
            load_invoices(path)

    def test_non_utf8_file(self, tmp_path):
        path = tmp_path / "latin1.json"
        path.write_bytes(b"\xff\xfe[]")

        with pytest.raises(FileFormatError, match="not UTF-8") as exc_info:
            load_invoices(path)

        assert isinstance(exc_info.value.original_error, UnicodeDecodeError)

    def test_wrong_shape(self, tmp_path):
        path = tmp_path / "shape.json"
        path.write_text(json.dumps({"rows": []}))

        with pytest.raises(FileFormatError):
            load_invoices(path)


class TestSerialization:
    def test_to_dict_is_json_ready(self, invoice_factory):
        record = invoice_factory(
            120.0, created_at=datetime(2024, 3, 1, tzinfo=timezone.utc), invoice_id="INV-9"
        )

        data = record.to_dict()

        assert data["id"] == "INV-9"
        assert data["created_at"].startswith("2024-03-01")
        assert data["items"][0]["price"] == 120.0
