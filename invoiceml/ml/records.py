"""Invoice records consumed by the analytics models.

Records arrive from the application's data store as loosely typed documents
(camelCase keys, dates as ISO strings or epoch numbers). They are validated
once into frozen pydantic models so the feature pipeline can rely on them.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
)
from pydantic import ValidationError as PydanticValidationError

from invoiceml.exceptions import FileFormatError, ValidationError, wrap_exception
from invoiceml.utils.logging import get_logger

logger = get_logger(__name__)


class InvoiceItem(BaseModel):
    """A single invoice line."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    product_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("product_name", "productName"),
    )
    quantity: float = Field(default=0.0)
    price: float = Field(default=0.0)


class InvoiceRecord(BaseModel):
    """An invoice as stored by the invoicing application.

    The timestamp is resolved from ``created_at`` first, then ``date``.
    Records without either are not eligible for time-series features.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str | int | None = None
    customer_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("customer_name", "customerName"),
    )
    total: float = Field(default=0.0, ge=0.0)
    items: tuple[InvoiceItem, ...] = Field(default_factory=tuple)
    created_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("created_at", "createdAt"),
    )
    date: datetime | None = None

    @field_validator("total", "items", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any, info: ValidationInfo) -> Any:
        """Stored documents may hold null for a missing total or item list."""
        if v is None:
            return 0.0 if info.field_name == "total" else ()
        return v

    @field_validator("created_at", "date")
    @classmethod
    def to_utc(cls, v: datetime | None) -> datetime | None:
        """Store timestamps as UTC; naive values are taken to be UTC already."""
        if v is None:
            return None
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @property
    def timestamp(self) -> datetime | None:
        """Resolved invoice timestamp, or None when the record is undated."""
        return self.created_at or self.date

    @property
    def item_count(self) -> int:
        return len(self.items)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return self.model_dump(mode="json")


def parse_invoices(raw_invoices: list[dict[str, Any]]) -> list[InvoiceRecord]:
    """Validate raw invoice documents.

    Args:
        raw_invoices: Documents as fetched from the data store

    Returns:
        Validated records, in input order

    Raises:
        ValidationError: If a document cannot be validated
    """
    records = []
    for index, raw in enumerate(raw_invoices):
        try:
            records.append(InvoiceRecord.model_validate(raw))
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid invoice record at position {index}",
                field=str(e.errors()[0].get("loc", "")) if e.errors() else None,
                value=raw,
                original_error=e,
            ) from e
    return records


def load_invoices(path: str | Path) -> list[InvoiceRecord]:
    """Load an invoice snapshot from a JSON file.

    The file holds either a JSON array of invoice documents or an object
    with an ``invoices`` array.

    Args:
        path: Path to the JSON snapshot

    Returns:
        Validated invoice records

    Raises:
        FileFormatError: If the file is missing, unreadable, not UTF-8 or not valid JSON
        ValidationError: If a record is malformed
    """
    path = Path(path)

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise wrap_exception(
            e,
            "Cannot read invoice snapshot",
            exception_class=FileFormatError,
            file_path=str(path),
        ) from e
    except UnicodeDecodeError as e:
        raise wrap_exception(
            e,
            "Invoice snapshot is not UTF-8 text",
            exception_class=FileFormatError,
            file_path=str(path),
        ) from e
    except json.JSONDecodeError as e:
        raise wrap_exception(
            e,
            "Invoice snapshot is not valid JSON",
            exception_class=FileFormatError,
            file_path=str(path),
        ) from e

    if isinstance(payload, dict):
        payload = payload.get("invoices")

    if not isinstance(payload, list):
        raise FileFormatError(
            "Invoice snapshot must be a JSON array or an object with an 'invoices' array",
            file_path=str(path),
        )

    records = parse_invoices(payload)
    logger.info("invoices_loaded", path=str(path), count=len(records))
    return records
