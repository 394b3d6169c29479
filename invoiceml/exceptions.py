"""Standardized exception hierarchy for invoiceml.

Every exception carries a human-readable message, structured context for
logging and, when wrapping a lower level failure, the original error.

Usage:
    from invoiceml.exceptions import InsufficientDataError, NotTrainedError

    try:
        await forecaster.train(invoices)
    except InsufficientDataError as e:
        logger.warning("forecaster_skipped", error=str(e), context=e.context)
"""

from __future__ import annotations

from typing import Any


class InvoiceMLError(Exception):
    """Base exception for all invoiceml errors.

    Attributes:
        message: Human-readable error message
        context: Additional context for debugging (dict)
        original_error: Original exception if wrapped
    """

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        """Initialize exception with rich context.

        Args:
            message: Human-readable error description
            context: Additional structured data for debugging
            original_error: Original exception if this wraps another error
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Format exception with context for logging."""
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base = f"{base} ({ctx_str})"
        if self.original_error:
            base = f"{base} [caused by: {type(self.original_error).__name__}]"
        return base

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return f"{self.__class__.__name__}(message={self.message!r}, context={self.context!r})"


# =============================================================================
# Validation & Input Errors
# =============================================================================


class ValidationError(InvoiceMLError):
    """Raised when input validation fails (malformed invoice records, bad arguments)."""

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        constraint: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if field:
            context["field"] = field
        if value is not None:
            context["value"] = str(value)[:100]  # Truncate for safety
        if constraint:
            context["constraint"] = constraint
        kwargs["context"] = context
        super().__init__(message, **kwargs)


class ConfigurationError(InvoiceMLError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        *,
        setting: str | None = None,
        expected: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if setting:
            context["setting"] = setting
        if expected:
            context["expected"] = expected
        kwargs["context"] = context
        super().__init__(message, **kwargs)


# =============================================================================
# File Errors
# =============================================================================


class FileOperationError(InvoiceMLError):
    """Base class for file operation errors."""


class FileFormatError(FileOperationError):
    """Raised when an invoice snapshot file cannot be parsed."""

    def __init__(
        self,
        message: str,
        *,
        file_path: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if file_path:
            context["file_path"] = file_path
        kwargs["context"] = context
        super().__init__(message, **kwargs)


# =============================================================================
# Analytics & ML Errors
# =============================================================================


class AnalyticsError(InvoiceMLError):
    """Base class for model training and inference errors."""


class InsufficientDataError(AnalyticsError):
    """Raised when there are too few invoices or customers for a model.

    Example: training the forecaster with fewer than eight dated invoices.
    """

    def __init__(
        self,
        message: str,
        *,
        model: str | None = None,
        required: int | None = None,
        available: int | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if model:
            context["model"] = model
        if required is not None:
            context["required"] = required
        if available is not None:
            context["available"] = available
        kwargs["context"] = context
        super().__init__(message, **kwargs)
        self.required = required
        self.available = available


class NotTrainedError(AnalyticsError):
    """Raised when inference is requested from a model that was never trained."""

    def __init__(
        self,
        message: str,
        *,
        model: str | None = None,
        attempted_action: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if model:
            context["model"] = model
        if attempted_action:
            context["attempted_action"] = attempted_action
        kwargs["context"] = context
        super().__init__(message, **kwargs)


class ShapeMismatchError(AnalyticsError):
    """Raised when prediction and actual arrays cannot be compared."""

    def __init__(
        self,
        message: str,
        *,
        predictions_length: int | None = None,
        actuals_length: int | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if predictions_length is not None:
            context["predictions_length"] = predictions_length
        if actuals_length is not None:
            context["actuals_length"] = actuals_length
        kwargs["context"] = context
        super().__init__(message, **kwargs)


class ForecastSimulationError(AnalyticsError):
    """Raised when a stochastic forecast rollout produces unusable values.

    The forecaster recovers from it with a deterministic rollout.
    """


class TrainingTimeoutError(AnalyticsError):
    """Raised when a training call exceeds the caller's time budget."""

    def __init__(
        self,
        message: str,
        *,
        model: str | None = None,
        timeout_seconds: float | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if model:
            context["model"] = model
        if timeout_seconds is not None:
            context["timeout_seconds"] = timeout_seconds
        kwargs["context"] = context
        super().__init__(message, **kwargs)


# =============================================================================
# Utility Functions
# =============================================================================


def wrap_exception(
    error: Exception,
    message: str,
    *,
    exception_class: type[InvoiceMLError] = InvoiceMLError,
    **context: Any,
) -> InvoiceMLError:
    """Wrap an external exception in the invoiceml exception hierarchy.

    Args:
        error: Original exception to wrap
        message: Human-readable description
        exception_class: Which invoiceml exception to use
        **context: Additional context to attach

    Returns:
        Wrapped exception with original error preserved

    Example:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            raise wrap_exception(
                e,
                "Invoice snapshot is not valid JSON",
                exception_class=FileFormatError,
                file_path=str(path),
            )
    """
    return exception_class(
        message,
        context=context,
        original_error=error,
    )


__all__ = [
    # Base
    "InvoiceMLError",
    # Validation
    "ValidationError",
    "ConfigurationError",
    # Files
    "FileOperationError",
    "FileFormatError",
    # Analytics
    "AnalyticsError",
    "InsufficientDataError",
    "NotTrainedError",
    "ShapeMismatchError",
    "ForecastSimulationError",
    "TrainingTimeoutError",
    # Utilities
    "wrap_exception",
]
