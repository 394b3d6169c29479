"""invoiceml - in-session machine learning analytics for invoice histories."""

__version__ = "0.3.0"
