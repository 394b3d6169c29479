"""Command line interface for invoiceml."""
