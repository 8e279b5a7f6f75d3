"""Read-only query selectors."""

from cargo_kernel.selectors.document_selector import (
    BoxSummary,
    DocumentSelector,
    HistoryEntryDTO,
)

__all__ = ["BoxSummary", "DocumentSelector", "HistoryEntryDTO"]
