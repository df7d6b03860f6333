"""Portfolio processing, polling and remote import."""

from .importer import ImportResult, WbsImporter
from .polling import PollingFallback, needs_refresh
from .portfolio import PortfolioProcessor, PortfolioSyncResult, RowOutcome, challenge_response

__all__ = [
    "ImportResult",
    "WbsImporter",
    "PollingFallback",
    "needs_refresh",
    "PortfolioProcessor",
    "PortfolioSyncResult",
    "RowOutcome",
    "challenge_response",
]
