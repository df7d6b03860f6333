"""Data transformation between Smartsheet rows and local models."""

from .accessor import RowAccessor, normalize_cell_key
from .mappings import (
    ContactDirectory,
    PortfolioEntry,
    PortfolioMapper,
    WbsRowMapper,
    compute_data_hash,
    extract_last_name,
    parse_date,
    parse_money,
    parse_timestamp,
)

__all__ = [
    "RowAccessor",
    "normalize_cell_key",
    "ContactDirectory",
    "PortfolioEntry",
    "PortfolioMapper",
    "WbsRowMapper",
    "compute_data_hash",
    "extract_last_name",
    "parse_date",
    "parse_money",
    "parse_timestamp",
]
