"""Repository package for database access."""

from .items import SqliteWorkItemRepository
from .revisions import SqliteRevisionRepository
from .watermark import SqliteWatermarkRepository

__all__ = [
    "SqliteWorkItemRepository",
    "SqliteRevisionRepository",
    "SqliteWatermarkRepository",
]
