"""Repository package for database access."""

from .audit import SqliteAuditRepository
from .projects import SqliteProjectRepository
from .work_items import SqliteWorkItemRepository

__all__ = [
    "SqliteAuditRepository",
    "SqliteProjectRepository",
    "SqliteWorkItemRepository",
]
