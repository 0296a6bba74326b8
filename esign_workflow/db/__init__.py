"""Database modules"""

from esign_workflow.db.base import DatabaseInterface, serialize_row
from esign_workflow.db.sqlite import get_connection, init_db
from esign_workflow.db.supabase import get_database

__all__ = [
    "DatabaseInterface",
    "serialize_row",
    "get_connection",
    "init_db",
    "get_database",
]
