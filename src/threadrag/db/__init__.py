"""threadrag database layer."""

from threadrag.db.connection import Database
from threadrag.db.migrations import MIGRATIONS, run_migrations
from threadrag.db.schema import initialize
from threadrag.db.vectors import (
    DimensionMismatchError,
    ensure_vec_table,
    get_vec_index,
    model_to_slug,
    vec_table_name,
)

__all__ = [
    "Database",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "DimensionMismatchError",
    "ensure_vec_table",
    "get_vec_index",
    "model_to_slug",
    "vec_table_name",
]
