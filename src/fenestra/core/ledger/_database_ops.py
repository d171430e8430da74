"""Database operation helpers to reduce boilerplate in the ledger.

Consolidates the repeated `with self._db.connection() as conn:` pattern.
"""

from typing import TYPE_CHECKING, Any

from sqlalchemy import Executable
from sqlalchemy.engine import Row

if TYPE_CHECKING:
    from fenestra.core.ledger.database import LedgerDB


class DatabaseOps:
    """Helper for common database operations."""

    def __init__(self, db: "LedgerDB") -> None:
        self._db = db

    def execute_fetchone(self, query: Executable) -> Row[Any] | None:
        """Execute query and return single row or None."""
        with self._db.connection() as conn:
            result = conn.execute(query)
            return result.fetchone()

    def execute_fetchall(self, query: Executable) -> list[Row[Any]]:
        """Execute query and return all rows."""
        with self._db.connection() as conn:
            result = conn.execute(query)
            return list(result.fetchall())

    def execute_insert(self, stmt: Executable) -> None:
        """Execute insert statement.

        Raises:
            ValueError: If zero rows are affected (ledger write failed)
        """
        with self._db.connection() as conn:
            result = conn.execute(stmt)
            if result.rowcount == 0:
                raise ValueError("execute_insert: zero rows affected - ledger write failed (missing parent row or constraint violation)")

    def execute_update(self, stmt: Executable) -> None:
        """Execute update statement.

        Raises:
            ValueError: If zero rows are affected (target row does not exist)
        """
        with self._db.connection() as conn:
            result = conn.execute(stmt)
            if result.rowcount == 0:
                raise ValueError("execute_update: zero rows affected - target row does not exist (ledger data corruption)")

    def execute_cas(self, stmt: Executable) -> bool:
        """Execute a compare-and-set update.

        Returns:
            True if the guarded row was updated, False if the guard did not match
        """
        with self._db.connection() as conn:
            result = conn.execute(stmt)
            return bool(result.rowcount == 1)
