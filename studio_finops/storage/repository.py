"""
Repository pattern for ledger data access.

The usage ledger is append-only: this module issues INSERT and SELECT
statements against it and nothing else.
"""

from datetime import datetime
from typing import Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import LedgerEntry

_LEDGER_COLUMNS = (
    "project_id, user_id, action_type, model_identifier, quantity, amount, created_at"
)


def _row_to_entry(row) -> LedgerEntry:
    return LedgerEntry(
        project_id=row[0],
        user_id=row[1],
        action_type=row[2],
        model_identifier=row[3],
        quantity=row[4],
        amount=row[5],
        created_at=datetime.fromisoformat(row[6]),
    )


class LedgerRepository:
    """Read-side access to the usage ledger for administrative reporting."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def get_project_spend(self, project_id: str) -> Dict[str, object]:
        """Total spend for a project with a per-action breakdown.

        Args:
            project_id: Project identifier

        Returns:
            Dictionary with total_amount, entry_count and by_action_type
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT action_type, COUNT(*), SUM(amount)
                FROM usage_ledger
                WHERE project_id = ?
                GROUP BY action_type
                ORDER BY action_type
            """, (project_id,))
            by_action: Dict[str, float] = {}
            total = 0.0
            count = 0
            for action_type, entries, amount in cursor.fetchall():
                by_action[action_type] = round(float(amount or 0), 4)
                total += float(amount or 0)
                count += entries

            return {
                "project_id": project_id,
                "total_amount": round(total, 4),
                "entry_count": count,
                "by_action_type": by_action,
            }
        finally:
            conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage_ledger table if it doesn't exist.

    No UPDATE or DELETE operations should ever be performed on this table.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_ledger (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                model_identifier TEXT NOT NULL,
                quantity REAL NOT NULL DEFAULT 1,
                amount REAL NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_usage_ledger_project
            ON usage_ledger (project_id, created_at)
        """)
        conn.commit()
    finally:
        conn.close()


def insert_ledger_entry(entry: LedgerEntry, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a single entry to the ledger.

    Args:
        entry: The ledger entry to record
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute(f"""
            INSERT INTO usage_ledger ({_LEDGER_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            entry.project_id,
            entry.user_id,
            entry.action_type,
            entry.model_identifier,
            entry.quantity,
            entry.amount,
            entry.created_at.isoformat(),
        ))
        conn.commit()
    finally:
        conn.close()


def fetch_ledger_entries(
    project_id: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[LedgerEntry]:
    """Fetch recent ledger entries, optionally for one project.

    Args:
        project_id: Optional filter for a specific project
        limit: Maximum number of entries to return
        db_path: Path to SQLite database file

    Returns:
        List of ledger entries, newest first
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT {_LEDGER_COLUMNS} FROM usage_ledger"
        params: list = []
        if project_id is not None:
            query += " WHERE project_id = ?"
            params.append(project_id)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        return [_row_to_entry(row) for row in cursor.fetchall()]
    finally:
        conn.close()
