"""
Usage ledger recorder.

Records spend after a billable action has already happened. Audit
outages degrade to unaudited spend; they never fail a generation.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from studio_finops.storage.db import DEFAULT_DB_PATH
from studio_finops.storage.models import LedgerEntry
from studio_finops.storage.repository import initialize_schema, insert_ledger_entry

logger = logging.getLogger(__name__)

ACTION_IMAGE_GEN = "IMAGE_GEN"
ACTION_VIDEO_GEN = "VIDEO_GEN"


class UsageLedger:
    """Best-effort, append-only spend recorder."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        writer: Optional[Callable[[LedgerEntry, str], None]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the ledger.

        Args:
            db_path: Path to SQLite database file
            writer: Function persisting one entry (defaults to the SQLite insert,
                which creates the ledger table on first use)
            clock: Timestamp source for created_at
        """
        self.db_path = db_path
        self._writer = writer or insert_ledger_entry
        self._schema_ready = writer is not None
        self._clock = clock

    def record(
        self,
        project_id: str,
        user_id: str,
        action_type: str,
        model_identifier: str,
        amount: float,
        quantity: float = 1,
    ) -> Optional[LedgerEntry]:
        """Append a ledger entry for spend that already occurred.

        Write failures are logged and swallowed.

        Returns:
            The written entry, or None if the write failed
        """
        entry = LedgerEntry(
            project_id=str(project_id),
            user_id=str(user_id),
            action_type=action_type,
            model_identifier=model_identifier,
            quantity=quantity,
            amount=amount,
            created_at=self._clock(),
        )
        try:
            if not self._schema_ready:
                initialize_schema(self.db_path)
                self._schema_ready = True
            self._writer(entry, self.db_path)
        except Exception:
            logger.exception(
                "Ledger write failed, spend is unaudited: %s | $%.4f | project %s | model %s",
                action_type, amount, project_id, model_identifier,
            )
            return None

        logger.info("Ledger: %s | $%.4f | project %s", action_type, amount, project_id)
        return entry
