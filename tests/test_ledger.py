"""
Unit tests for the best-effort usage ledger.
"""

import logging
import os
import sqlite3
import tempfile
from datetime import datetime
from unittest.mock import Mock

from studio_finops.core.ledger import ACTION_IMAGE_GEN, ACTION_VIDEO_GEN, UsageLedger
from studio_finops.storage.repository import fetch_ledger_entries, initialize_schema


class TestUsageLedger:
    """Test ledger recording."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_record_writes_entry(self):
        ledger = UsageLedger(self.db_path, clock=lambda: datetime(2024, 5, 1, 8, 30))

        entry = ledger.record("proj-1", "user-1", ACTION_IMAGE_GEN, "black-forest-labs/flux-pro", 0.055)

        assert entry is not None
        stored = fetch_ledger_entries(db_path=self.db_path)
        assert len(stored) == 1
        assert stored[0].project_id == "proj-1"
        assert stored[0].action_type == "IMAGE_GEN"
        assert stored[0].amount == 0.055
        assert stored[0].created_at == datetime(2024, 5, 1, 8, 30)

    def test_record_coerces_ids_to_strings(self):
        ledger = UsageLedger(self.db_path)
        entry = ledger.record(42, 7, ACTION_VIDEO_GEN, "minimax/video-01", 0.5, quantity=2)

        assert entry.project_id == "42"
        assert entry.user_id == "7"
        assert entry.quantity == 2

    def test_writer_failure_is_swallowed(self, caplog):
        """A failing write is logged with the amount and never raised."""
        writer = Mock(side_effect=sqlite3.OperationalError("database is locked"))
        ledger = UsageLedger(self.db_path, writer=writer)

        with caplog.at_level(logging.ERROR, logger="studio_finops.core.ledger"):
            result = ledger.record("proj-1", "user-1", ACTION_IMAGE_GEN, "flux", 0.055)

        assert result is None
        writer.assert_called_once()
        assert "$0.0550" in caplog.text
        assert "proj-1" in caplog.text

    def test_fresh_database_gets_schema(self):
        """Spend on a never-initialized database is still recorded."""
        db_path = os.path.join(self.temp_dir, "fresh.db")
        ledger = UsageLedger(db_path)

        assert ledger.record("proj-1", "user-1", ACTION_IMAGE_GEN, "flux", 0.055) is not None
        assert ledger.record("proj-1", "user-1", ACTION_IMAGE_GEN, "flux", 0.003) is not None

        stored = fetch_ledger_entries(project_id="proj-1", db_path=db_path)
        assert sorted(entry.amount for entry in stored) == [0.003, 0.055]

    def test_custom_writer_skips_schema(self):
        writer = Mock()
        db_path = os.path.join(self.temp_dir, "untouched.db")
        UsageLedger(db_path, writer=writer).record("proj-1", "user-1", ACTION_IMAGE_GEN, "flux", 0.055)

        writer.assert_called_once()
        assert not os.path.exists(db_path)

    def test_unreachable_path_is_swallowed(self):
        ledger = UsageLedger(os.path.join(self.temp_dir, "missing", "dir", "ledger.db"))
        assert ledger.record("proj-1", "user-1", ACTION_IMAGE_GEN, "flux", 0.055) is None
