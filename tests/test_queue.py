"""
Unit tests for the durable job queue.

Tests lifecycle transitions, monotonic progress, lease redelivery and
broker failures.
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta

import pytest

from studio_finops.export.options import ExportOptions
from studio_finops.export.queue import (
    KIND_EXPORT,
    KIND_GENERATE,
    JobQueue,
    QueueUnavailableError,
)
from studio_finops.storage.models import JobState


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 6, 1, 9, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class TestJobQueue:
    """Test JobQueue behavior."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.clock = FakeClock()
        self.queue = JobQueue(os.path.join(self.temp_dir, "jobs.db"), lease_seconds=60, clock=self.clock)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_enqueue_returns_waiting_job(self):
        job_id = self.queue.enqueue("in.mov", "out.mp4", ExportOptions(codec="h265"), project_id="p1")

        job = self.queue.get_job(job_id)
        assert job.state == JobState.WAITING
        assert job.progress_percent == 0
        assert job.kind == KIND_EXPORT
        assert job.options["codec"] == "h265"
        assert job.project_id == "p1"
        assert job.created_at == self.clock.now

    def test_enqueue_validates_options(self):
        with pytest.raises(ValueError, match="codec"):
            self.queue.enqueue("in.mov", "out.mp4", {"codec": "vp9"})
        assert self.queue.list_jobs() == []

    def test_enqueue_requires_output_for_export(self):
        with pytest.raises(ValueError, match="output_ref"):
            self.queue.enqueue("in.mov", None)

    def test_enqueue_unavailable_broker(self):
        queue = JobQueue(os.path.join(self.temp_dir, "missing", "dir", "jobs.db"))
        with pytest.raises(QueueUnavailableError):
            queue.enqueue("in.mov", "out.mp4")

    def test_unknown_job(self):
        with pytest.raises(KeyError):
            self.queue.get_status("does-not-exist")

    def test_claim_in_enqueue_order(self):
        first = self.queue.enqueue("a.mov", "a.mp4")
        second = self.queue.enqueue("b.mov", "b.mp4")

        assert self.queue.claim_next("w1").id == first
        assert self.queue.claim_next("w2").id == second
        assert self.queue.claim_next("w3") is None

    def test_claim_marks_active(self):
        job_id = self.queue.enqueue("a.mov", "a.mp4")
        job = self.queue.claim_next("w1")

        assert job.id == job_id
        assert job.state == JobState.ACTIVE
        assert job.worker_id == "w1"
        assert job.lease_expires_at == self.clock.now + timedelta(seconds=60)

    def test_progress_is_monotonic(self):
        job_id = self.queue.enqueue("a.mov", "a.mp4")
        self.queue.claim_next("w1")

        self.queue.update_progress(job_id, "w1", 40)
        self.queue.update_progress(job_id, "w1", 25)
        assert self.queue.get_status(job_id).progress_percent == 40

        self.queue.update_progress(job_id, "w1", 140)
        assert self.queue.get_status(job_id).progress_percent == 100

    def test_progress_ignored_for_other_worker(self):
        job_id = self.queue.enqueue("a.mov", "a.mp4")
        self.queue.claim_next("w1")

        assert self.queue.update_progress(job_id, "intruder", 80) is False
        assert self.queue.get_status(job_id).progress_percent == 0

    def test_complete_sets_output(self):
        job_id = self.queue.enqueue("a.mov", "a.mp4")
        self.queue.claim_next("w1")
        self.queue.update_progress(job_id, "w1", 30)

        assert self.queue.complete(job_id, "w1", "a.mp4") is True

        status = self.queue.get_status(job_id)
        assert status.state == JobState.COMPLETED
        assert status.progress_percent == 100
        assert status.output_ref == "a.mp4"

    def test_output_hidden_until_completed(self):
        job_id = self.queue.enqueue("a.mov", "a.mp4")
        assert self.queue.get_status(job_id).output_ref is None

    def test_fail_records_reason(self):
        job_id = self.queue.enqueue("a.mov", "a.mp4")
        self.queue.claim_next("w1")
        self.queue.fail(job_id, "w1", "EncodeError: ffmpeg exited with code 1")

        status = self.queue.get_status(job_id)
        assert status.state == JobState.FAILED
        assert status.failure_reason == "EncodeError: ffmpeg exited with code 1"

    def test_terminal_states_never_change(self):
        job_id = self.queue.enqueue("a.mov", "a.mp4")
        self.queue.claim_next("w1")
        self.queue.fail(job_id, "w1", "boom")

        assert self.queue.complete(job_id, "w1", "a.mp4") is False
        assert self.queue.update_progress(job_id, "w1", 90) is False
        assert self.queue.claim_next("w2") is None
        assert self.queue.get_status(job_id).state == JobState.FAILED

    def test_cannot_complete_waiting_job(self):
        job_id = self.queue.enqueue("a.mov", "a.mp4")
        assert self.queue.complete(job_id, "w1", "a.mp4") is False
        assert self.queue.get_status(job_id).state == JobState.WAITING

    def test_expired_lease_is_redelivered(self):
        """A job whose worker stopped heartbeating is claimed by another worker."""
        job_id = self.queue.enqueue("a.mov", "a.mp4")
        self.queue.claim_next("crashed")
        self.queue.update_progress(job_id, "crashed", 35)

        self.clock.advance(30)
        assert self.queue.claim_next("w2") is None

        self.clock.advance(61)
        job = self.queue.claim_next("w2")
        assert job.id == job_id
        assert job.worker_id == "w2"
        assert job.progress_percent == 35

        # The crashed worker can no longer write
        assert self.queue.complete(job_id, "crashed", "a.mp4") is False

    def test_progress_extends_lease(self):
        job_id = self.queue.enqueue("a.mov", "a.mp4")
        self.queue.claim_next("w1")

        self.clock.advance(50)
        self.queue.update_progress(job_id, "w1", 10)
        self.clock.advance(50)

        assert self.queue.claim_next("w2") is None

    def test_generation_batch(self):
        requests = [
            {"model_identifier": "black-forest-labs/flux-pro", "prompt": f"shot {i}", "project_id": "p1"}
            for i in range(3)
        ]
        job_ids = self.queue.enqueue_generation_batch(requests, project_id="p1")

        assert len(set(job_ids)) == 3
        jobs = [self.queue.get_job(job_id) for job_id in job_ids]
        assert all(job.kind == KIND_GENERATE for job in jobs)
        assert [job.options["prompt"] for job in jobs] == ["shot 0", "shot 1", "shot 2"]

    def test_generation_batch_requires_model(self):
        with pytest.raises(ValueError, match="model_identifier"):
            self.queue.enqueue_generation_batch([{"prompt": "x"}])

    def test_list_jobs_newest_first(self):
        first = self.queue.enqueue("a.mov", "a.mp4", project_id="p1")
        second = self.queue.enqueue("b.mov", "b.mp4", project_id="p1")
        self.queue.enqueue("c.mov", "c.mp4", project_id="p2")

        assert [job.id for job in self.queue.list_jobs(project_id="p1")] == [second, first]
        assert len(self.queue.list_jobs(limit=1)) == 1

    def test_invalid_lease(self):
        with pytest.raises(ValueError, match="lease_seconds"):
            JobQueue(os.path.join(self.temp_dir, "x.db"), lease_seconds=0)
