"""
Queue worker.

One job in flight per worker process: encodes are CPU and IO heavy and
parallel encodes on one host starve each other. Scale out by starting
more worker processes against the same broker.
"""

import logging
import os
import socket
import threading
import uuid
from typing import Callable, Dict, Optional

from studio_finops.storage.models import ExportJob

from .encoder import FFmpegEncoder, ProgressCallback
from .options import ExportOptions
from .queue import KIND_EXPORT, JobQueue, QueueUnavailableError

logger = logging.getLogger(__name__)

JobHandler = Callable[[ExportJob, ProgressCallback], Optional[str]]


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


def make_export_handler(encoder: FFmpegEncoder) -> JobHandler:
    """Handler running an export job through the encoder."""

    def handle(job: ExportJob, on_progress: ProgressCallback) -> Optional[str]:
        options = ExportOptions.from_dict(job.options)
        return encoder.encode(job.input_ref, job.output_ref, options, on_progress)

    return handle


class ExportWorker:
    """Long-lived loop that processes queued jobs sequentially."""

    def __init__(
        self,
        queue: JobQueue,
        handlers: Dict[str, JobHandler],
        worker_id: Optional[str] = None,
        idle_sleep: float = 1.0,
        heartbeat_interval: Optional[float] = None,
    ):
        """Initialize the worker.

        Args:
            queue: Durable job queue
            handlers: Job handlers keyed by job kind
            worker_id: Identity recorded on claimed jobs
            idle_sleep: Seconds to wait when the queue is empty or unreachable
            heartbeat_interval: Seconds between lease renewals while a job
                runs (defaults to a third of the queue's lease)
        """
        if not handlers:
            raise ValueError("at least one job handler is required")
        if heartbeat_interval is not None and heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be > 0")
        self.queue = queue
        self.handlers = dict(handlers)
        self.worker_id = worker_id or default_worker_id()
        self.idle_sleep = idle_sleep
        self.heartbeat_interval = heartbeat_interval

    def _progress_callback(self, job_id: str) -> ProgressCallback:
        def report(percent: float) -> None:
            # Progress is advisory; a broker hiccup must not abort the encode
            try:
                self.queue.update_progress(job_id, self.worker_id, percent)
            except QueueUnavailableError as e:
                logger.warning("Progress update for job %s dropped: %s", job_id, e)

        return report

    def _renew_lease(self, job_id: str, interval: float, stop: threading.Event) -> None:
        while not stop.wait(interval):
            try:
                if not self.queue.renew_lease(job_id, self.worker_id):
                    logger.warning("Worker %s no longer holds job %s", self.worker_id, job_id)
                    return
            except QueueUnavailableError as e:
                logger.warning("Lease renewal for job %s failed: %s", job_id, e)

    def run_once(self) -> Optional[ExportJob]:
        """Claim and process at most one job.

        The job's lease is renewed in the background for as long as its
        handler runs, independent of progress reports. Any failure inside
        the handler marks the job failed; it is never retried in place.

        Returns:
            The job's final record, or None if nothing was waiting
        """
        job = self.queue.claim_next(self.worker_id)
        if job is None:
            return None

        logger.info("Worker %s processing %s job %s", self.worker_id, job.kind, job.id)
        handler = self.handlers.get(job.kind)
        try:
            if handler is None:
                raise ValueError(f"No handler for job kind '{job.kind}'")
            output_ref = self._run_handler(job, handler)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            logger.exception("Job %s failed", job.id)
            self.queue.fail(job.id, self.worker_id, reason)
        else:
            self.queue.complete(job.id, self.worker_id, output_ref)
            logger.info("Job %s completed: %s", job.id, output_ref)

        return self.queue.get_job(job.id)

    def _run_handler(self, job: ExportJob, handler: JobHandler) -> Optional[str]:
        interval = self.heartbeat_interval or self.queue.lease_seconds / 3.0
        stop_heartbeat = threading.Event()
        heartbeat = threading.Thread(
            target=self._renew_lease,
            args=(job.id, interval, stop_heartbeat),
            name=f"lease-{job.id}",
            daemon=True,
        )
        heartbeat.start()
        try:
            return handler(job, self._progress_callback(job.id))
        finally:
            stop_heartbeat.set()
            heartbeat.join()

    def run_forever(self, stop_event: Optional[threading.Event] = None, max_jobs: Optional[int] = None) -> int:
        """Process jobs until stopped.

        Args:
            stop_event: Set to stop after the current job
            max_jobs: Stop after this many jobs (None for no limit)

        Returns:
            Number of jobs processed
        """
        stop_event = stop_event or threading.Event()
        processed = 0
        logger.info("Worker %s started", self.worker_id)

        while not stop_event.is_set():
            if max_jobs is not None and processed >= max_jobs:
                break
            try:
                job = self.run_once()
            except QueueUnavailableError as e:
                logger.error("Job broker unavailable, retrying in %.1fs: %s", self.idle_sleep, e)
                stop_event.wait(self.idle_sleep)
                continue

            if job is None:
                stop_event.wait(self.idle_sleep)
            else:
                processed += 1

        logger.info("Worker %s stopped after %d job(s)", self.worker_id, processed)
        return processed


def build_export_worker(queue: JobQueue, encoder: Optional[FFmpegEncoder] = None, **kwargs) -> ExportWorker:
    """Worker with the export handler registered."""
    return ExportWorker(queue, {KIND_EXPORT: make_export_handler(encoder or FFmpegEncoder())}, **kwargs)
