"""
Asynchronous export pipeline.

Durable job queue, single-flight worker and the ffmpeg encoder.
"""

from .encoder import EncodeError, FFmpegEncoder
from .options import ExportOptions
from .queue import JobQueue, QueueUnavailableError
from .worker import ExportWorker, build_export_worker

__all__ = [
    "EncodeError",
    "ExportOptions",
    "ExportWorker",
    "FFmpegEncoder",
    "JobQueue",
    "QueueUnavailableError",
    "build_export_worker",
]
