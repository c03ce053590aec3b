"""Logging setup for the command-line entry points."""

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

NOISY_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3", "s3transfer", "openai")


def configure_logging(level: str = "INFO", log_file: Optional[str] = None, console: Optional[Console] = None) -> None:
    """Set up logging with Rich for terminal output.

    Args:
        level: Root log level name
        log_file: Optional plain-text log file
        console: Console the Rich handler writes to (defaults to stderr)
    """
    logging.root.handlers.clear()

    handlers = [
        RichHandler(
            console=console or Console(stderr=True),
            show_time=True,
            show_level=True,
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
    ]

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=handlers,
        format="%(message)s",
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
