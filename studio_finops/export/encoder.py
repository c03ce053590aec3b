"""ffmpeg-backed video encoder with progress reporting."""

import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Iterable, Optional

from .options import ExportOptions, build_ffmpeg_command

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class EncodeError(Exception):
    """The external encode operation failed."""


def _is_remote(ref: str) -> bool:
    return ref.startswith(("http://", "https://", "s3://"))


def parse_progress(lines: Iterable[str], duration_seconds: Optional[float], on_progress: ProgressCallback) -> None:
    """Translate ffmpeg -progress output into percentages.

    Reports only increases; 100 is reported once ffmpeg signals progress=end.
    """
    last = 0.0
    for raw in lines:
        key, _, value = raw.strip().partition("=")
        percent = None

        if key in ("out_time_us", "out_time_ms") and duration_seconds:
            # out_time_ms is also in microseconds, despite its name
            try:
                elapsed = int(value) / 1_000_000
            except ValueError:
                continue
            percent = min(99.0, max(0.0, elapsed / duration_seconds * 100))
        elif key == "progress" and value == "end":
            percent = 100.0

        if percent is not None and percent > last:
            last = percent
            on_progress(round(percent, 2))


class FFmpegEncoder:
    """Runs ffmpeg for one export at a time."""

    def __init__(self, ffmpeg_binary: str = "ffmpeg", ffprobe_binary: str = "ffprobe"):
        self.ffmpeg_binary = ffmpeg_binary
        self.ffprobe_binary = ffprobe_binary

    def probe_duration(self, input_ref: str) -> Optional[float]:
        """Media duration in seconds, or None if ffprobe cannot tell."""
        try:
            result = subprocess.run(
                [
                    self.ffprobe_binary,
                    "-v", "error",
                    "-show_entries", "format=duration",
                    "-of", "default=noprint_wrappers=1:nokey=1",
                    input_ref,
                ],
                capture_output=True,
                text=True,
                timeout=30,
            )
            return float(result.stdout.strip())
        except (subprocess.SubprocessError, OSError, ValueError) as e:
            logger.warning("Could not probe duration of %s: %s", input_ref, e)
            return None

    def encode(
        self,
        input_ref: str,
        output_ref: str,
        options: ExportOptions,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """Encode input_ref into output_ref.

        Args:
            input_ref: Source media path or URL
            output_ref: Destination file path
            options: Validated export options
            on_progress: Called with a 0-100 percentage as encoding advances

        Returns:
            The output reference

        Raises:
            EncodeError: If the input is missing or ffmpeg fails
        """
        if not _is_remote(input_ref) and not Path(input_ref).exists():
            raise EncodeError(f"Input file not found: {input_ref}")
        Path(output_ref).parent.mkdir(parents=True, exist_ok=True)

        duration = self.probe_duration(input_ref)
        command = build_ffmpeg_command(input_ref, output_ref, options)
        command[0] = self.ffmpeg_binary
        logger.info("Encoding %s -> %s (%s, %s)", input_ref, output_ref, options.codec, options.resolution)

        with tempfile.TemporaryFile() as stderr:
            try:
                process = subprocess.Popen(
                    command, stdout=subprocess.PIPE, stderr=stderr, text=True
                )
            except OSError as e:
                raise EncodeError(f"Could not start {self.ffmpeg_binary}: {e}") from e

            try:
                parse_progress(process.stdout, duration, on_progress or (lambda _: None))
                return_code = process.wait()
            finally:
                if process.poll() is None:
                    logger.warning("Stopping ffmpeg for %s after an interrupted encode", output_ref)
                    process.kill()
                    process.wait()

            if return_code != 0:
                stderr.seek(0)
                tail = stderr.read().decode("utf-8", errors="replace").strip().splitlines()[-5:]
                raise EncodeError(f"ffmpeg exited with code {return_code}: {' | '.join(tail)}")

        return output_ref
