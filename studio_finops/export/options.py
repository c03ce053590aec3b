"""
Export options.

The encode surface is deliberately fixed: a closed set of codecs,
resolutions, frame rates and presets.
"""

from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, List, Tuple

VIDEO_CODECS = {
    "h264": "libx264",
    "h265": "libx265",
    "prores": "prores_ks",
    "dnxhd": "dnxhd",
}

AUDIO_CODECS = {
    "aac": "aac",
    "mp3": "libmp3lame",
    "flac": "flac",
}

RESOLUTIONS = {
    "720p": (1280, 720),
    "1080p": (1920, 1080),
    "2k": (2560, 1440),
    "4k": (3840, 2160),
}

QUALITIES = ("low", "medium", "high", "ultra")
FRAME_RATES = (24, 25, 30, 60)
PRESETS = ("ultrafast", "fast", "medium", "slow", "veryslow")

BITRATE_RANGES_KBPS: Dict[str, Tuple[int, int]] = {
    "video_bitrate_kbps": (500, 50000),
    "audio_bitrate_kbps": (32, 320),
}

# Quality presets override bitrates and encoder speed
QUALITY_PRESETS: Dict[str, Dict[str, Any]] = {
    "low": {"video_bitrate_kbps": 1500, "audio_bitrate_kbps": 64, "preset": "ultrafast"},
    "medium": {"video_bitrate_kbps": 3000, "audio_bitrate_kbps": 96, "preset": "fast"},
    "high": {"video_bitrate_kbps": 5000, "audio_bitrate_kbps": 128, "preset": "medium"},
    "ultra": {"video_bitrate_kbps": 8000, "audio_bitrate_kbps": 192, "preset": "slow"},
}


@dataclass(frozen=True)
class ExportOptions:
    """Validated encode settings for one export job."""
    codec: str = "h264"
    quality: str = "high"
    audio_codec: str = "aac"
    audio_bitrate_kbps: int = 128
    video_bitrate_kbps: int = 5000
    resolution: str = "1080p"
    frame_rate: int = 30
    preset: str = "medium"

    def __post_init__(self):
        """Reject anything outside the fixed configuration surface."""
        _check_choice("codec", self.codec, VIDEO_CODECS)
        _check_choice("quality", self.quality, QUALITIES)
        _check_choice("audio_codec", self.audio_codec, AUDIO_CODECS)
        _check_choice("resolution", self.resolution, RESOLUTIONS)
        _check_choice("frame_rate", self.frame_rate, FRAME_RATES)
        _check_choice("preset", self.preset, PRESETS)
        for name, (low, high) in BITRATE_RANGES_KBPS.items():
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"{name} must be an integer")
            if not low <= value <= high:
                raise ValueError(f"{name} must be between {low} and {high} kbps")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportOptions":
        allowed = set(cls.__dataclass_fields__)
        unknown = set(data) - allowed
        if unknown:
            raise ValueError(f"Unknown export options: {sorted(unknown)}")
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def effective(self) -> "ExportOptions":
        """Options after applying the quality preset."""
        return replace(self, **QUALITY_PRESETS[self.quality])


def _check_choice(name: str, value: Any, choices) -> None:
    if value not in choices:
        raise ValueError(f"'{name}' must be one of: {list(choices)}")


def build_ffmpeg_command(input_ref: str, output_ref: str, options: ExportOptions) -> List[str]:
    """Build the ffmpeg argument list for an export.

    Progress is written as key=value lines to stdout.
    """
    final = options.effective()
    width, height = RESOLUTIONS[final.resolution]
    command = [
        "ffmpeg",
        "-hide_banner",
        "-nostats",
        "-progress", "pipe:1",
        "-i", input_ref,
        "-c:v", VIDEO_CODECS[final.codec],
        "-b:v", f"{final.video_bitrate_kbps}k",
        "-s", f"{width}x{height}",
        "-r", str(final.frame_rate),
    ]
    # Only the x264/x265 encoders understand speed presets
    if final.codec in ("h264", "h265"):
        command += ["-preset", final.preset]
    command += [
        "-c:a", AUDIO_CODECS[final.audio_codec],
        "-b:a", f"{final.audio_bitrate_kbps}k",
        "-y",
        output_ref,
    ]
    return command
