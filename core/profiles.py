"""
Profile catalog: the fixed set of renditions every ingested video gets.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from config import (
    DEFAULT_AUDIO_BITRATE,
    DEFAULT_AUDIO_CODEC,
    DEFAULT_VIDEO_CODEC,
    HLS_SEGMENT_DURATION,
    PROFILE_CATALOG,
)
from core.enums import Resolution

# Frame size per resolution label
RESOLUTION_DIMENSIONS: Dict[str, Tuple[int, int]] = {
    Resolution.P720.value: (1280, 720),
    Resolution.P480.value: (854, 480),
    Resolution.P360.value: (640, 360),
}

# Unknown labels are encoded at the smallest size
FALLBACK_DIMENSIONS: Tuple[int, int] = (640, 360)


def get_dimensions(resolution: str) -> Tuple[int, int]:
    """Map a resolution label to (width, height); unrecognized labels get 640x360."""
    return RESOLUTION_DIMENSIONS.get(resolution, FALLBACK_DIMENSIONS)


@dataclass(frozen=True)
class ProfileSpec:
    """Settings for one rendition, as stored on a video_profiles row."""

    resolution: str
    bitrate: int  # kbps
    codec_video: str = DEFAULT_VIDEO_CODEC
    codec_audio: str = DEFAULT_AUDIO_CODEC
    audio_bitrate: int = DEFAULT_AUDIO_BITRATE  # kbps
    segment_time: int = HLS_SEGMENT_DURATION  # seconds

    @classmethod
    def from_record(cls, row) -> "ProfileSpec":
        return cls(
            resolution=row["resolution"],
            bitrate=row["bitrate"],
            codec_video=row["codec_video"],
            codec_audio=row["codec_audio"],
            audio_bitrate=row["audio_bitrate"],
            segment_time=row["segment_time"],
        )

    def to_values(self) -> dict:
        return {
            "resolution": self.resolution,
            "bitrate": self.bitrate,
            "codec_video": self.codec_video,
            "codec_audio": self.codec_audio,
            "audio_bitrate": self.audio_bitrate,
            "segment_time": self.segment_time,
        }


def default_catalog(catalog: Optional[List[dict]] = None) -> List[ProfileSpec]:
    """Build the profile specs for a new video, in creation order."""
    entries = PROFILE_CATALOG if catalog is None else catalog
    return [ProfileSpec(**entry) for entry in entries]
