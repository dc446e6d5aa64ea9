"""
Encoder invocation: the ffmpeg command for one HLS rendition and the
subprocess wrapper that runs it.

The command is a pure function of (input, output dir, profile), so two runs
of the same profile produce the same arguments.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from config import ENCODER_STDERR_TAIL, ENCODER_TIMEOUT, FFMPEG_PATH
from core.errors import EncodeError
from core.paths import SEGMENT_PATTERN, VARIANT_PLAYLIST_NAME
from core.profiles import ProfileSpec, get_dimensions

logger = logging.getLogger(__name__)

# Codec labels stored on profiles -> ffmpeg encoder names
VIDEO_CODEC_ENCODERS = {
    "h264": "libx264",
    "hevc": "libx265",
    "h265": "libx265",
}

# Lines of stderr kept in memory while the encoder runs
_STDERR_LINES = 200


def video_codec_name(codec: str) -> str:
    """Map a codec label to the ffmpeg encoder; unknown labels pass through."""
    return VIDEO_CODEC_ENCODERS.get(codec.lower(), codec)


def build_encode_command(ffmpeg_path: str, input_path: Path, output_dir: Path, profile: ProfileSpec) -> List[str]:
    """Build the full ffmpeg argv for one rendition."""
    width, height = get_dimensions(profile.resolution)
    output_dir = Path(output_dir)
    segment = profile.segment_time

    return [
        ffmpeg_path,
        "-y",
        "-i",
        str(input_path),
        "-c:v",
        video_codec_name(profile.codec_video),
        "-c:a",
        profile.codec_audio,
        "-b:v",
        f"{profile.bitrate}k",
        "-b:a",
        f"{profile.audio_bitrate}k",
        "-s",
        f"{width}x{height}",
        "-f",
        "hls",
        "-hls_time",
        str(segment),
        "-hls_list_size",
        "0",
        "-hls_segment_filename",
        str(output_dir / SEGMENT_PATTERN),
        "-hls_flags",
        "independent_segments+split_by_time",
        # Keyframe on every segment boundary so segments start cleanly
        "-force_key_frames",
        f"expr:gte(t,n_forced*{segment})",
        "-segment_time_metadata",
        "1",
        str(output_dir / VARIANT_PLAYLIST_NAME),
    ]


def count_segments(output_dir: Path) -> int:
    """Number of .ts segments in a rendition directory."""
    return sum(1 for path in Path(output_dir).glob("*.ts") if path.is_file())


@dataclass(frozen=True)
class EncodeRequest:
    input_path: Path
    output_dir: Path
    profile: ProfileSpec


@dataclass(frozen=True)
class EncodeResult:
    playlist_path: Path
    segment_count: int


class Encoder:
    """Something that turns an EncodeRequest into an HLS rendition on disk."""

    async def encode(self, request: EncodeRequest) -> EncodeResult:
        raise NotImplementedError


async def cleanup_encoder_process(process: asyncio.subprocess.Process) -> None:
    """Kill the encoder if it is still running and reap it."""
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            # Exited between the returncode check and kill()
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"Encoder process {process.pid} did not terminate after kill")


class FFmpegEncoder(Encoder):
    """
    Runs ffmpeg as a subprocess and waits for it to exit.

    Args:
        ffmpeg_path: Binary to execute
        timeout: Seconds before a hung encoder is killed (0 or None disables)
    """

    def __init__(self, ffmpeg_path: str = FFMPEG_PATH, timeout: Optional[float] = ENCODER_TIMEOUT):
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout or None

    async def encode(self, request: EncodeRequest) -> EncodeResult:
        cmd = build_encode_command(self.ffmpeg_path, request.input_path, request.output_dir, request.profile)
        logger.info(f"Encoding {request.profile.resolution}: {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise EncodeError(f"Failed to start encoder {self.ffmpeg_path}: {e}") from e

        stderr_tail = deque(maxlen=_STDERR_LINES)

        async def drain_and_wait():
            # Keep reading stderr so a chatty encoder never blocks on a full pipe
            while True:
                line = await process.stderr.readline()
                if not line:
                    break
                stderr_tail.append(line.decode("utf-8", errors="replace").rstrip())
            await process.wait()

        try:
            if self.timeout:
                await asyncio.wait_for(drain_and_wait(), timeout=self.timeout)
            else:
                await drain_and_wait()
        except asyncio.TimeoutError:
            output = "\n".join(stderr_tail)[-ENCODER_STDERR_TAIL:]
            raise EncodeError(f"Encoder timed out after {self.timeout:.0f}s", output=output)
        finally:
            await cleanup_encoder_process(process)

        if process.returncode != 0:
            output = "\n".join(stderr_tail)[-ENCODER_STDERR_TAIL:]
            raise EncodeError(f"Encoder exited with code {process.returncode}", process.returncode, output)

        playlist_path = Path(request.output_dir) / VARIANT_PLAYLIST_NAME
        if not playlist_path.exists():
            raise EncodeError(f"Encoder exited cleanly but wrote no {VARIANT_PLAYLIST_NAME}", 0)

        return EncodeResult(playlist_path=playlist_path, segment_count=count_segments(request.output_dir))
